"""Tools the model can call.

Loopsmith Principle: Standardized Interfaces Over Custom Protocols
"""

from .bash import BashTool
from .file_edit import FileEditTool
from .file_read import FileReadTool
from .file_write import FileWriteTool
from .list_directory import ListDirectoryTool
from .search import GlobTool, GrepTool


def get_default_tools(shell):
    """Every built-in tool, with the Bash tool bound to `shell`."""
    return [
        BashTool(shell),
        FileReadTool(),
        FileWriteTool(),
        FileEditTool(),
        ListDirectoryTool(),
        GlobTool(),
        GrepTool(),
    ]


__all__ = [
    "BashTool",
    "FileEditTool",
    "FileReadTool",
    "FileWriteTool",
    "GlobTool",
    "GrepTool",
    "ListDirectoryTool",
    "get_default_tools",
]
