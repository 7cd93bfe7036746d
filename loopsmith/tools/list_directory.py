"""Directory listing tool.

Loopsmith Principle: One Function, One Purpose
"""

import asyncio
import logging

from ..abort import raise_if_aborted
from ..tool import Tool, ToolOutput, ValidationResult
from .constants import MAX_DIRECTORY_ITEMS
from .validation import resolve_path, validate_path

logger = logging.getLogger(__name__)

TRUNCATED_MESSAGE = (
    f"There are more than {MAX_DIRECTORY_ITEMS} files in the directory. "
    "Use a more specific path or the Glob tool to narrow it down."
)


def list_directory(path, max_depth=3, signal=None):
    """List a directory tree, skipping hidden entries.

    Returns:
        Tuple of (relative paths, truncated). Directories end in "/".
    """
    items = []

    def add_items(current_path, depth=0):
        raise_if_aborted(signal)
        try:
            children = sorted(current_path.iterdir())
        except PermissionError:
            logger.debug(f"Permission denied listing directory: {current_path}")
            return False

        for item in children:
            if item.name.startswith("."):
                continue
            if len(items) >= MAX_DIRECTORY_ITEMS:
                return True

            rel_path = item.relative_to(path).as_posix()
            if item.is_dir():
                items.append(rel_path + "/")
                if depth < max_depth and add_items(item, depth + 1):
                    return True
            else:
                items.append(rel_path)
        return False

    truncated = add_items(path)
    return items, truncated


class ListDirectoryTool(Tool):
    """List files and directories under a path."""

    name = "LS"
    input_schema = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory to list (default: project root)"},
        },
        "required": [],
    }

    def description(self) -> str:
        return "Lists files and directories under a path, skipping hidden ones."

    def is_read_only(self) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        is_safe, path, error = validate_path(tool_input.get("path", "."))
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.is_dir():
            return ValidationResult.fail(f"Not a directory: {tool_input.get('path', '.')}")
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input.get("path", ".")

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input.get("path", "."))
        items, truncated = await asyncio.to_thread(list_directory, path, signal=ctx.signal)

        result = "\n".join([f"{path}/", *(f"  {item}" for item in items)])
        if truncated:
            result = f"{TRUNCATED_MESSAGE}\n\n{result}"
        yield ToolOutput(
            data={"path": str(path), "items": items, "truncated": truncated},
            result_for_assistant=result,
        )
