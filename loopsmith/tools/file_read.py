"""File reading tool.

Loopsmith Principle: One Function, One Purpose
"""

import asyncio
import logging

from ..errors import ToolInputError
from ..tool import Tool, ToolOutput, ValidationResult
from .constants import MAX_FILE_SIZE, MAX_LINE_LENGTH, MAX_LINES_TO_READ
from .validation import resolve_path, validate_path

logger = logging.getLogger(__name__)


def add_line_numbers(lines, start_line=1):
    """Format lines as `cat -n` does."""
    return "\n".join(f"{number:6d}\t{line}" for number, line in enumerate(lines, start_line))


def read_file(path, offset=1, limit=None):
    """Read a slice of a text file.

    Args:
        path: Resolved file path
        offset: First line to return (1-indexed)
        limit: Maximum number of lines to return

    Returns:
        dict with content, start_line, num_lines, total_lines
    """
    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ToolInputError(f"Cannot read binary file: {path}") from e

    lines = content.split("\n")
    start = max(offset, 1) - 1
    end = start + (limit or MAX_LINES_TO_READ)
    selected = [line[:MAX_LINE_LENGTH] for line in lines[start:end]]

    return {
        "content": add_line_numbers(selected, start + 1),
        "start_line": start + 1,
        "num_lines": len(selected),
        "total_lines": len(lines),
    }


class FileReadTool(Tool):
    """Read a text file inside the project, with line numbers."""

    name = "Read"
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to read"},
            "offset": {"type": "integer", "description": "Line number to start from (1-indexed)"},
            "limit": {"type": "integer", "description": "Number of lines to read"},
        },
        "required": ["file_path"],
    }

    def description(self) -> str:
        return (
            "Reads a file from the project. Returns at most "
            f"{MAX_LINES_TO_READ} lines by default, numbered like `cat -n`."
        )

    def is_read_only(self) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        is_safe, path, error = validate_path(tool_input["file_path"])
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.exists():
            return ValidationResult.fail(f"File does not exist: {tool_input['file_path']}")
        if not path.is_file():
            return ValidationResult.fail(f"Not a file: {tool_input['file_path']}")

        size = path.stat().st_size
        if size > MAX_FILE_SIZE and not tool_input.get("offset") and not tool_input.get("limit"):
            return ValidationResult.fail(
                f"File content ({size} bytes) exceeds maximum allowed size "
                f"({MAX_FILE_SIZE} bytes). Use offset and limit to read part of it.",
                file_size=size,
            )
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input["file_path"]

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input["file_path"])
        result = await asyncio.to_thread(
            read_file, path, tool_input.get("offset") or 1, tool_input.get("limit")
        )
        ctx.read_file_timestamps[str(path)] = path.stat().st_mtime
        logger.debug(f"Read {result['num_lines']} lines from {path}")

        data = {"file_path": str(path), **result}
        yield ToolOutput(data=data, result_for_assistant=result["content"] or "(empty file)")
