"""File writing tool. Needs the user's permission for every file.

A file that already exists must have been read in this conversation, and
must not have changed on disk since, before it can be overwritten.
"""

import asyncio
import logging

from ..tool import Tool, ToolOutput, ValidationResult
from .validation import resolve_path, validate_path

logger = logging.getLogger(__name__)


def write_file(path, content) -> str:
    """Write `content`, creating parent directories. Returns "create" or "update"."""
    kind = "update" if path.exists() else "create"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return kind


class FileWriteTool(Tool):
    """Create or overwrite a file inside the project."""

    name = "Write"
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to write"},
            "content": {"type": "string", "description": "The full new content of the file"},
        },
        "required": ["file_path", "content"],
    }

    def description(self) -> str:
        return (
            "Writes a file, replacing it if it exists. Existing files must be "
            "read with the Read tool first."
        )

    def is_read_only(self) -> bool:
        return False

    def needs_permissions(self, tool_input) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        is_safe, path, error = validate_path(tool_input["file_path"])
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.exists():
            return ValidationResult.ok()
        if path.is_dir():
            return ValidationResult.fail(f"Path is a directory: {tool_input['file_path']}")

        read_timestamp = ctx.read_file_timestamps.get(str(path))
        if read_timestamp is None:
            return ValidationResult.fail(
                "File has not been read yet. Read it first before writing to it."
            )
        if path.stat().st_mtime > read_timestamp:
            return ValidationResult.fail(
                "File has been modified since read, either by the user or by a linter. "
                "Read it again before attempting to write it."
            )
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input["file_path"]

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input["file_path"])
        content = tool_input["content"]
        kind = await asyncio.to_thread(write_file, path, content)
        ctx.read_file_timestamps[str(path)] = path.stat().st_mtime
        logger.info(f"Wrote {len(content)} characters to {path} ({kind})")

        if kind == "create":
            result = f"File created successfully at: {path}"
        else:
            result = f"The file {path} has been updated."
        yield ToolOutput(
            data={"type": kind, "file_path": str(path), "content": content},
            result_for_assistant=result,
        )
