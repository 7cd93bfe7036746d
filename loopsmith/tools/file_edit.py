"""Text replacement tool. Needs the user's permission for every edit.

Edits follow the same read-before-write rule as the Write tool. An empty
`old_string` on a missing file creates it with `new_string` as content.
"""

import asyncio
import logging

from ..errors import ToolInputError
from ..tool import Tool, ToolOutput, ValidationResult
from .file_write import write_file
from .validation import resolve_path, validate_path

logger = logging.getLogger(__name__)


def replace_in_file(path, old_string, new_string, replace_all=False) -> int:
    """Replace text in a file. Returns the number of replacements made.

    Raises:
        ToolInputError: If `old_string` is missing, or matches more than once
            without `replace_all`
    """
    content = path.read_text(encoding="utf-8")
    occurrence_count = content.count(old_string)
    if occurrence_count == 0:
        raise ToolInputError("String to replace not found in file.")
    if occurrence_count > 1 and not replace_all:
        raise ToolInputError(
            f"Found {occurrence_count} matches of the string to replace. "
            "Set replace_all to true or add more context to make it unique."
        )

    if replace_all:
        new_content = content.replace(old_string, new_string)
    else:
        new_content = content.replace(old_string, new_string, 1)
    path.write_text(new_content, encoding="utf-8")
    return occurrence_count if replace_all else 1


class FileEditTool(Tool):
    """Replace an exact string in a file inside the project."""

    name = "Edit"
    input_schema = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path of the file to edit"},
            "old_string": {
                "type": "string",
                "description": "Exact text to replace (must be unique unless replace_all)",
            },
            "new_string": {"type": "string", "description": "Text to put in its place"},
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence (default: false)",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def description(self) -> str:
        return (
            "Replaces exact text in a file. The file must be read with the Read "
            "tool first. Use an empty old_string to create a new file."
        )

    def is_read_only(self) -> bool:
        return False

    def needs_permissions(self, tool_input) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        old_string = tool_input["old_string"]
        if old_string == tool_input["new_string"]:
            return ValidationResult.fail(
                "No changes to make: old_string and new_string are exactly the same."
            )

        is_safe, path, error = validate_path(tool_input["file_path"])
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.exists():
            if old_string == "":
                return ValidationResult.ok()
            return ValidationResult.fail(f"File does not exist: {tool_input['file_path']}")
        if not path.is_file():
            return ValidationResult.fail(f"Not a file: {tool_input['file_path']}")
        if old_string == "":
            return ValidationResult.fail("Cannot create new file - file already exists.")

        read_timestamp = ctx.read_file_timestamps.get(str(path))
        if read_timestamp is None:
            return ValidationResult.fail(
                "File has not been read yet. Read it first before editing it."
            )
        if path.stat().st_mtime > read_timestamp:
            return ValidationResult.fail(
                "File has been modified since read, either by the user or by a linter. "
                "Read it again before attempting to edit it."
            )

        content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        matches = content.count(old_string)
        if matches == 0:
            return ValidationResult.fail("String to replace not found in file.")
        if matches > 1 and not tool_input.get("replace_all"):
            return ValidationResult.fail(
                f"Found {matches} matches of the string to replace, but replace_all is "
                "false. Set replace_all to true or add more context to make it unique.",
                matches=matches,
            )
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input["file_path"]

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input["file_path"])
        old_string = tool_input["old_string"]
        new_string = tool_input["new_string"]

        if old_string == "" and not path.exists():
            await asyncio.to_thread(write_file, path, new_string)
            replacements = 0
            result = f"File created successfully at: {path}"
        else:
            replacements = await asyncio.to_thread(
                replace_in_file, path, old_string, new_string, bool(tool_input.get("replace_all"))
            )
            result = f"The file {path} has been updated."
        ctx.read_file_timestamps[str(path)] = path.stat().st_mtime
        logger.info(f"Edited {path} ({replacements} replacement(s))")

        yield ToolOutput(
            data={"file_path": str(path), "replacements": replacements},
            result_for_assistant=result,
        )
