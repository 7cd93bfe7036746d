"""Search tools for Loopsmith (glob and grep).

Loopsmith Principle: Standard Patterns Only
Both walk the tree in a worker thread and check the abort signal between
files, so a cancelled turn stops the walk.
"""

import asyncio
import fnmatch
import logging
import os
import re
from pathlib import Path

from ..abort import raise_if_aborted
from ..errors import ToolInputError
from ..tool import Tool, ToolOutput, ValidationResult
from .constants import MAX_GREP_LINE_LENGTH, MAX_SEARCH_RESULTS
from .validation import resolve_path, validate_path

logger = logging.getLogger(__name__)

TRUNCATED_MESSAGE = "(Results are truncated. Consider using a more specific path or pattern.)"


def _is_hidden(relative_path) -> bool:
    return any(part.startswith(".") for part in relative_path.parts)


def glob_files(pattern, path, signal=None):
    """Find files matching a glob pattern under `path`.

    Returns:
        Tuple of (sorted relative paths, truncated)
    """
    matches = []
    truncated = False
    for match in path.glob(pattern):
        raise_if_aborted(signal)
        rel_path = match.relative_to(path)
        if _is_hidden(rel_path) or not match.is_file():
            continue
        if len(matches) >= MAX_SEARCH_RESULTS:
            truncated = True
            break
        matches.append(rel_path.as_posix())
    return sorted(matches), truncated


def grep_search(regex, path, include=None, signal=None):
    """Search file contents under `path` line by line.

    Returns:
        Tuple of (matches, files_searched, truncated). Each match is a dict
        with file, line and content.
    """
    matches = []
    files_searched = 0

    for root, dirs, files in os.walk(path):
        dirs[:] = sorted(d for d in dirs if not d.startswith("."))
        for file_name in sorted(files):
            raise_if_aborted(signal)
            if file_name.startswith("."):
                continue
            if include and not fnmatch.fnmatch(file_name, include):
                continue

            file_path = Path(root) / file_name
            try:
                content = file_path.read_text(encoding="utf-8", errors="ignore")
            except OSError as e:
                logger.debug(f"Skipping unreadable file {file_path}: {e}")
                continue
            files_searched += 1

            for line_num, line in enumerate(content.split("\n"), 1):
                if not regex.search(line):
                    continue
                if len(matches) >= MAX_SEARCH_RESULTS:
                    return matches, files_searched, True
                matches.append(
                    {
                        "file": file_path.relative_to(path).as_posix(),
                        "line": line_num,
                        "content": line.strip()[:MAX_GREP_LINE_LENGTH],
                    }
                )

    return matches, files_searched, False


class GlobTool(Tool):
    """Find files by name pattern."""

    name = "Glob"
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": 'Glob pattern, e.g. "**/*.py"'},
            "path": {"type": "string", "description": "Directory to search (default: project root)"},
        },
        "required": ["pattern"],
    }

    def description(self) -> str:
        return 'Finds files by glob pattern such as "**/*.py" or "src/**/*.ts".'

    def is_read_only(self) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        is_safe, path, error = validate_path(tool_input.get("path", "."))
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.is_dir():
            return ValidationResult.fail(f"Not a directory: {tool_input.get('path', '.')}")
        if not tool_input["pattern"].strip():
            return ValidationResult.fail("Pattern cannot be empty")
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input["pattern"]

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input.get("path", "."))
        try:
            matches, truncated = await asyncio.to_thread(
                glob_files, tool_input["pattern"], path, ctx.signal
            )
        except (ValueError, NotImplementedError) as e:
            raise ToolInputError(f"Invalid glob pattern: {e}") from e

        if not matches:
            result = "No files found"
        else:
            result = "\n".join(matches)
            if truncated:
                result += f"\n{TRUNCATED_MESSAGE}"
        yield ToolOutput(
            data={"pattern": tool_input["pattern"], "matches": matches, "truncated": truncated},
            result_for_assistant=result,
        )


class GrepTool(Tool):
    """Search file contents with a regular expression."""

    name = "Grep"
    input_schema = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regular expression to search for"},
            "path": {"type": "string", "description": "Directory to search (default: project root)"},
            "include": {"type": "string", "description": 'File name filter, e.g. "*.py"'},
            "ignore_case": {"type": "boolean", "description": "Case-insensitive search"},
        },
        "required": ["pattern"],
    }

    def description(self) -> str:
        return "Searches file contents with a regular expression. Returns file:line: text matches."

    def is_read_only(self) -> bool:
        return True

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        is_safe, path, error = validate_path(tool_input.get("path", "."))
        if not is_safe:
            return ValidationResult.fail(error)
        if not path.is_dir():
            return ValidationResult.fail(f"Not a directory: {tool_input.get('path', '.')}")
        try:
            re.compile(tool_input["pattern"])
        except re.error as e:
            return ValidationResult.fail(f"Invalid regex: {e}")
        return ValidationResult.ok()

    def render_tool_use(self, tool_input) -> str:
        return tool_input["pattern"]

    async def call(self, tool_input, ctx):
        path = resolve_path(tool_input.get("path", "."))
        flags = re.IGNORECASE if tool_input.get("ignore_case") else 0
        regex = re.compile(tool_input["pattern"], flags)

        matches, files_searched, truncated = await asyncio.to_thread(
            grep_search, regex, path, tool_input.get("include"), ctx.signal
        )
        logger.debug(f"Grep searched {files_searched} files, {len(matches)} matches")

        if not matches:
            result = "No matches found"
        else:
            result = "\n".join(f"{m['file']}:{m['line']}: {m['content']}" for m in matches)
            if truncated:
                result += f"\n{TRUNCATED_MESSAGE}"
        yield ToolOutput(
            data={
                "pattern": tool_input["pattern"],
                "matches": matches,
                "files_searched": files_searched,
                "truncated": truncated,
            },
            result_for_assistant=result,
        )
