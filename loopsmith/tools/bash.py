"""Bash tool: runs commands in the persistent shell session.

Loopsmith Principle: Explicit Over Implicit
The shell session is passed in, never looked up. The command runs with the
turn's abort signal, so cancelling the turn kills whatever it started.
"""

import logging
from pathlib import Path

from ..permissions import BASH_TOOL_NAME, bash_permission_key, get_command_prefix
from ..tool import Tool, ToolOutput, ToolProgress, ValidationResult
from .constants import DEFAULT_COMMAND_TIMEOUT_MS, MAX_COMMAND_TIMEOUT_MS, MAX_OUTPUT_CHARS
from .validation import find_banned_command

logger = logging.getLogger(__name__)

ABORTED_MESSAGE = "<error>Command was aborted before completion</error>"


def format_output(content):
    """Keep the head and tail of long output.

    Returns:
        Tuple of (text, total_line_count)
    """
    total_lines = content.count("\n") + 1 if content else 0
    if len(content) <= MAX_OUTPUT_CHARS:
        return content, total_lines

    half = MAX_OUTPUT_CHARS // 2
    start = content[:half]
    end = content[-half:]
    truncated_lines = content[half:-half].count("\n") + 1
    return f"{start}\n\n... [{truncated_lines} lines truncated] ...\n\n{end}", total_lines


def _is_inside(path, directory) -> bool:
    path = Path(path).resolve()
    directory = Path(directory).resolve()
    return path == directory or directory in path.parents


class BashTool(Tool):
    """Run a shell command in a session that keeps its working directory."""

    name = BASH_TOOL_NAME
    input_schema = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command to execute"},
            "timeout": {
                "type": "number",
                "description": f"Optional timeout in milliseconds (max {MAX_COMMAND_TIMEOUT_MS})",
            },
        },
        "required": ["command"],
    }

    def __init__(self, shell, original_cwd=None):
        self.shell = shell
        self.original_cwd = str(original_cwd or shell.cwd)

    def description(self) -> str:
        return (
            "Executes a bash command in a persistent shell session. The working "
            "directory persists between commands but is kept inside the project "
            "directory. Output longer than "
            f"{MAX_OUTPUT_CHARS} characters is truncated in the middle."
        )

    def is_read_only(self) -> bool:
        return False

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        command = tool_input["command"]
        if not command.strip():
            return ValidationResult.fail("Command cannot be empty")

        banned = find_banned_command(command)
        if banned is not None:
            sub_command, reason = banned
            logger.warning(f"Refused banned command: {sub_command}")
            return ValidationResult.fail(reason, command=sub_command)

        timeout = tool_input.get("timeout")
        if timeout is not None and not 0 < timeout <= MAX_COMMAND_TIMEOUT_MS:
            return ValidationResult.fail(
                f"Timeout must be between 1 and {MAX_COMMAND_TIMEOUT_MS} ms"
            )
        return ValidationResult.ok()

    def permission_key(self, tool_input, prefix=None) -> str:
        return bash_permission_key(tool_input["command"], prefix)

    def permission_prefix(self, tool_input):
        return get_command_prefix(tool_input["command"])

    def render_tool_use(self, tool_input) -> str:
        return tool_input["command"]

    def render_result_for_assistant(self, data):
        parts = [data["stdout"].strip(), data["stderr"].strip()]
        if data["interrupted"]:
            parts.append(ABORTED_MESSAGE)
        elif data["exit_code"] != 0:
            parts.append(f"Exit code {data['exit_code']}")
        return "\n".join(part for part in parts if part)

    async def call(self, tool_input, ctx):
        command = tool_input["command"]
        timeout_ms = int(tool_input.get("timeout") or DEFAULT_COMMAND_TIMEOUT_MS)

        yield ToolProgress(f"Running: {command[:80]}")
        result = await self.shell.exec(command, ctx.signal, timeout_ms)

        stdout, stdout_lines = format_output(result.stdout.strip())
        stderr, stderr_lines = format_output(result.stderr.strip())

        if not _is_inside(self.shell.pwd(), self.original_cwd):
            await self.shell.set_cwd(self.original_cwd)
            stderr = f"{stderr}\nShell cwd was reset to {self.original_cwd}".strip()
            logger.info(f"Shell left the project directory, reset to {self.original_cwd}")

        data = {
            "stdout": stdout,
            "stdout_lines": stdout_lines,
            "stderr": stderr,
            "stderr_lines": stderr_lines,
            "exit_code": result.code,
            "interrupted": result.interrupted,
        }
        yield ToolOutput(data=data, result_for_assistant=self.render_result_for_assistant(data))
