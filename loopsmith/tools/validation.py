"""Path and command validation for Loopsmith tools.

Loopsmith Principle: Explicit Safety Checks
"""

import os
import shlex
from pathlib import Path

from ..errors import ToolInputError
from ..permissions import split_command
from .constants import ALWAYS_BLOCKED_COMMANDS, BANNED_COMMANDS


def validate_path(file_path, cwd=None, allow_outside=False):
    """Ensure path is safe and within the project directory.

    Args:
        file_path: The path to validate, absolute or relative to `cwd`
        cwd: Project directory (default: the process working directory)
        allow_outside: If True, allows paths outside the project

    Returns:
        Tuple of (is_safe, resolved_path, error_message)
    """
    if not file_path:
        return False, None, "Path cannot be empty"

    try:
        base = Path(cwd or os.getcwd()).resolve()
        path = Path(file_path).expanduser()
        if not path.is_absolute():
            path = base / path
        path = path.resolve()
    except (OSError, RuntimeError) as error:
        return False, None, str(error)

    is_inside = path == base or base in path.parents
    if not is_inside and not allow_outside:
        return False, None, f"Access denied: '{file_path}' is outside project directory"

    return True, path, None


def resolve_path(file_path, cwd=None) -> Path:
    """validate_path for code that wants an exception instead of a tuple.

    Raises:
        ToolInputError: If the path is empty or outside the project
    """
    is_safe, path, error = validate_path(file_path, cwd)
    if not is_safe:
        raise ToolInputError(error)
    return path


def find_banned_command(command):
    """First sub-command that may never run, or None.

    Returns:
        Tuple of (sub_command, reason) or None
    """
    if command.strip() in ALWAYS_BLOCKED_COMMANDS:
        return command.strip(), "This command is blocked"

    for sub_command in split_command(command):
        if sub_command in ALWAYS_BLOCKED_COMMANDS:
            return sub_command, "This command is blocked"
        try:
            parts = shlex.split(sub_command)
        except ValueError:
            parts = sub_command.split()
        if parts and parts[0].lower() in BANNED_COMMANDS:
            return sub_command, f"Command '{parts[0]}' is not allowed for security reasons"
    return None
