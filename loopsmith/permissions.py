# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Permission gate for tool calls.

Loopsmith Principle: Safety Over Speed
A call runs without asking only when it is read-only, when permissions are
switched off for a sandbox, or when the user already approved its signature
for this project. Everything else waits on the user, and the wait still
gives way to the turn's abort signal.
"""

import inspect
import logging
import os
import shlex
from enum import Enum

from .abort import run_until_aborted
from .config import ProjectConfig
from .errors import ConfigParseError

logger = logging.getLogger(__name__)

BASH_TOOL_NAME = "Bash"

# Commands that are known to be safe for execution
SAFE_COMMANDS = {
    "git status",
    "git diff",
    "git log",
    "git branch",
    "pwd",
    "tree",
    "date",
    "which",
}

# Programs whose second word names a subcommand, so "git commit" and
# "git push" get separate approvals
SUBCOMMAND_PROGRAMS = {
    "cargo",
    "docker",
    "git",
    "go",
    "kubectl",
    "make",
    "npm",
    "pip",
    "pnpm",
    "poetry",
    "uv",
    "yarn",
}

COMMAND_SEPARATORS = {"&&", "||", ";", "|", ";;", "&", "|&"}


class PermissionDecision(Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK_USER = "ask_user"


class PermissionOutcome(Enum):
    ALLOW_ONCE = "allow_once"
    ALLOW_ALWAYS = "allow_always"
    DENY = "deny"


def split_command(command: str) -> list[str]:
    """Split a shell command line into its sub-commands.

    Splits on newlines and on the control operators &&, ||, ;, | and &.
    Quoting inside each sub-command is preserved. A line that cannot be
    tokenized is returned whole.
    """
    sub_commands = []
    for line in command.splitlines():
        if not line.strip():
            continue
        lexer = shlex.shlex(line, posix=False, punctuation_chars=";&|")
        lexer.whitespace_split = True
        lexer.commenters = ""
        try:
            tokens = list(lexer)
        except ValueError:
            sub_commands.append(line.strip())
            continue

        current = []
        for token in tokens:
            if token in COMMAND_SEPARATORS:
                if current:
                    sub_commands.append(" ".join(current))
                current = []
                continue
            current.append(token)
        if current:
            sub_commands.append(" ".join(current))
    return sub_commands


def get_command_prefix(command: str):
    """Prefix used for "always allow" approvals of a single command.

    The first two words when the program takes subcommands, else the first
    word. None for empty input.
    """
    try:
        words = shlex.split(command)
    except ValueError:
        words = command.split()
    if not words:
        return None
    if len(words) > 1 and words[0] in SUBCOMMAND_PROGRAMS and not words[1].startswith("-"):
        return f"{words[0]} {words[1]}"
    return words[0]


def bash_permission_key(command: str, prefix=None) -> str:
    if prefix:
        return f"{BASH_TOOL_NAME}({prefix}:*)"
    return f"{BASH_TOOL_NAME}({command})"


def bash_command_has_exact_match_permission(command: str, allowed_tools) -> bool:
    if command in SAFE_COMMANDS:
        return True
    if bash_permission_key(command) in allowed_tools:
        return True
    # an approved prefix that is exactly this command
    return bash_permission_key(command, prefix=command) in allowed_tools


def bash_command_has_permission(command: str, allowed_tools) -> bool:
    if bash_command_has_exact_match_permission(command, allowed_tools):
        return True
    prefix = get_command_prefix(command)
    return prefix is not None and bash_permission_key(command, prefix) in allowed_tools


def bash_tool_has_permission(command: str, allowed_tools, cwd: str) -> bool:
    """Every sub-command must be approved on its own."""
    if bash_command_has_exact_match_permission(command, allowed_tools):
        return True
    sub_commands = [sub for sub in split_command(command) if sub != f"cd {cwd}"]
    if not sub_commands:
        return False
    return all(bash_command_has_permission(sub, allowed_tools) for sub in sub_commands)


class PermissionGate:
    """Decides whether a tool call may run and asks the user when needed.

    Args:
        project_store: Object with load() and save(project_config) for the
            per-project approved signatures. None keeps approvals in memory.
        prompt: Callable(tool, tool_input, prefix) returning a
            PermissionOutcome, or an awaitable of one. None denies every
            call that would need a prompt.
        cwd_provider: Callable returning the shell's working directory.
    """

    def __init__(self, project_store=None, prompt=None, cwd_provider=None):
        self.project_store = project_store
        self.prompt = prompt
        self.cwd_provider = cwd_provider or os.getcwd
        self._session_allowed = []

    def allowed_tools(self) -> list[str]:
        if self.project_store is None:
            return list(self._session_allowed)
        return list(self._load_project_config().allowed_tools)

    def _load_project_config(self):
        """Saved approvals. An unreadable project file counts as no approvals."""
        try:
            return self.project_store.load()
        except ConfigParseError as e:
            logger.error(f"Ignoring saved tool approvals: {e}")
            return ProjectConfig()

    def check(self, tool, tool_input, ctx) -> PermissionDecision:
        """Decide without user interaction."""
        if ctx.dangerously_skip_permissions:
            return PermissionDecision.ALLOW

        if ctx.signal.aborted:
            return PermissionDecision.DENY

        try:
            if not tool.needs_permissions(tool_input):
                return PermissionDecision.ALLOW
        except Exception as e:
            logger.error(f"Error checking permissions for {tool.name}: {e}")
            return PermissionDecision.DENY

        allowed_tools = self.allowed_tools()

        if tool.name == BASH_TOOL_NAME:
            if BASH_TOOL_NAME in allowed_tools:
                return PermissionDecision.ALLOW
            command = tool_input.get("command", "")
            if bash_tool_has_permission(command, allowed_tools, self.cwd_provider()):
                return PermissionDecision.ALLOW
            return PermissionDecision.ASK_USER

        if tool.permission_key(tool_input) in allowed_tools:
            return PermissionDecision.ALLOW
        return PermissionDecision.ASK_USER

    async def request(self, tool, tool_input, ctx) -> PermissionOutcome:
        """Ask the user, racing the prompt against the turn's abort signal.

        A denial, including one caused by abort, fires the abort signal so the
        rest of the turn stops.
        """
        if ctx.signal.aborted or self.prompt is None:
            return self._deny(tool, ctx)

        prefix = tool.permission_prefix(tool_input)
        completed, outcome = await run_until_aborted(
            self._ask(tool, tool_input, prefix), ctx.signal
        )
        if not completed or outcome is None or outcome == PermissionOutcome.DENY:
            return self._deny(tool, ctx)

        if outcome == PermissionOutcome.ALLOW_ALWAYS:
            self.save_permission(tool, tool_input, prefix)
            logger.info(f"Permission for {tool.name} granted permanently")
        else:
            logger.info(f"Permission for {tool.name} granted once")
        return outcome

    async def resolve(self, tool, tool_input, ctx) -> bool:
        """check() followed by request() when the user has to decide."""
        decision = self.check(tool, tool_input, ctx)
        if decision == PermissionDecision.ALLOW:
            return True
        if decision == PermissionDecision.DENY:
            logger.info(f"Permission for {tool.name} denied without prompting")
            return False
        outcome = await self.request(tool, tool_input, ctx)
        return outcome != PermissionOutcome.DENY

    async def _ask(self, tool, tool_input, prefix):
        outcome = self.prompt(tool, tool_input, prefix)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return outcome

    def _deny(self, tool, ctx) -> PermissionOutcome:
        logger.info(f"Permission for {tool.name} denied")
        ctx.abort.abort("permission denied")
        return PermissionOutcome.DENY

    def save_permission(self, tool, tool_input, prefix=None):
        """Persist the call's signature. Concurrent approvals: last writer wins."""
        key = tool.permission_key(tool_input, prefix)
        if self.project_store is None:
            if key not in self._session_allowed:
                self._session_allowed.append(key)
                self._session_allowed.sort()
            return

        project_config = self._load_project_config()
        if key in project_config.allowed_tools:
            return
        project_config.allowed_tools = sorted(set(project_config.allowed_tools) | {key})
        self.project_store.save(project_config)
