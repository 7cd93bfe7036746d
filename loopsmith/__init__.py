# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Loopsmith - an interactive agent runtime with a cancellable tool loop."""

__version__ = "0.3.0"
__author__ = "Emera Digital Tools"

# Core exports
from .abort import AbortController, AbortSignal
from .errors import AbortError, ConfigParseError, LoopsmithError, ShellError, ToolInputError
from .messages import AssistantMessage, ProgressMessage, UserMessage
from .normalize import (
    get_errored_tool_use_messages,
    get_in_progress_tool_use_ids,
    get_unresolved_tool_use_ids,
    normalize_messages,
    normalize_messages_for_api,
    reorder_messages,
    should_render_statically,
)
from .permissions import PermissionDecision, PermissionGate, PermissionOutcome
from .persistent_shell import ExecResult, PersistentShell
from .query import TurnState, query
from .scheduler import ToolScheduler
from .session import ConversationSession
from .tool import Tool, ToolOutput, ToolProgress, ToolUseContext, ValidationResult

__all__ = [
    # Version
    "__version__",
    "__author__",
    # Cancellation
    "AbortController",
    "AbortSignal",
    # Errors
    "LoopsmithError",
    "AbortError",
    "ConfigParseError",
    "ShellError",
    "ToolInputError",
    # Messages
    "AssistantMessage",
    "ProgressMessage",
    "UserMessage",
    "normalize_messages",
    "normalize_messages_for_api",
    "reorder_messages",
    "get_unresolved_tool_use_ids",
    "get_in_progress_tool_use_ids",
    "get_errored_tool_use_messages",
    "should_render_statically",
    # Tools
    "Tool",
    "ToolOutput",
    "ToolProgress",
    "ToolUseContext",
    "ValidationResult",
    # Turn pipeline
    "PermissionDecision",
    "PermissionGate",
    "PermissionOutcome",
    "ToolScheduler",
    "TurnState",
    "query",
    "ConversationSession",
    # Shell
    "ExecResult",
    "PersistentShell",
]
