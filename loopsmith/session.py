# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Conversation session: history, cancellation and forking.

The session owns the message list, the abort controller of the turn in
flight, and the transcript the list is mirrored to. Forking starts a new
transcript file; the old one is left exactly as it was.
"""

import logging

from . import transcript
from .abort import AbortController
from .messages import create_user_message
from .query import query
from .tool import ToolUseContext

logger = logging.getLogger(__name__)


class ConversationSession:
    """One interactive conversation.

    Args:
        model_client: Client with an async query(...) method
        tools: Tools available to the model
        permission_gate: PermissionGate for tool calls
        system_prompt: System prompt sent with every model call
        model: Model identifier passed to the client
        messages_dir: Override for the transcript directory
        log_name: Transcript base name (default: this process's start date)
    """

    def __init__(
        self,
        model_client,
        tools,
        permission_gate,
        system_prompt="",
        model="",
        verbose=False,
        dangerously_skip_permissions=False,
        max_tool_concurrency=10,
        messages_dir=None,
        log_name=None,
        on_state_change=None,
    ):
        self.model_client = model_client
        self.tools = tuple(tools)
        self.permission_gate = permission_gate
        self.system_prompt = system_prompt
        self.model = model
        self.verbose = verbose
        self.dangerously_skip_permissions = dangerously_skip_permissions
        self.max_tool_concurrency = max_tool_concurrency
        self.messages_dir = messages_dir
        self.log_name = log_name or transcript.DATE
        self.on_state_change = on_state_change

        self.messages = []
        self.fork_number = 0
        self.read_file_timestamps = {}
        self.abort_controller = None
        self._generation = 0

    @property
    def transcript_path(self):
        return transcript.get_messages_path(
            self.log_name, self.fork_number, 0, self.messages_dir
        )

    @property
    def is_running(self) -> bool:
        return self.abort_controller is not None

    def make_context(self, abort_controller) -> ToolUseContext:
        return ToolUseContext(
            abort=abort_controller,
            tools=self.tools,
            model=self.model,
            dangerously_skip_permissions=self.dangerously_skip_permissions,
            read_file_timestamps=self.read_file_timestamps,
            fork_conversation=self.fork,
            verbose=self.verbose,
            max_tool_concurrency=self.max_tool_concurrency,
        )

    def cancel(self):
        """Abort the turn in flight, if any. Safe to call repeatedly."""
        if self.abort_controller is not None:
            self.abort_controller.abort("user cancelled")

    def fork(self, messages):
        """Continue from `messages` in a new transcript file.

        Any turn in flight is cancelled and its remaining output is dropped.
        """
        self.cancel()
        self._generation += 1
        self.messages = list(messages)
        self.fork_number = transcript.get_next_available_fork_number(
            self.log_name, self.fork_number + 1, 0, self.messages_dir
        )
        logger.info(f"Forked conversation at {len(self.messages)} messages -> {self.transcript_path}")
        self._mirror()

    def add_messages(self, messages):
        """Append messages produced outside a turn, e.g. a direct shell command."""
        for message in messages:
            self.messages.append(message)
        self._mirror()

    async def submit(self, prompt):
        """Append the user's prompt and run a turn, yielding every message."""
        controller = AbortController()
        self.abort_controller = controller
        generation = self._generation

        user_message = create_user_message(prompt)
        self._append(user_message)
        yield user_message

        try:
            async for message in query(
                self.messages,
                self.system_prompt,
                self.make_context(controller),
                self.permission_gate,
                self.model_client,
                on_state_change=self.on_state_change,
            ):
                if generation != self._generation:
                    continue
                if message.type != "progress":
                    self._append(message)
                yield message
        finally:
            if self.abort_controller is controller:
                self.abort_controller = None

    def _append(self, message):
        self.messages.append(message)
        self._mirror()

    def _mirror(self):
        persisted = [m.to_dict() for m in self.messages if m.type != "progress"]
        try:
            transcript.overwrite_log(self.transcript_path, persisted)
        except OSError as e:
            transcript.log_error(e)
