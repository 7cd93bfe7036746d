# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Turn engine: the query loop.

Send the history to the model. If the response asks for tools, run them as
one batch, append the results and ask again. Stop when a response has no
tool use, when the model client fails, or when the turn is aborted.

The loop is iterative; a long tool-using turn never grows the stack.
"""

import logging
from enum import Enum

from .abort import run_until_aborted
from .messages import (
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    create_assistant_api_error_message,
    create_assistant_message,
    create_tool_result_stop_message,
    create_user_message,
)
from .normalize import normalize_messages_for_api
from .scheduler import ToolScheduler

logger = logging.getLogger(__name__)


class TurnState(Enum):
    AWAITING_MODEL = "awaiting_model"
    RESOLVING_TOOLS = "resolving_tools"
    DONE = "done"
    INTERRUPTED = "interrupted"


async def query(
    messages,
    system_prompt,
    ctx,
    permission_gate,
    model_client,
    on_state_change=None,
    scheduler=None,
):
    """Run one turn, yielding every message it produces.

    Args:
        messages: History so far, ending with the user's new message
        system_prompt: System prompt passed through to the model client
        ctx: ToolUseContext for the turn
        permission_gate: PermissionGate used by the scheduler
        model_client: Object with an async query(...) returning an AssistantMessage
        on_state_change: Optional callback receiving each TurnState
        scheduler: Optional ToolScheduler; one is built from the gate if omitted

    Yields:
        AssistantMessage, ProgressMessage and UserMessage entries in order.
    """
    history = list(messages)
    scheduler = scheduler or ToolScheduler(permission_gate)

    def set_state(state):
        logger.debug(f"Turn state: {state.value}")
        if on_state_change is not None:
            on_state_change(state)

    while True:
        set_state(TurnState.AWAITING_MODEL)
        try:
            completed, assistant_message = await run_until_aborted(
                model_client.query(
                    normalize_messages_for_api(history),
                    system_prompt,
                    ctx.tools,
                    ctx.signal,
                    ctx.model,
                ),
                ctx.signal,
            )
        except Exception as e:
            logger.exception("Model client raised")
            completed = True
            assistant_message = create_assistant_api_error_message(f"API Error: {e}")

        if not completed or ctx.signal.aborted:
            yield create_assistant_message(INTERRUPT_MESSAGE)
            set_state(TurnState.INTERRUPTED)
            return

        yield assistant_message

        if assistant_message.is_api_error_message:
            set_state(TurnState.DONE)
            return

        # stop_reason == "tool_use" is not reliable, look at the blocks
        tool_use_blocks = assistant_message.tool_use_blocks
        if not tool_use_blocks:
            set_state(TurnState.DONE)
            return

        set_state(TurnState.RESOLVING_TOOLS)
        tool_results = []
        try:
            async for message in scheduler.run_batch(tool_use_blocks, assistant_message, ctx):
                yield message
                # progress never goes back to the model
                if message.type == "user":
                    tool_results.append(message)
        except Exception as e:
            logger.exception("Tool batch failed")
            for message in _stop_unresolved(tool_use_blocks, tool_results):
                yield message
            yield create_assistant_api_error_message(f"API Error: {e}")
            set_state(TurnState.DONE)
            return

        if ctx.signal.aborted:
            yield create_assistant_message(INTERRUPT_MESSAGE_FOR_TOOL_USE)
            set_state(TurnState.INTERRUPTED)
            return

        order = {block.get("id"): index for index, block in enumerate(tool_use_blocks)}
        tool_results.sort(key=lambda m: order.get(_tool_result_id(m), len(order)))
        history = history + [assistant_message] + tool_results


def _tool_result_id(message):
    for block in message.content:
        if block.get("type") == "tool_result":
            return block.get("tool_use_id")
    return None


def _stop_unresolved(tool_use_blocks, tool_results):
    resolved = {_tool_result_id(message) for message in tool_results}
    return [
        create_user_message([create_tool_result_stop_message(block.get("id"))])
        for block in tool_use_blocks
        if block.get("id") not in resolved
    ]
