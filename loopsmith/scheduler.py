# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Tool scheduler: runs one model response's tool calls.

Loopsmith Principle: Errors Become Messages
Every tool_use id in a batch leaves here with exactly one tool_result. A tool
that raises, an unknown tool, bad input, a denial and a cancellation all
become error results the model sees on its next call.

Read-only calls the permission gate already allows run first, concurrently.
Everything else runs afterwards, one at a time, in the order the model
emitted it.
"""

import asyncio
import logging
import time

from .abort import run_until_aborted
from .messages import (
    AssistantMessage,
    ToolUseResult,
    create_assistant_message,
    create_progress_message,
    create_tool_result_block,
    create_tool_result_reject_message,
    create_tool_result_stop_message,
    create_user_message,
)
from .permissions import PermissionDecision
from .tool import ToolOutput, ToolProgress, validate_tool_input

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 10_000


def format_error(error) -> str:
    """Error text for a tool_result, including any stderr/stdout it carries.

    Past 10 000 characters the middle is cut out.
    """
    if not isinstance(error, BaseException):
        return str(error)
    parts = [str(error)]
    for attr in ("stderr", "stdout"):
        value = getattr(error, attr, None)
        if isinstance(value, str):
            parts.append(value)
    full_message = "\n".join(part for part in parts if part)
    if len(full_message) <= MAX_ERROR_LENGTH:
        return full_message
    half = MAX_ERROR_LENGTH // 2
    truncated = len(full_message) - MAX_ERROR_LENGTH
    return (
        f"{full_message[:half]}\n\n... [{truncated} characters truncated] ...\n\n"
        f"{full_message[-half:]}"
    )


def _error_result(tool_use_id, content):
    return create_user_message([create_tool_result_block(tool_use_id, content, is_error=True)])


def _result_id(message):
    if message.type != "user" or isinstance(message.content, str):
        return None
    for block in message.content:
        if block.get("type") == "tool_result":
            return block.get("tool_use_id")
    return None


class _CallState:
    """What happened to one call, read by the serial loop."""

    def __init__(self):
        self.rejected = False


class ToolScheduler:
    """Executes batches of tool_use blocks.

    Args:
        permission_gate: PermissionGate consulted for every call
    """

    def __init__(self, permission_gate):
        self.permission_gate = permission_gate

    def partition(self, tool_use_blocks, ctx):
        """Split a batch into (parallel, serial), both in model order.

        A call is parallel only when its tool exists, is read-only and the
        permission gate allows it without asking.
        """
        parallel, serial = [], []
        for block in tool_use_blocks:
            if self._can_run_in_parallel(block, ctx):
                parallel.append(block)
            else:
                serial.append(block)
        return parallel, serial

    def _can_run_in_parallel(self, block, ctx) -> bool:
        tool = ctx.find_tool(block.get("name"))
        if tool is None or not tool.is_read_only():
            return False
        try:
            decision = self.permission_gate.check(tool, block.get("input") or {}, ctx)
        except Exception as e:
            logger.error(f"Permission check failed for {tool.name}, running it serially: {e}")
            return False
        return decision == PermissionDecision.ALLOW

    async def run_batch(self, tool_use_blocks, assistant_message, ctx):
        """Run a batch and yield ProgressMessages and tool-result UserMessages.

        Exactly one tool-result message is yielded per block.
        """
        sibling_ids = frozenset(block.get("id") for block in tool_use_blocks)
        parallel, serial = self.partition(tool_use_blocks, ctx)
        resolved = set()

        if parallel:
            logger.debug(f"Running {len(parallel)} tool call(s) concurrently")
            calls = [
                self._run_tool_use(block, sibling_ids, assistant_message, ctx, _CallState(), False)
                for block in parallel
            ]
            async for message in self._merge(calls, ctx.max_tool_concurrency):
                tool_use_id = _result_id(message)
                if tool_use_id is not None:
                    resolved.add(tool_use_id)
                yield message

        rejected = False
        for block in serial:
            tool_use_id = block.get("id")
            if tool_use_id in resolved:
                continue
            if rejected:
                resolved.add(tool_use_id)
                yield create_user_message([create_tool_result_reject_message(tool_use_id)])
                continue

            state = _CallState()
            async for message in self._run_tool_use(
                block, sibling_ids, assistant_message, ctx, state, True
            ):
                if _result_id(message) is not None:
                    resolved.add(_result_id(message))
                yield message
            if state.rejected:
                rejected = True
                logger.info(f"Tool call {tool_use_id} rejected, skipping the rest of the batch")

        for block in tool_use_blocks:
            tool_use_id = block.get("id")
            if tool_use_id not in resolved:
                resolved.add(tool_use_id)
                yield create_user_message([create_tool_result_stop_message(tool_use_id)])

    async def _merge(self, generators, concurrency_cap):
        """Drain generators concurrently, yielding items as they arrive."""
        queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(max(1, concurrency_cap))
        finished = object()

        async def drain(generator):
            async with semaphore:
                try:
                    async for item in generator:
                        await queue.put(item)
                except Exception:
                    logger.exception("Parallel tool call failed outside its own error handling")
                finally:
                    await queue.put(finished)

        tasks = [asyncio.create_task(drain(generator)) for generator in generators]
        remaining = len(tasks)
        try:
            while remaining:
                item = await queue.get()
                if item is finished:
                    remaining -= 1
                    continue
                yield item
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run_tool_use(self, block, sibling_ids, assistant_message, ctx, state, check_permission):
        tool_use_id = block.get("id")
        tool_name = block.get("name")
        tool_input = block.get("input")
        tool = ctx.find_tool(tool_name)

        if tool is None:
            logger.error(f"No such tool available: {tool_name}")
            yield _error_result(tool_use_id, f"Error: No such tool available: {tool_name}")
            return

        if ctx.signal.aborted:
            logger.info(f"Tool call {tool_name} cancelled before it started")
            yield create_user_message([create_tool_result_stop_message(tool_use_id)])
            return

        valid, error = validate_tool_input(tool.input_schema, tool_input)
        if not valid:
            logger.warning(f"InputValidationError for {tool_name}: {error}")
            yield _error_result(tool_use_id, f"InputValidationError: {error}")
            return

        try:
            validation = await tool.validate_input(tool_input, ctx)
        except Exception as e:
            logger.error(f"validate_input failed for {tool_name}: {e}")
            yield _error_result(tool_use_id, format_error(e))
            return
        if not validation.result:
            logger.info(f"Tool {tool_name} rejected its input: {validation.message[:200]}")
            yield _error_result(tool_use_id, validation.message)
            return

        if check_permission:
            try:
                allowed = await self.permission_gate.resolve(tool, tool_input, ctx)
            except Exception as e:
                logger.error(f"Permission check failed for {tool_name}: {e}")
                yield _error_result(tool_use_id, format_error(e))
                return
            if not allowed:
                state.rejected = True
                yield create_user_message([create_tool_result_reject_message(tool_use_id)])
                return

        async for message in self._call_tool(
            tool, tool_use_id, tool_input, sibling_ids, assistant_message, ctx
        ):
            yield message

    async def _call_tool(self, tool, tool_use_id, tool_input, sibling_ids, assistant_message, ctx):
        start = time.time()
        generator = tool.call(tool_input, ctx)
        try:
            while True:
                completed, event = await run_until_aborted(_next_event(generator), ctx.signal)
                if not completed:
                    logger.info(f"Tool call {tool.name} interrupted")
                    yield create_user_message([create_tool_result_stop_message(tool_use_id)])
                    return
                if event is None:
                    logger.error(f"Tool {tool.name} finished without a result")
                    yield _error_result(tool_use_id, f"Error: {tool.name} finished without a result")
                    return

                if isinstance(event, ToolOutput):
                    duration_ms = (time.time() - start) * 1000
                    logger.info(f"Tool {tool.name} completed in {duration_ms:.0f}ms")
                    yield create_user_message(
                        [
                            create_tool_result_block(tool_use_id, event.result_for_assistant),
                        ],
                        tool_use_result=ToolUseResult(
                            data=event.data, result_for_assistant=event.result_for_assistant
                        ),
                    )
                    return

                if isinstance(event, ToolProgress):
                    content = event.content
                    if not isinstance(content, AssistantMessage):
                        content = create_assistant_message(str(content))
                    yield create_progress_message(
                        tool_use_id, sibling_ids, content, event.normalized_messages
                    )
        except Exception as e:
            logger.error(f"Tool {tool.name} raised: {e}")
            yield _error_result(tool_use_id, format_error(e))
        finally:
            try:
                await generator.aclose()
            except Exception as e:
                logger.error(f"Tool {tool.name} failed while closing: {e}")


async def _next_event(generator):
    """Next event from a tool call, or None once it is exhausted."""
    try:
        return await generator.__anext__()
    except StopAsyncIteration:
        return None
