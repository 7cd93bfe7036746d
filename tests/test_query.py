"""Tests for the turn engine."""

import asyncio

import pytest

from loopsmith.messages import (
    CANCEL_MESSAGE,
    INTERRUPT_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    create_assistant_api_error_message,
    create_user_message,
)
from loopsmith.permissions import PermissionGate, PermissionOutcome
from loopsmith.query import TurnState, query
from loopsmith.tools import FileReadTool, FileWriteTool


async def _collect(generator):
    return [message async for message in generator]


def _allow_gate():
    return PermissionGate(prompt=lambda tool, tool_input, prefix: PermissionOutcome.ALLOW_ONCE)


class TestQueryLoop:
    """Model call, tool batch, repeat."""

    @pytest.mark.asyncio
    async def test_text_response_ends_turn(self, make_ctx, fake_model_client, messages_factory):
        client = fake_model_client([messages_factory.text("hello")])
        states = []

        messages = await _collect(
            query(
                [create_user_message("hi")],
                "system",
                make_ctx(),
                _allow_gate(),
                client,
                on_state_change=states.append,
            )
        )

        assert [m.text for m in messages] == ["hello"]
        assert states == [TurnState.AWAITING_MODEL, TurnState.DONE]
        assert client.requests[0] == [{"role": "user", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_api_error_ends_turn(self, make_ctx, fake_model_client):
        client = fake_model_client([create_assistant_api_error_message("API Error: overloaded")])
        messages = await _collect(
            query([create_user_message("hi")], "", make_ctx(), _allow_gate(), client)
        )
        assert len(messages) == 1
        assert messages[0].is_api_error_message

    @pytest.mark.asyncio
    async def test_client_exception_becomes_api_error(self, make_ctx):
        class BrokenClient:
            async def query(self, *args):
                raise RuntimeError("socket closed")

        messages = await _collect(
            query([create_user_message("hi")], "", make_ctx(), _allow_gate(), BrokenClient())
        )
        assert messages[-1].is_api_error_message
        assert "socket closed" in messages[-1].text

    @pytest.mark.asyncio
    async def test_two_reads_and_one_write(
        self, tmp_project, make_ctx, fake_model_client, messages_factory
    ):
        (tmp_project / "a.txt").write_text("alpha\n")
        (tmp_project / "b.txt").write_text("beta\n")
        client = fake_model_client(
            [
                messages_factory.tool_use(
                    ("t1", "Read", {"file_path": "a.txt"}),
                    ("t2", "Read", {"file_path": "b.txt"}),
                    ("t3", "Write", {"file_path": "c.txt", "content": "alpha beta\n"}),
                ),
                messages_factory.text("Combined."),
            ]
        )
        ctx = make_ctx([FileReadTool(), FileWriteTool()])
        states = []

        messages = await _collect(
            query(
                [create_user_message("combine")],
                "",
                ctx,
                _allow_gate(),
                client,
                on_state_change=states.append,
            )
        )

        assert (tmp_project / "c.txt").read_text() == "alpha beta\n"
        assert messages[-1].text == "Combined."
        assert states == [
            TurnState.AWAITING_MODEL,
            TurnState.RESOLVING_TOOLS,
            TurnState.AWAITING_MODEL,
            TurnState.DONE,
        ]

        second_request = client.requests[1]
        assert [entry["role"] for entry in second_request] == ["user", "assistant", "user"]
        results = second_request[2]["content"]
        assert [block["tool_use_id"] for block in results] == ["t1", "t2", "t3"]
        assert "alpha" in results[0]["content"]
        assert "beta" in results[1]["content"]
        assert not any(block.get("is_error") for block in results)

    @pytest.mark.asyncio
    async def test_tool_error_is_sent_back_to_model(
        self, tmp_project, make_ctx, fake_model_client, messages_factory
    ):
        client = fake_model_client(
            [
                messages_factory.tool_use(("t1", "Read", {"file_path": "missing.txt"})),
                messages_factory.text("It does not exist."),
            ]
        )
        await _collect(
            query([create_user_message("read")], "", make_ctx([FileReadTool()]), _allow_gate(), client)
        )
        result = client.requests[1][2]["content"][0]
        assert result["is_error"] is True
        assert "does not exist" in result["content"]


class TestInterruption:
    """Abort ends the turn with an interruption marker, never an exception."""

    @pytest.mark.asyncio
    async def test_abort_while_waiting_for_model(self, make_ctx, fake_model_client):
        client = fake_model_client([None])
        ctx = make_ctx()
        states = []
        asyncio.get_running_loop().call_later(0.02, ctx.abort.abort)

        messages = await _collect(
            query([create_user_message("hi")], "", ctx, _allow_gate(), client, states.append)
        )

        assert [m.text for m in messages] == [INTERRUPT_MESSAGE]
        assert states[-1] == TurnState.INTERRUPTED

    @pytest.mark.asyncio
    async def test_abort_while_running_tools(
        self, make_ctx, fake_model_client, fake_tool, messages_factory
    ):
        slow = fake_tool("Slow", delay=10)
        client = fake_model_client([messages_factory.tool_use(("t1", "Slow", {}))])
        ctx = make_ctx([slow])

        async def abort_when_started():
            await slow.started.wait()
            ctx.abort.abort()

        asyncio.get_running_loop().create_task(abort_when_started())
        messages = await _collect(
            query([create_user_message("go")], "", ctx, _allow_gate(), client)
        )

        result = messages[-2]
        assert result.content[0]["content"] == CANCEL_MESSAGE
        assert messages[-1].text == INTERRUPT_MESSAGE_FOR_TOOL_USE
        assert len(client.requests) == 1

    @pytest.mark.asyncio
    async def test_denial_interrupts_turn(self, make_ctx, fake_model_client, fake_tool, messages_factory):
        write = fake_tool("Write", read_only=False)
        client = fake_model_client([messages_factory.tool_use(("t1", "Write", {}))])
        gate = PermissionGate(prompt=lambda tool, tool_input, prefix: PermissionOutcome.DENY)

        messages = await _collect(query([create_user_message("go")], "", make_ctx([write]), gate, client))

        assert write.calls == []
        assert messages[-1].text == INTERRUPT_MESSAGE_FOR_TOOL_USE
