"""Tests for the conversation session: turns, cancel and fork."""

import asyncio

import pytest

from loopsmith import transcript
from loopsmith.messages import INTERRUPT_MESSAGE
from loopsmith.permissions import PermissionGate
from loopsmith.session import ConversationSession


@pytest.fixture
def make_session(tmp_path, fake_model_client):
    def _make_session(responses=(), tools=()):
        return ConversationSession(
            model_client=fake_model_client(responses),
            tools=tools,
            permission_gate=PermissionGate(),
            messages_dir=tmp_path / "messages",
            log_name="2025-01-27T01-31-35-104Z",
        )

    return _make_session


async def _submit(session, prompt):
    return [message async for message in session.submit(prompt)]


class TestSubmit:
    @pytest.mark.asyncio
    async def test_turn_appends_prompt_and_reply(self, make_session, messages_factory):
        session = make_session([messages_factory.text("hi there")])
        produced = await _submit(session, "hello")

        assert [m.type for m in produced] == ["user", "assistant"]
        assert session.messages == produced
        assert session.is_running is False

    @pytest.mark.asyncio
    async def test_transcript_mirrors_history(self, make_session, messages_factory):
        session = make_session([messages_factory.text("hi there")])
        await _submit(session, "hello")

        entries = transcript.read_log(session.transcript_path)
        assert [entry["type"] for entry in entries] == ["user", "assistant"]
        assert entries[0]["session_id"] == transcript.SESSION_ID

    @pytest.mark.asyncio
    async def test_progress_is_not_kept(self, make_session, messages_factory, fake_tool):
        tool = fake_tool("Chatty", progress=["working"])
        session = make_session(
            [messages_factory.tool_use(("t1", "Chatty", {})), messages_factory.text("done")],
            tools=[tool],
        )
        produced = await _submit(session, "go")

        assert any(m.type == "progress" for m in produced)
        assert all(m.type != "progress" for m in session.messages)
        assert all(entry["type"] != "progress" for entry in transcript.read_log(session.transcript_path))


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_interrupts_model_call(self, make_session):
        session = make_session([None])

        async def cancel_soon():
            await asyncio.sleep(0.02)
            session.cancel()
            session.cancel()

        asyncio.get_running_loop().create_task(cancel_soon())
        produced = await _submit(session, "hello")

        assert produced[-1].text == INTERRUPT_MESSAGE
        assert session.is_running is False

    def test_cancel_without_turn_is_noop(self, make_session):
        make_session().cancel()


class TestFork:
    """Forking starts a new transcript and leaves the old one alone."""

    @pytest.mark.asyncio
    async def test_fork_writes_new_file(self, make_session, messages_factory):
        session = make_session([messages_factory.text("one"), messages_factory.text("two")])
        await _submit(session, "first")
        original_path = session.transcript_path
        original_entries = transcript.read_log(original_path)

        session.fork(session.messages[:1])
        await _submit(session, "second")

        assert session.fork_number == 1
        assert session.transcript_path != original_path
        assert session.transcript_path.name == "2025-01-27T01-31-35-104Z-1.json"
        assert transcript.read_log(original_path) == original_entries
        assert len(transcript.read_log(session.transcript_path)) == 3

    @pytest.mark.asyncio
    async def test_fork_skips_existing_fork_files(self, make_session, tmp_path):
        session = make_session()
        taken = transcript.get_messages_path(session.log_name, 1, 0, tmp_path / "messages")
        taken.parent.mkdir(parents=True)
        taken.write_text("[]")

        session.fork([])
        assert session.fork_number == 2

    @pytest.mark.asyncio
    async def test_fork_during_turn_drops_remaining_output(self, make_session, messages_factory):
        session = make_session([None])
        produced = []

        async def run():
            async for message in session.submit("hello"):
                produced.append(message)

        task = asyncio.get_running_loop().create_task(run())
        await asyncio.sleep(0.02)
        session.fork([])
        await task

        assert session.messages == []
        assert [m.type for m in produced] == ["user"]
