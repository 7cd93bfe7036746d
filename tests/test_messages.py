"""Tests for message types and factories."""

import pytest

from loopsmith.messages import (
    CANCEL_MESSAGE,
    INTERRUPT_MESSAGE_FOR_TOOL_USE,
    NO_CONTENT_MESSAGE,
    REJECT_MESSAGE,
    AssistantMessage,
    ToolUseResult,
    UserMessage,
    create_assistant_api_error_message,
    create_assistant_message,
    create_progress_message,
    create_tool_result_block,
    create_tool_result_reject_message,
    create_tool_result_stop_message,
    create_user_message,
    is_not_empty_message,
    is_tool_result_message,
    message_from_dict,
)


class TestFactories:
    def test_assistant_message_has_one_text_block(self):
        message = create_assistant_message("hello")
        assert message.content == [{"type": "text", "text": "hello"}]
        assert message.stop_reason == "stop_sequence"

    def test_empty_text_becomes_no_content(self):
        message = create_assistant_message("")
        assert message.content[0]["text"] == NO_CONTENT_MESSAGE

    def test_api_error_message_is_flagged(self):
        message = create_assistant_api_error_message("API Error: boom")
        assert message.is_api_error_message is True
        assert message.text == "API Error: boom"

    def test_stop_message_is_error_with_cancel_text(self):
        block = create_tool_result_stop_message("t1")
        assert block == {
            "type": "tool_result",
            "tool_use_id": "t1",
            "content": CANCEL_MESSAGE,
            "is_error": True,
        }

    def test_reject_message_is_error_with_reject_text(self):
        block = create_tool_result_reject_message("t1")
        assert block["content"] == REJECT_MESSAGE
        assert block["is_error"] is True

    def test_successful_result_has_no_error_flag(self):
        assert "is_error" not in create_tool_result_block("t1", "ok")

    def test_progress_message_freezes_siblings(self):
        progress = create_progress_message("t1", ["t1", "t2"], create_assistant_message("..."))
        assert progress.sibling_tool_use_ids == frozenset({"t1", "t2"})
        assert progress.type == "progress"

    def test_every_message_gets_a_fresh_uuid(self):
        assert create_user_message("a").uuid != create_user_message("a").uuid


class TestPredicates:
    def test_is_tool_result_message(self):
        assert is_tool_result_message(create_user_message([create_tool_result_block("t1", "x")]))
        assert not is_tool_result_message(create_user_message("hi"))

    def test_empty_messages(self):
        assert not is_not_empty_message(create_user_message("   "))
        assert not is_not_empty_message(create_assistant_message(""))
        assert not is_not_empty_message(create_assistant_message(INTERRUPT_MESSAGE_FOR_TOOL_USE))
        assert is_not_empty_message(create_assistant_message("hi"))


class TestSerialization:
    def test_user_message_round_trips_through_dict(self):
        message = create_user_message(
            [create_tool_result_block("t1", "ok")],
            tool_use_result=ToolUseResult(data={"a": 1}, result_for_assistant="ok"),
        )
        restored = message_from_dict(message.to_dict())
        assert isinstance(restored, UserMessage)
        assert restored.uuid == message.uuid
        assert restored.content == message.content
        assert restored.tool_use_result.data == {"a": 1}

    def test_assistant_message_keeps_message_id(self):
        message = AssistantMessage(
            content=[{"type": "text", "text": "hi"}], message_id="msg_1", model="m"
        )
        restored = message_from_dict(message.to_dict())
        assert restored.message_id == "msg_1"
        assert restored.model == "m"

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError):
            message_from_dict({"type": "progress"})
