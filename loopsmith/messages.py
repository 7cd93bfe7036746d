# Loopsmith - Agent Turn Runtime
# Copyright (c) 2024-2026 Matthew Bright
# Licensed under the MIT License. See LICENSE file for details.

"""Conversation message model.

Loopsmith Principle: Standardized Interfaces Over Custom Protocols
Every entry in a conversation is one of three shapes: a user message, an
assistant message, or a progress update from a running tool. Content blocks
stay plain dicts in the Anthropic wire shape so they can go straight to the
model client and straight into the transcript.
"""

import uuid as uuid_lib
from dataclasses import dataclass, field
from typing import ClassVar

INTERRUPT_MESSAGE = "[Request interrupted by user]"
INTERRUPT_MESSAGE_FOR_TOOL_USE = "[Request interrupted by user for tool use]"
CANCEL_MESSAGE = (
    "The user doesn't want to take this action right now. STOP what you are doing "
    "and wait for the user to tell you how to proceed."
)
REJECT_MESSAGE = (
    "The user doesn't want to proceed with this tool use. The tool use was rejected "
    "(eg. if it was a file edit, the new_string was NOT written to the file). STOP "
    "what you are doing and wait for the user to tell you how to proceed."
)
NO_RESPONSE_REQUESTED = "No response requested."
NO_CONTENT_MESSAGE = "(no content)"

SYNTHETIC_ASSISTANT_MESSAGES = frozenset(
    {
        INTERRUPT_MESSAGE,
        INTERRUPT_MESSAGE_FOR_TOOL_USE,
        CANCEL_MESSAGE,
        REJECT_MESSAGE,
        NO_RESPONSE_REQUESTED,
    }
)

SYNTHETIC_MODEL = "<synthetic>"


def _new_uuid():
    return str(uuid_lib.uuid4())


def _empty_usage():
    return {
        "input_tokens": 0,
        "output_tokens": 0,
        "cache_creation_input_tokens": 0,
        "cache_read_input_tokens": 0,
    }


@dataclass
class ToolUseResult:
    """What a tool returned, kept next to the tool_result block for the UI."""

    data: object
    result_for_assistant: object

    def to_dict(self) -> dict:
        return {"data": self.data, "result_for_assistant": self.result_for_assistant}


@dataclass
class UserMessage:
    content: str | list
    uuid: str = field(default_factory=_new_uuid)
    tool_use_result: ToolUseResult | None = None

    type: ClassVar[str] = "user"

    def to_dict(self) -> dict:
        result = {"type": self.type, "uuid": self.uuid, "content": self.content}
        if self.tool_use_result is not None:
            result["tool_use_result"] = self.tool_use_result.to_dict()
        return result


@dataclass
class AssistantMessage:
    """One model response.

    `message_id` is the provider's id for the response. Fragments produced by
    splitting a response share it, which is how they get stitched back
    together before the next model call.
    """

    content: list
    usage: dict = field(default_factory=_empty_usage)
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    uuid: str = field(default_factory=_new_uuid)
    message_id: str = field(default_factory=_new_uuid)
    model: str = SYNTHETIC_MODEL
    stop_reason: str | None = None
    is_api_error_message: bool = False

    type: ClassVar[str] = "assistant"

    @property
    def tool_use_blocks(self) -> list:
        return [block for block in self.content if block.get("type") == "tool_use"]

    @property
    def text(self) -> str:
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    def to_dict(self) -> dict:
        result = {
            "type": self.type,
            "uuid": self.uuid,
            "message_id": self.message_id,
            "model": self.model,
            "content": self.content,
            "usage": self.usage,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
        }
        if self.stop_reason:
            result["stop_reason"] = self.stop_reason
        if self.is_api_error_message:
            result["is_api_error_message"] = True
        return result


@dataclass
class ProgressMessage:
    """Live status from a tool that has not finished yet. Never persisted."""

    tool_use_id: str
    sibling_tool_use_ids: frozenset
    content: AssistantMessage
    normalized_messages: list = field(default_factory=list)
    uuid: str = field(default_factory=_new_uuid)

    type: ClassVar[str] = "progress"


def message_from_dict(data: dict):
    """Rebuild a user or assistant message from its transcript form."""
    kind = data.get("type")
    if kind == "user":
        tool_use_result = None
        raw_result = data.get("tool_use_result")
        if isinstance(raw_result, dict):
            tool_use_result = ToolUseResult(
                data=raw_result.get("data"),
                result_for_assistant=raw_result.get("result_for_assistant"),
            )
        return UserMessage(
            content=data.get("content", ""),
            uuid=data.get("uuid") or _new_uuid(),
            tool_use_result=tool_use_result,
        )
    if kind == "assistant":
        return AssistantMessage(
            content=list(data.get("content", [])),
            usage=data.get("usage") or _empty_usage(),
            cost_usd=data.get("cost_usd", 0.0),
            duration_ms=data.get("duration_ms", 0.0),
            uuid=data.get("uuid") or _new_uuid(),
            message_id=data.get("message_id") or _new_uuid(),
            model=data.get("model", SYNTHETIC_MODEL),
            stop_reason=data.get("stop_reason"),
            is_api_error_message=data.get("is_api_error_message", False),
        )
    raise ValueError(f"Unknown message type in transcript: {kind!r}")


def _text_block(text):
    return {"type": "text", "text": NO_CONTENT_MESSAGE if text == "" else text}


def create_user_message(content, tool_use_result=None) -> UserMessage:
    return UserMessage(content=content, tool_use_result=tool_use_result)


def create_assistant_message(content: str) -> AssistantMessage:
    """Build a synthetic assistant message holding one text block."""
    return AssistantMessage(content=[_text_block(content)], stop_reason="stop_sequence")


def create_assistant_api_error_message(content: str) -> AssistantMessage:
    message = create_assistant_message(content)
    message.is_api_error_message = True
    return message


def create_progress_message(
    tool_use_id, sibling_tool_use_ids, content, normalized_messages=None
) -> ProgressMessage:
    return ProgressMessage(
        tool_use_id=tool_use_id,
        sibling_tool_use_ids=frozenset(sibling_tool_use_ids),
        content=content,
        normalized_messages=list(normalized_messages or []),
    )


def create_tool_result_block(tool_use_id, content, is_error=False) -> dict:
    block = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error:
        block["is_error"] = True
    return block


def create_tool_result_stop_message(tool_use_id) -> dict:
    """Tool result for a call that was cancelled before it finished."""
    return create_tool_result_block(tool_use_id, CANCEL_MESSAGE, is_error=True)


def create_tool_result_reject_message(tool_use_id) -> dict:
    """Tool result for a call the user refused."""
    return create_tool_result_block(tool_use_id, REJECT_MESSAGE, is_error=True)


def is_tool_result_message(message) -> bool:
    return (
        message.type == "user"
        and isinstance(message.content, list)
        and bool(message.content)
        and message.content[0].get("type") == "tool_result"
    )


def is_not_empty_message(message) -> bool:
    """False for messages that would render as nothing."""
    if message.type == "progress":
        return True
    content = message.content
    if isinstance(content, str):
        return bool(content.strip())
    if not content:
        return False
    if len(content) > 1 or content[0].get("type") != "text":
        return True
    text = content[0].get("text", "")
    return bool(text.strip()) and text not in (NO_CONTENT_MESSAGE, INTERRUPT_MESSAGE_FOR_TOOL_USE)

