"""Pure transforms over conversation message lists.

Two views of the same conversation exist. The render view has one message per
content block, with each tool result moved right after its tool use. The API
view has one entry per model response and one user entry per group of tool
results, with progress updates dropped. Both are derived here and neither
mutates its input.
"""

from .messages import (
    NO_CONTENT_MESSAGE,
    AssistantMessage,
    UserMessage,
    is_tool_result_message,
)


def _index_of(items, target):
    for index, item in enumerate(items):
        if item is target:
            return index
    raise ValueError("message not in list")


def normalize_messages(messages):
    """Split messages so each content block gets its own message.

    Assistant fragments keep the response's message_id and divide its cost.
    Progress messages and plain-text user messages pass through unchanged.
    """
    normalized = []
    for message in messages:
        if message.type == "progress" or isinstance(message.content, str):
            normalized.append(message)
            continue
        if len(message.content) <= 1:
            normalized.append(message)
            continue

        count = len(message.content)
        for block in message.content:
            if message.type == "assistant":
                normalized.append(
                    AssistantMessage(
                        content=[block],
                        usage=message.usage,
                        cost_usd=message.cost_usd / count,
                        duration_ms=message.duration_ms,
                        message_id=message.message_id,
                        model=message.model,
                        stop_reason=message.stop_reason,
                        is_api_error_message=message.is_api_error_message,
                    )
                )
            else:
                normalized.append(
                    UserMessage(content=[block], tool_use_result=message.tool_use_result)
                )
    return normalized


def _first_block(message):
    if message.type == "progress" or isinstance(message.content, str) or not message.content:
        return None
    return message.content[0]


def get_tool_use_id(message):
    """The tool_use id a normalized message belongs to, or None."""
    if message.type == "progress":
        return message.tool_use_id
    block = _first_block(message)
    if block is None:
        return None
    if message.type == "assistant" and block.get("type") == "tool_use":
        return block.get("id")
    if message.type == "user" and block.get("type") == "tool_result":
        return block.get("tool_use_id")
    return None


def _is_tool_use_request(message):
    block = _first_block(message)
    return message.type == "assistant" and block is not None and block.get("type") == "tool_use"


def reorder_messages(normalized):
    """Move each tool result, and the latest progress for it, after its tool use.

    A result whose tool use is not in the list keeps its position.
    """
    ordered = []
    tool_use_messages = {}

    for message in normalized:
        if _is_tool_use_request(message):
            tool_use_messages[_first_block(message).get("id")] = message

        if message.type == "progress":
            existing = next(
                (
                    m
                    for m in ordered
                    if m.type == "progress" and m.tool_use_id == message.tool_use_id
                ),
                None,
            )
            if existing is not None:
                ordered[_index_of(ordered, existing)] = message
                continue
            tool_use = tool_use_messages.get(message.tool_use_id)
            if tool_use is not None:
                ordered.insert(_index_of(ordered, tool_use) + 1, message)
                continue
            ordered.append(message)
            continue

        if is_tool_result_message(message):
            tool_use_id = message.content[0].get("tool_use_id")
            progress = next(
                (m for m in ordered if m.type == "progress" and m.tool_use_id == tool_use_id),
                None,
            )
            if progress is not None:
                ordered.insert(_index_of(ordered, progress) + 1, message)
                continue
            tool_use = tool_use_messages.get(tool_use_id)
            if tool_use is not None:
                ordered.insert(_index_of(ordered, tool_use) + 1, message)
                continue

        ordered.append(message)

    return ordered


def _tool_result_ids(messages):
    """Map of tool_use_id to its is_error flag, for every tool result present."""
    results = {}
    for message in messages:
        if message.type != "user" or isinstance(message.content, str):
            continue
        for block in message.content:
            if block.get("type") == "tool_result":
                results[block.get("tool_use_id")] = bool(block.get("is_error", False))
    return results


def _tool_use_ids_in_order(messages):
    ids = []
    for message in messages:
        if message.type != "assistant":
            continue
        for block in message.content:
            if block.get("type") == "tool_use":
                ids.append(block.get("id"))
    return ids


def _unresolved_in_order(messages):
    resolved = _tool_result_ids(messages)
    return [tool_use_id for tool_use_id in _tool_use_ids_in_order(messages) if tool_use_id not in resolved]


def get_unresolved_tool_use_ids(messages) -> set:
    """Ids of tool uses that have no tool result yet."""
    return set(_unresolved_in_order(messages))


def get_in_progress_tool_use_ids(messages) -> set:
    """Unresolved tool uses that have reported progress, plus the first unresolved one."""
    unresolved = _unresolved_in_order(messages)
    with_progress = {m.tool_use_id for m in messages if m.type == "progress"}
    in_progress = {tool_use_id for tool_use_id in unresolved if tool_use_id in with_progress}
    if unresolved:
        in_progress.add(unresolved[0])
    return in_progress


def get_errored_tool_use_messages(messages) -> list:
    """Tool-use assistant messages whose result is marked as an error."""
    results = _tool_result_ids(messages)
    errored = []
    for message in messages:
        if not _is_tool_use_request(message):
            continue
        if results.get(_first_block(message).get("id")):
            errored.append(message)
    return errored


def _intersects(a, b):
    return bool(a) and bool(b) and any(item in b for item in a)


def should_render_statically(message, messages, unresolved_tool_use_ids) -> bool:
    """True once a message can be flushed to scrollback and never redrawn."""
    if message.type == "progress":
        return not _intersects(unresolved_tool_use_ids, message.sibling_tool_use_ids)

    tool_use_id = get_tool_use_id(message)
    if not tool_use_id:
        return True
    if tool_use_id in unresolved_tool_use_ids:
        return False

    progress = next(
        (m for m in messages if m.type == "progress" and m.tool_use_id == tool_use_id),
        None,
    )
    if progress is None:
        return True
    return not _intersects(unresolved_tool_use_ids, progress.sibling_tool_use_ids)


def _as_blocks(content):
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    return list(content)


def _is_tool_result_entry(entry):
    return (
        entry["role"] == "user"
        and isinstance(entry["content"], list)
        and bool(entry["content"])
        and all(block.get("type") == "tool_result" for block in entry["content"])
    )


def _mergeable_assistant(entries, entry_ids, message_id):
    """The earlier entry for the same response, if only tool results follow it."""
    for index in range(len(entries) - 1, -1, -1):
        entry = entries[index]
        if entry["role"] == "assistant":
            return entry if entry_ids[index] == message_id else None
        if not _is_tool_result_entry(entry):
            return None
    return None


def normalize_messages_for_api(messages) -> list:
    """Build the history the model client is allowed to see.

    Progress is dropped. Fragments of one response are stitched back together.
    Consecutive user entries are merged, and tool results inside a user entry
    come first, in the order their tool uses were emitted.
    """
    tool_use_order = {
        tool_use_id: position
        for position, tool_use_id in enumerate(_tool_use_ids_in_order(messages))
    }

    entries = []
    entry_ids = []
    for message in messages:
        if message.type == "progress":
            continue

        if message.type == "assistant":
            target = _mergeable_assistant(entries, entry_ids, message.message_id)
            if target is not None:
                target["content"].extend(message.content)
                continue
            entries.append({"role": "assistant", "content": list(message.content)})
            entry_ids.append(message.message_id)
            continue

        if entries and entries[-1]["role"] == "user":
            previous = entries[-1]
            previous["content"] = _as_blocks(previous["content"]) + _as_blocks(message.content)
            continue
        content = message.content if isinstance(message.content, str) else list(message.content)
        entries.append({"role": "user", "content": content})
        entry_ids.append(None)

    for entry in entries:
        if entry["role"] == "user" and isinstance(entry["content"], list):
            entry["content"] = _order_tool_results(entry["content"], tool_use_order)
    return entries


def _order_tool_results(blocks, tool_use_order):
    results = [block for block in blocks if block.get("type") == "tool_result"]
    others = [block for block in blocks if block.get("type") != "tool_result"]
    unknown = len(tool_use_order)
    results.sort(key=lambda block: tool_use_order.get(block.get("tool_use_id"), unknown))
    return results + others


def normalize_content_from_api(content) -> list:
    """Drop blank text blocks; an empty response becomes a placeholder block."""
    filtered = [
        block
        for block in content
        if block.get("type") != "text" or block.get("text", "").strip()
    ]
    if not filtered:
        return [{"type": "text", "text": NO_CONTENT_MESSAGE}]
    return filtered
