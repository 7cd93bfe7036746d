"""Transcript files and the session error log.

Loopsmith Principle: Observable by Default
A conversation is mirrored to a JSON array after every change. Each fork
gets its own file and older files are never rewritten, so every branch of a
conversation stays on disk as it was.

File names: <date>[-<fork>][-sidechain-<n>].json
"""

import json
import logging
import os
import traceback
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path

from . import __version__
from .config import get_errors_dir, get_messages_dir
from .messages import message_from_dict

logger = logging.getLogger(__name__)

SESSION_ID = str(uuid.uuid4())
MAX_IN_MEMORY_ERRORS = 100

_in_memory_errors = deque(maxlen=MAX_IN_MEMORY_ERRORS)


def date_to_filename(date: datetime) -> str:
    """ISO timestamp with ':' and '.' replaced, e.g. 2025-01-27T01-31-35-104Z."""
    stamp = date.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
    return f"{stamp}-{date.microsecond // 1000:03d}Z"


DATE = date_to_filename(datetime.now(timezone.utc))


def get_messages_path(log_name, fork_number=0, sidechain_number=0, messages_dir=None) -> Path:
    directory = Path(messages_dir) if messages_dir else get_messages_dir()
    name = log_name
    if fork_number > 0:
        name += f"-{fork_number}"
    if sidechain_number > 0:
        name += f"-sidechain-{sidechain_number}"
    return directory / f"{name}.json"


def parse_log_filename(filename) -> tuple:
    """Split a transcript file name into (date, fork_number, sidechain_number).

    Missing numbers come back as None.
    """
    base = Path(filename).name.split(".")[0]
    # a bare date has 6 dash-separated segments
    segments = base.split("-")
    date = "-".join(segments[:6])
    fork_number = None
    sidechain_number = None

    if "sidechain" in segments:
        index = segments.index("sidechain")
        sidechain_number = _to_int(segments[index + 1]) if index + 1 < len(segments) else None
        if index > 6:
            fork_number = _to_int(segments[index - 1])
    elif len(segments) > 6:
        fork_number = _to_int(segments[-1])
    else:
        date = base

    return date, fork_number, sidechain_number


def _to_int(value):
    try:
        number = int(value)
    except ValueError:
        return None
    return number if number >= 0 else None


def get_next_available_fork_number(log_name, fork_number, sidechain_number=0, messages_dir=None) -> int:
    """First fork number at or after `fork_number` with no transcript file."""
    while get_messages_path(log_name, fork_number, sidechain_number, messages_dir).exists():
        fork_number += 1
    return fork_number


def get_next_available_sidechain_number(log_name, fork_number, messages_dir=None) -> int:
    sidechain_number = 1
    while get_messages_path(log_name, fork_number, sidechain_number, messages_dir).exists():
        sidechain_number += 1
    return sidechain_number


def _metadata():
    return {
        "cwd": os.getcwd(),
        "session_id": SESSION_ID,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": __version__,
    }


def overwrite_log(path, messages):
    """Write the full list of serialized messages to `path`. Empty lists are skipped."""
    if not messages:
        return
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    metadata = _metadata()
    entries = [{**message, **metadata} for message in messages]
    path.write_text(json.dumps(entries, indent=2, default=str))


def read_log(path) -> list:
    path = Path(path)
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        logger.warning(f"Unreadable log {path}: {e}")
        return []
    return data if isinstance(data, list) else []


def load_transcript(path) -> list:
    """Rebuild the messages stored in a transcript file."""
    return [message_from_dict(entry) for entry in read_log(path)]


def get_errors_path(errors_dir=None) -> Path:
    directory = Path(errors_dir) if errors_dir else get_errors_dir()
    return directory / f"{DATE}.json"


def log_error(error, errors_dir=None):
    """Record an error in memory and in this session's error log."""
    if isinstance(error, BaseException):
        error_str = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    else:
        error_str = str(error)

    logger.error(error_str.strip().splitlines()[-1] if error_str.strip() else "Unknown error")
    _in_memory_errors.append(
        {"error": error_str, "timestamp": datetime.now(timezone.utc).isoformat()}
    )

    path = get_errors_path(errors_dir)
    try:
        entries = read_log(path)
        entries.append({"error": error_str, **_metadata()})
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(entries, indent=2))
    except OSError as e:
        logger.warning(f"Could not write error log {path}: {e}")


def get_in_memory_errors() -> list:
    return list(_in_memory_errors)


def get_errors_log(errors_dir=None) -> list:
    return read_log(get_errors_path(errors_dir))
