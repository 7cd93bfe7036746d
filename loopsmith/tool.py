"""Tool descriptor, call events and the per-turn tool context.

Loopsmith Principle: Standardized Interfaces Over Custom Protocols
Every tool exposes the same capability record. A call is an async generator
that yields zero or more ToolProgress events and then exactly one ToolOutput.
A failure is a raised exception; the scheduler turns it into an error result.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from .abort import AbortController

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProgress:
    """Intermediate status from a running tool."""

    content: str
    normalized_messages: list = field(default_factory=list)


@dataclass(frozen=True)
class ToolOutput:
    """Terminal event of a tool call.

    `data` is the structured output kept for the UI; `result_for_assistant`
    is what the model sees in the tool_result block.
    """

    data: object
    result_for_assistant: object


@dataclass(frozen=True)
class ValidationResult:
    result: bool
    message: str = ""
    meta: dict = field(default_factory=dict)

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(result=True)

    @classmethod
    def fail(cls, message: str, **meta) -> "ValidationResult":
        return cls(result=False, message=message, meta=meta)


@dataclass(frozen=True)
class ToolUseContext:
    """Immutable configuration shared by every tool call in a turn."""

    abort: AbortController
    tools: tuple = ()
    model: str = ""
    dangerously_skip_permissions: bool = False
    read_file_timestamps: dict = field(default_factory=dict)
    fork_conversation: Callable | None = None
    verbose: bool = False
    max_tool_concurrency: int = 10

    @property
    def signal(self):
        return self.abort.signal

    def find_tool(self, name):
        for tool in self.tools:
            if tool.name == name:
                return tool
        return None


class Tool:
    """Base class for everything the model can call.

    Subclasses set `name` and `input_schema` and implement `call`.
    """

    name = ""
    input_schema = {"type": "object", "properties": {}, "required": []}

    def description(self) -> str:
        return ""

    def is_read_only(self) -> bool:
        return False

    def needs_permissions(self, tool_input) -> bool:
        return not self.is_read_only()

    async def validate_input(self, tool_input, ctx) -> ValidationResult:
        return ValidationResult.ok()

    def permission_key(self, tool_input, prefix=None) -> str:
        """Signature stored when the user approves this call permanently."""
        return self.name

    def permission_prefix(self, tool_input):
        """Broader signature offered for "always allow", or None."""
        return None

    def render_tool_use(self, tool_input) -> str:
        return ", ".join(f"{key}: {value!r}" for key, value in tool_input.items())

    def render_result_for_assistant(self, data):
        return data if isinstance(data, str) else str(data)

    def to_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description(),
            "input_schema": self.input_schema,
        }

    async def call(self, tool_input, ctx):
        raise NotImplementedError
        yield  # pragma: no cover


JSON_TYPES = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list,),
}


def _matches_type(value, expected) -> bool:
    if expected not in JSON_TYPES:
        return True
    # bool is an int subclass in Python but not a JSON number
    if isinstance(value, bool) and expected in ("integer", "number"):
        return False
    return isinstance(value, JSON_TYPES[expected])


def validate_tool_input(schema: dict, tool_input) -> tuple[bool, str]:
    """Check tool input against the top level of a JSON schema.

    Only required keys and the JSON type of each declared property are
    checked. Unknown keys are rejected.

    Returns:
        (is_valid, error_message) tuple
    """
    if not isinstance(tool_input, dict):
        return False, f"Tool input is not an object: {type(tool_input).__name__}"

    properties = schema.get("properties", {})
    for key in schema.get("required", []):
        if key not in tool_input:
            return False, f"The required parameter `{key}` is missing"

    for key, value in tool_input.items():
        if key not in properties:
            if schema.get("additionalProperties", False):
                continue
            return False, f"An unexpected parameter `{key}` was provided"
        expected = properties[key].get("type")
        if expected and not _matches_type(value, expected):
            return (
                False,
                f"The parameter `{key}` type is expected as `{expected}` "
                f"but provided as `{type(value).__name__}`",
            )

    return True, ""
