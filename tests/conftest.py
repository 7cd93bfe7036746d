"""Shared test configuration and fixtures for Loopsmith tests."""

import asyncio

import pytest

from loopsmith.abort import AbortController
from loopsmith.messages import AssistantMessage
from loopsmith.tool import Tool, ToolOutput, ToolProgress, ToolUseContext


@pytest.fixture
def tmp_project(tmp_path, monkeypatch):
    """Create a temporary project directory and make it the working directory."""
    project = tmp_path / "project"
    project.mkdir()
    monkeypatch.chdir(project)
    return project


@pytest.fixture
def mock_env(monkeypatch, tmp_path):
    """Clear Loopsmith environment variables and isolate the config directory."""
    env_vars_to_clear = [
        "LOOPSMITH_PROVIDER",
        "LOOPSMITH_MODEL",
        "LOOPSMITH_API_KEY",
        "ANTHROPIC_API_KEY",
        "OPENAI_API_KEY",
    ]
    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)
    config_dir = tmp_path / "config"
    monkeypatch.setenv("LOOPSMITH_CONFIG_DIR", str(config_dir))
    return config_dir


class FakeTool(Tool):
    """Configurable tool for scheduler and engine tests.

    Records every input it is called with in `calls`. Emits `progress`
    strings, sleeps `delay` seconds, then raises `error` or returns
    `"<name> done: <input>"`.
    """

    def __init__(self, name, read_only=True, delay=0.0, progress=(), error=None, needs_permission=None):
        self.name = name
        self.input_schema = {
            "type": "object",
            "properties": {"value": {"type": "string"}},
            "required": [],
        }
        self.read_only = read_only
        self.delay = delay
        self.progress = list(progress)
        self.error = error
        self.needs_permission = needs_permission
        self.calls = []
        self.started = asyncio.Event()
        self.finished = []

    def is_read_only(self):
        return self.read_only

    def needs_permissions(self, tool_input):
        if self.needs_permission is None:
            return not self.read_only
        return self.needs_permission

    async def call(self, tool_input, ctx):
        self.calls.append(tool_input)
        self.started.set()
        for content in self.progress:
            yield ToolProgress(content)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.finished.append(tool_input)
        result = f"{self.name} done: {tool_input.get('value', '')}"
        yield ToolOutput(data=result, result_for_assistant=result)


class FakeModelClient:
    """Returns scripted assistant messages in order and records each request.

    A script entry of None blocks until the request is cancelled.
    """

    def __init__(self, responses=()):
        self.responses = list(responses)
        self.requests = []

    async def query(self, messages, system_prompt, tools, abort=None, model=None):
        self.requests.append(messages)
        response = self.responses.pop(0)
        if response is None:
            await asyncio.Event().wait()
        return response


def tool_use_message(*calls, message_id=None):
    """Assistant message with one tool_use block per (id, name, input) tuple."""
    content = [
        {"type": "tool_use", "id": tool_use_id, "name": name, "input": tool_input}
        for tool_use_id, name, tool_input in calls
    ]
    kwargs = {"message_id": message_id} if message_id else {}
    return AssistantMessage(content=content, model="test-model", **kwargs)


def text_message(text):
    return AssistantMessage(content=[{"type": "text", "text": text}], model="test-model")


@pytest.fixture
def fake_tool():
    return FakeTool


@pytest.fixture
def fake_model_client():
    return FakeModelClient


@pytest.fixture
def make_ctx():
    def _make_ctx(tools=(), **kwargs):
        return ToolUseContext(abort=AbortController(), tools=tuple(tools), **kwargs)

    return _make_ctx


@pytest.fixture
def messages_factory():
    """Builders for assistant messages: tool_use(...) and text(...)."""

    class Builders:
        tool_use = staticmethod(tool_use_message)
        text = staticmethod(text_message)

    return Builders
