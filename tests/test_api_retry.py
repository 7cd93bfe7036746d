"""Tests for API client retry logic, cost accounting and error messages."""

from types import SimpleNamespace

import pytest

import loopsmith.api_client as api_client
from loopsmith.api_client import (
    BaseModelClient,
    OpenAIClient,
    RetryableError,
    calculate_backoff_delay,
    calculate_cost,
    get_assistant_message_from_error,
    get_total_cost,
    is_retryable_error,
    reset_total_cost,
    with_retry,
)


class TestCalculateBackoffDelay:
    """Tests for exponential backoff calculation."""

    def test_first_attempt_delay(self):
        """First attempt should use base delay."""
        delay = calculate_backoff_delay(0, base_delay=1.0, jitter=False)
        assert delay == 1.0

    def test_exponential_growth(self):
        """Delays should grow exponentially."""
        delays = [calculate_backoff_delay(i, base_delay=1.0, jitter=False) for i in range(5)]
        # 1, 2, 4, 8, 16
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_max_delay_cap(self):
        """Delay should be capped at max_delay."""
        delay = calculate_backoff_delay(10, base_delay=1.0, max_delay=30.0, jitter=False)
        assert delay == 30.0  # 2^10 = 1024, but capped at 30

    def test_jitter_adds_randomness(self):
        """Jitter should add 0-50% random variance."""
        delays = [calculate_backoff_delay(0, base_delay=1.0, jitter=True) for _ in range(100)]
        assert all(1.0 <= d <= 1.5 for d in delays)
        assert len(set(delays)) > 1


class TestIsRetryableError:
    """Tests for error classification."""

    def test_rate_limit_errors(self):
        """Rate limit errors should be retryable."""
        for msg in ["rate_limit_exceeded", "Too Many Requests", "Error 429: quota exceeded"]:
            is_retryable, is_rate_limit = is_retryable_error(Exception(msg))
            assert is_retryable is True, f"Should be retryable: {msg}"
            assert is_rate_limit is True, f"Should be rate limit: {msg}"

    def test_connection_errors(self):
        is_retryable, is_rate_limit = is_retryable_error(ConnectionError("Connection refused"))
        assert is_retryable is True
        assert is_rate_limit is False

    def test_overloaded(self):
        assert is_retryable_error(Exception("529 overloaded_error"))[0] is True

    def test_auth_errors_are_not_retryable(self):
        assert is_retryable_error(Exception("invalid x-api-key")) == (False, False)


class TestWithRetry:
    """Tests for the async retry decorator."""

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        attempts = []

        @with_retry(max_retries=3, base_delay=0.001, max_delay=0.001)
        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert await flaky() == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        attempts = []

        @with_retry(max_retries=2, base_delay=0.001, max_delay=0.001)
        async def always_fails():
            attempts.append(1)
            raise TimeoutError("slow")

        with pytest.raises(TimeoutError):
            await always_fails()
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_retryable_error_wrapper_is_retried(self):
        attempts = []

        @with_retry(max_retries=2, base_delay=0.001, max_delay=0.001)
        async def rate_limited():
            attempts.append(1)
            if len(attempts) == 1:
                raise RetryableError(Exception("429"), is_rate_limit=True)
            return "ok"

        assert await rate_limited() == "ok"
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        attempts = []

        @with_retry(max_retries=3, base_delay=0.001)
        async def bad_request():
            attempts.append(1)
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            await bad_request()
        assert len(attempts) == 1


class TestErrorMessages:
    def test_prompt_too_long(self):
        message = get_assistant_message_from_error(Exception("prompt is too long: 250000 tokens"))
        assert message.text == "Prompt is too long"
        assert message.is_api_error_message

    def test_credit_balance(self):
        message = get_assistant_message_from_error(Exception("Your credit balance is too low"))
        assert message.text == "Credit balance is too low"

    def test_invalid_key(self):
        message = get_assistant_message_from_error(Exception("invalid x-api-key"))
        assert message.text == "Invalid API key"

    def test_generic(self):
        assert get_assistant_message_from_error(Exception("boom")).text == "API Error: boom"


class ScriptedClient(BaseModelClient):
    """Model client whose provider call is a list of results or exceptions."""

    def __init__(self, script, model="claude-sonnet-4-5"):
        super().__init__(model)
        self.script = list(script)
        self.calls = []

    async def _create(self, messages, system_prompt, tool_schemas, model):
        self.calls.append((messages, system_prompt, tool_schemas, model))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _response(content, response_id="msg_123"):
    return {
        "id": response_id,
        "content": content,
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 1_000_000, "output_tokens": 0},
    }


class TestBaseModelClient:
    @pytest.fixture(autouse=True)
    def no_backoff(self, monkeypatch):
        monkeypatch.setattr(api_client, "calculate_backoff_delay", lambda *args, **kwargs: 0)
        reset_total_cost()
        yield
        reset_total_cost()

    @pytest.mark.asyncio
    async def test_builds_assistant_message(self):
        client = ScriptedClient([_response([{"type": "text", "text": "hi"}])])
        message = await client.query([{"role": "user", "content": "hello"}], ["a", "b"], [])

        assert message.text == "hi"
        assert message.message_id == "msg_123"
        assert message.model == "claude-sonnet-4-5"
        assert message.cost_usd == pytest.approx(3.0)
        assert get_total_cost() == pytest.approx(3.0)
        assert client.calls[0][1] == "a\n\nb"

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        client = ScriptedClient(
            [Exception("503 service unavailable"), _response([{"type": "text", "text": "ok"}])]
        )
        message = await client.query([], "", [])
        assert message.text == "ok"
        assert len(client.calls) == 2

    @pytest.mark.asyncio
    async def test_failure_becomes_error_message(self):
        client = ScriptedClient([Exception("invalid x-api-key")])
        message = await client.query([], "", [])
        assert message.is_api_error_message
        assert message.text == "Invalid API key"
        assert len(client.calls) == 1

    @pytest.mark.asyncio
    async def test_tool_schemas_are_sent(self, fake_tool):
        client = ScriptedClient([_response([{"type": "text", "text": "ok"}])])
        await client.query([], "", [fake_tool("Read")])
        assert client.calls[0][2][0]["name"] == "Read"

    def test_unknown_model_costs_nothing(self):
        assert calculate_cost("mystery", {"input_tokens": 10, "output_tokens": 10}) == 0.0


class TestOpenAIConversion:
    @pytest.fixture
    def client(self):
        return OpenAIClient(api_key="sk-test")

    def test_tool_results_become_tool_messages(self, client):
        message = {
            "role": "user",
            "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "ok"},
                {"type": "text", "text": "and then"},
            ],
        }
        assert client._format_message(message) == [
            {"role": "tool", "tool_call_id": "t1", "content": "ok"},
            {"role": "user", "content": "and then"},
        ]

    def test_tool_use_becomes_tool_call(self, client):
        message = {
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a"}}],
        }
        formatted = client._format_message(message)[0]
        assert formatted["content"] is None
        assert formatted["tool_calls"][0]["function"] == {
            "name": "Read",
            "arguments": '{"file_path": "a"}',
        }

    def test_parse_response(self, client):
        tool_call = SimpleNamespace(
            id="call_1", function=SimpleNamespace(name="Read", arguments='{"file_path": "a"}')
        )
        response = SimpleNamespace(
            id="chatcmpl-1",
            choices=[
                SimpleNamespace(
                    message=SimpleNamespace(content="Reading", tool_calls=[tool_call]),
                    finish_reason="tool_calls",
                )
            ],
            usage=SimpleNamespace(prompt_tokens=5, completion_tokens=7),
        )
        parsed = client._parse_response(response)
        assert parsed["content"] == [
            {"type": "text", "text": "Reading"},
            {"type": "tool_use", "id": "call_1", "name": "Read", "input": {"file_path": "a"}},
        ]
        assert parsed["usage"] == {"input_tokens": 5, "output_tokens": 7}
