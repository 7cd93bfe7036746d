"""Multi-provider model client for Loopsmith.

The turn engine only needs one thing from here: given the API view of the
history, return one AssistantMessage. Retries, cost accounting and turning
provider failures into an error-flagged assistant message all happen here.
"""

import asyncio
import json
import logging
import random
import time
from abc import ABC, abstractmethod
from functools import wraps

from .config import MODEL_PRICING
from .messages import AssistantMessage, create_assistant_api_error_message
from .normalize import normalize_content_from_api

# Production Readiness: Explicit timeouts prevent hung connections
DEFAULT_TIMEOUT_SECONDS = 120
DEFAULT_CONNECT_TIMEOUT = 10
DEFAULT_MAX_TOKENS = 8192

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY = 1.0  # seconds
DEFAULT_MAX_DELAY = 60.0  # seconds
DEFAULT_EXPONENTIAL_BASE = 2

API_ERROR_MESSAGE_PREFIX = "API Error"
PROMPT_TOO_LONG_ERROR_MESSAGE = "Prompt is too long"
CREDIT_BALANCE_TOO_LOW_ERROR_MESSAGE = "Credit balance is too low"
INVALID_API_KEY_ERROR_MESSAGE = "Invalid API key"

logger = logging.getLogger(__name__)

_total_cost_usd = 0.0
_total_api_duration_ms = 0.0


def add_to_total_cost(cost_usd, duration_ms):
    global _total_cost_usd, _total_api_duration_ms
    _total_cost_usd += cost_usd
    _total_api_duration_ms += duration_ms


def get_total_cost() -> float:
    """Cost of every model call made by this process, in USD."""
    return _total_cost_usd


def get_total_api_duration_ms() -> float:
    return _total_api_duration_ms


def reset_total_cost():
    global _total_cost_usd, _total_api_duration_ms
    _total_cost_usd = 0.0
    _total_api_duration_ms = 0.0


def calculate_cost(model, usage) -> float:
    """USD cost of one call. Unknown models cost nothing."""
    input_price, output_price = MODEL_PRICING.get(model, (0.0, 0.0))
    return (
        usage.get("input_tokens", 0) / 1_000_000 * input_price
        + usage.get("output_tokens", 0) / 1_000_000 * output_price
    )


class RetryableError(Exception):
    """Wrapper for errors that should trigger a retry."""

    def __init__(self, original_error, is_rate_limit=False):
        self.original_error = original_error
        self.is_rate_limit = is_rate_limit
        super().__init__(str(original_error))


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    exponential_base: int = DEFAULT_EXPONENTIAL_BASE,
    jitter: bool = True,
) -> float:
    """Calculate delay for exponential backoff with optional jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        exponential_base: Base for exponential calculation
        jitter: Add 0-50% random jitter

    Returns:
        Delay in seconds before next retry
    """
    delay = min(base_delay * (exponential_base**attempt), max_delay)

    if jitter:
        delay = delay * (1 + random.random() * 0.5)

    return delay


def with_retry(
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    retryable_exceptions: tuple = None,
):
    """Decorator for exponential backoff retry of a coroutine function.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay between retries
        max_delay: Maximum delay cap
        retryable_exceptions: Tuple of exception types to retry on
    """
    if retryable_exceptions is None:
        retryable_exceptions = (
            ConnectionError,
            TimeoutError,
            RetryableError,
        )

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except retryable_exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"All {max_retries} retries exhausted: {e}")
                        raise

                    delay = calculate_backoff_delay(
                        attempt,
                        base_delay=base_delay,
                        max_delay=max_delay,
                    )
                    # Rate limits get longer delays
                    if isinstance(e, RetryableError) and e.is_rate_limit:
                        delay = delay * 2

                    logger.warning(f"Retry {attempt + 1}/{max_retries} after {delay:.1f}s: {e}")
                    await asyncio.sleep(delay)

        return wrapper

    return decorator


def is_retryable_error(error) -> tuple[bool, bool]:
    """Check if an error is retryable and if it's a rate limit.

    Returns:
        Tuple of (is_retryable, is_rate_limit)
    """
    error_str = str(error).lower()
    error_type = type(error).__name__.lower()

    rate_limit_indicators = [
        "rate_limit",
        "rate limit",
        "too many requests",
        "429",
        "quota",
        "throttl",
    ]
    is_rate_limit = any(indicator in error_str for indicator in rate_limit_indicators)

    retryable_indicators = [
        "timeout",
        "connection",
        "temporary",
        "unavailable",
        "503",
        "502",
        "500",
        "overloaded",
        "capacity",
    ]
    is_retryable = (
        is_rate_limit
        or any(indicator in error_str for indicator in retryable_indicators)
        or any(indicator in error_type for indicator in ["timeout", "connection"])
    )

    return is_retryable, is_rate_limit


def get_assistant_message_from_error(error) -> AssistantMessage:
    """Turn a failed model call into an error-flagged assistant message."""
    message = str(error)
    if "prompt is too long" in message:
        return create_assistant_api_error_message(PROMPT_TOO_LONG_ERROR_MESSAGE)
    if "Your credit balance is too low" in message:
        return create_assistant_api_error_message(CREDIT_BALANCE_TOO_LOW_ERROR_MESSAGE)
    if "x-api-key" in message.lower():
        return create_assistant_api_error_message(INVALID_API_KEY_ERROR_MESSAGE)
    if message:
        return create_assistant_api_error_message(f"{API_ERROR_MESSAGE_PREFIX}: {message}")
    return create_assistant_api_error_message(API_ERROR_MESSAGE_PREFIX)


class BaseModelClient(ABC):
    """Base class for model clients."""

    def __init__(self, model):
        self.model = model

    async def query(self, messages, system_prompt, tools, abort=None, model=None) -> AssistantMessage:
        """Send normalized history and return one assistant message.

        Never raises for provider failures; those come back as an assistant
        message with `is_api_error_message` set.
        """
        model = model or self.model
        if isinstance(system_prompt, (list, tuple)):
            system_prompt = "\n\n".join(part for part in system_prompt if part)
        tool_schemas = [tool.to_schema() for tool in tools or []]

        start = time.time()
        try:
            response = await self._create_with_retry(messages, system_prompt, tool_schemas, model)
        except Exception as e:
            logger.error(f"Model call failed: {e}")
            return get_assistant_message_from_error(e)

        duration_ms = (time.time() - start) * 1000
        usage = response["usage"]
        cost_usd = calculate_cost(model, usage)
        add_to_total_cost(cost_usd, duration_ms)

        kwargs = {}
        if response.get("id"):
            kwargs["message_id"] = response["id"]
        return AssistantMessage(
            content=normalize_content_from_api(response["content"]),
            usage=usage,
            cost_usd=cost_usd,
            duration_ms=duration_ms,
            model=model,
            stop_reason=response.get("stop_reason"),
            **kwargs,
        )

    @with_retry(max_retries=DEFAULT_MAX_RETRIES)
    async def _create_with_retry(self, messages, system_prompt, tool_schemas, model):
        try:
            return await self._create(messages, system_prompt, tool_schemas, model)
        except Exception as e:
            is_retryable, is_rate_limit = is_retryable_error(e)
            if is_retryable:
                raise RetryableError(e, is_rate_limit=is_rate_limit) from e
            raise

    @abstractmethod
    async def _create(self, messages, system_prompt, tool_schemas, model) -> dict:
        """One provider request, parsed into {id, content, stop_reason, usage}."""


class AnthropicClient(BaseModelClient):
    """Anthropic Claude API client."""

    def __init__(self, api_key, model="claude-sonnet-4-5", timeout=DEFAULT_TIMEOUT_SECONDS):
        super().__init__(model)
        try:
            import anthropic
            from anthropic import Timeout
        except ImportError:
            raise ImportError("Install anthropic: pip install anthropic") from None

        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            timeout=Timeout(timeout, connect=DEFAULT_CONNECT_TIMEOUT),
            max_retries=0,
        )

    async def _create(self, messages, system_prompt, tool_schemas, model):
        kwargs = {
            "model": model,
            "max_tokens": DEFAULT_MAX_TOKENS,
            "messages": messages,
        }
        if system_prompt:
            kwargs["system"] = system_prompt
        if tool_schemas:
            kwargs["tools"] = tool_schemas

        response = await self.client.messages.create(**kwargs)
        return self._parse_response(response)

    def _parse_response(self, response):
        """Parse Claude's response into a standard format."""
        result = {
            "id": response.id,
            "content": [],
            "stop_reason": response.stop_reason,
            "usage": {
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
        }

        for block in response.content:
            if block.type == "text":
                result["content"].append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                result["content"].append(
                    {
                        "type": "tool_use",
                        "id": block.id,
                        "name": block.name,
                        "input": block.input,
                    }
                )

        return result


class OpenAIClient(BaseModelClient):
    """OpenAI API client. Converts the Anthropic-shaped history on the way out."""

    def __init__(self, api_key, model="gpt-5.2", timeout=DEFAULT_TIMEOUT_SECONDS):
        super().__init__(model)
        try:
            import openai
        except ImportError:
            raise ImportError("Install openai: pip install openai") from None

        self.client = openai.AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def _create(self, messages, system_prompt, tool_schemas, model):
        formatted_messages = []
        if system_prompt:
            formatted_messages.append({"role": "system", "content": system_prompt})
        for msg in messages:
            formatted_messages.extend(self._format_message(msg))

        kwargs = {"model": model, "messages": formatted_messages}
        if tool_schemas:
            kwargs["tools"] = self._convert_tools(tool_schemas)

        response = await self.client.chat.completions.create(**kwargs)
        return self._parse_response(response)

    def _format_message(self, msg):
        """Format one Anthropic-shaped message as a list of OpenAI messages."""
        content = msg["content"]
        if isinstance(content, str):
            return [{"role": msg["role"], "content": content}]

        if msg["role"] == "user":
            formatted = []
            text_parts = []
            for block in content:
                if block.get("type") == "tool_result":
                    result = block.get("content", "")
                    formatted.append(
                        {
                            "role": "tool",
                            "tool_call_id": block["tool_use_id"],
                            "content": result if isinstance(result, str) else json.dumps(result),
                        }
                    )
                elif block.get("type") == "text":
                    text_parts.append(block.get("text", ""))
            if text_parts:
                formatted.append({"role": "user", "content": "\n".join(text_parts)})
            return formatted

        text_content = ""
        tool_calls = []
        for block in content:
            if block.get("type") == "text":
                text_content += block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_calls.append(
                    {
                        "id": block["id"],
                        "type": "function",
                        "function": {
                            "name": block["name"],
                            "arguments": json.dumps(block["input"]),
                        },
                    }
                )
        result = {"role": "assistant", "content": text_content or None}
        if tool_calls:
            result["tool_calls"] = tool_calls
        return [result]

    def _convert_tools(self, tools):
        """Convert tool definitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool["name"],
                    "description": tool["description"],
                    "parameters": tool["input_schema"],
                },
            }
            for tool in tools
        ]

    def _parse_response(self, response):
        """Parse OpenAI's response into a standard format."""
        message = response.choices[0].message
        result = {
            "id": response.id,
            "content": [],
            "stop_reason": response.choices[0].finish_reason,
            "usage": {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            },
        }

        if message.content:
            result["content"].append({"type": "text", "text": message.content})

        for tool_call in message.tool_calls or []:
            try:
                arguments = json.loads(tool_call.function.arguments)
            except json.JSONDecodeError as e:
                logger.error(f"Tool call JSON parse failed for {tool_call.function.name}: {e}")
                arguments = {"__parse_error__": str(e)}
            result["content"].append(
                {
                    "type": "tool_use",
                    "id": tool_call.id,
                    "name": tool_call.function.name,
                    "input": arguments,
                }
            )

        return result


def create_client(provider, api_key, model=None):
    """Create a model client for the specified provider."""
    clients = {
        "claude": AnthropicClient,
        "openai": OpenAIClient,
    }

    if provider not in clients:
        raise ValueError(f"Unknown provider: {provider}")

    client_class = clients[provider]

    if model:
        return client_class(api_key, model)
    return client_class(api_key)
