"""LLM client utilities and helper functions for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model support,
  and metrics events
- LLMResponse: Structured model output that round-trips through JSON so a
  model turn can be recorded as a durable step
- MockLLMClient: Scripted client for tests
- Message helpers for tool results and assistant turns
- Task summary helpers: detection of the ``<task_summary>`` termination
  marker and extraction of clean text from generator output
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType, LLMMetrics

logger = structlog.get_logger()

TASK_SUMMARY_OPEN = "<task_summary>"
TASK_SUMMARY_CLOSE = "</task_summary>"

_TASK_SUMMARY_TAG_RE = re.compile(r"</?task_summary>", re.IGNORECASE)


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). This helper guarantees downstream tool
    execution always receives a dict-like payload.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (the raw response is dropped)."""
        return {
            "content": self.content,
            "tool_calls": [
                {"id": tc.id, "name": tc.name, "args": tc.args}
                for tc in self.tool_calls
            ],
            "finish_reason": self.finish_reason,
            "metrics": self.metrics.model_dump(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LLMResponse":
        """Rebuild a response recorded with ``to_dict``."""
        return cls(
            content=data.get("content") or "",
            tool_calls=[
                ToolCallData(id=tc["id"], name=tc["name"], args=tc.get("args") or {})
                for tc in data.get("tool_calls", [])
            ],
            finish_reason=data.get("finish_reason", "unknown"),
            metrics=LLMMetrics(**data["metrics"]),
        )


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback, and metrics.

    The LLMClient provides:
    - Multi-provider support via LiteLLM
    - Automatic retry on transient failures with exponential backoff
    - Fallback model support when primary model fails after retries
    - Token counting and latency tracking
    - LLM_CALL_COMPLETE events for observability

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Default model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Delay between retry attempts in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.code_agent_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic, fallback, and metrics.

        Retries on: RateLimitError (429), ServiceUnavailableError (500/502/503),
        Timeout errors.
        Does NOT retry on: AuthenticationError (401/403), BadRequestError (400).

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response
            run_id: Optional job run ID for event emission
            agent_id: Optional agent ID for event emission

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            Exception: After all retries and fallback exhausted
        """
        model = model or self.default_model
        start_time = time.time()

        last_exception: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                latency_ms = int((time.time() - start_time) * 1000)
                llm_response = self._parse_response(response, model, latency_ms)

                if run_id:
                    await self._emit_metrics_event(llm_response.metrics, run_id, agent_id)

                logger.info(
                    "llm_call_complete",
                    model=model,
                    input_tokens=llm_response.metrics.input_tokens,
                    output_tokens=llm_response.metrics.output_tokens,
                    latency_ms=latency_ms,
                    tool_calls=len(llm_response.tool_calls),
                    attempt=attempt + 1,
                )
                return llm_response

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                retry_count = attempt + 1
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)  # Cap backoff at 4s
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        error=str(e),
                        retry_delay=delay,
                    )
                    await self._async_sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
                primary_error=str(last_exception),
            )
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=self.fallback_model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error_type=type(fallback_error).__name__,
                    error=str(fallback_error),
                )
                # Keep the primary failure as the cause
                raise (last_exception or fallback_error) from fallback_error

            latency_ms = int((time.time() - start_time) * 1000)
            llm_response = self._parse_response(response, self.fallback_model, latency_ms)
            if run_id:
                await self._emit_metrics_event(llm_response.metrics, run_id, agent_id)
            logger.info(
                "llm_fallback_success",
                fallback_model=self.fallback_model,
                input_tokens=llm_response.metrics.input_tokens,
                output_tokens=llm_response.metrics.output_tokens,
                latency_ms=latency_ms,
            )
            return llm_response

        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
        }

        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"

        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        kwargs["timeout"] = settings.llm_request_timeout_seconds

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls: list[ToolCallData] = []
        if message.tool_calls:
            for tc in message.tool_calls:
                tool_calls.append(
                    ToolCallData(
                        id=tc.id,
                        name=tc.function.name,
                        args=normalize_tool_args(tc.function.arguments),
                    )
                )

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        run_id: str,
        agent_id: str | None,
    ) -> None:
        if self.event_bus:
            await self.event_bus.publish(
                AgentEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    run_id=run_id,
                    agent_id=agent_id,
                    data={
                        "model": metrics.model,
                        "input_tokens": metrics.input_tokens,
                        "output_tokens": metrics.output_tokens,
                        "latency_ms": metrics.latency_ms,
                    },
                )
            )

    async def _async_sleep(self, seconds: float) -> None:
        """Sleep helper, separate so tests can patch it."""
        await asyncio.sleep(seconds)


def format_tool_result_for_llm(
    tool_call_id: str,
    result: str,
) -> dict[str, Any]:
    """Format a tool result as a tool message for the LLM."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that includes tool calls.

    Args:
        content: The assistant's text response
        tool_calls: List of ToolCallData the assistant made

    Returns:
        A message dict in the format expected by LLMs
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


def _message_text(message: dict[str, Any]) -> str:
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # Content parts, e.g. [{"type": "text", "text": "..."}]
        return "".join(
            part.get("text", "")
            for part in content
            if isinstance(part, dict) and part.get("type", "text") == "text"
        )
    return ""


def last_assistant_text_message_content(
    messages: list[dict[str, Any]],
) -> str | None:
    """Return the text of the last assistant message, or None.

    Args:
        messages: Messages produced by one agent turn.

    Returns:
        The last assistant message's text, or None when the turn has no
        assistant message or that message carries no text.
    """
    for message in reversed(messages):
        if message.get("role") != "assistant":
            continue
        text = _message_text(message)
        return text or None
    return None


def contains_task_summary(text: str | None) -> bool:
    """Whether a message carries the termination marker."""
    return bool(text) and TASK_SUMMARY_OPEN in text


def parse_agent_output(text: str | None, fallback: str) -> str:
    """Extract clean text from generator or summary output.

    Strips ``<task_summary>`` tags and surrounding whitespace. Never raises,
    and applying it to its own output returns the same value.

    Examples:
        >>> parse_agent_output("<task_summary>\\nAdded a footer\\n</task_summary>", "Fragment")
        'Added a footer'
        >>> parse_agent_output("   ", "Here you go")
        'Here you go'
    """
    if not isinstance(text, str):
        return fallback
    cleaned = _TASK_SUMMARY_TAG_RE.sub("", text).strip()
    return cleaned or fallback


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Usage:
        >>> responses = [
        ...     LLMResponse(content="Hello", tool_calls=[], ...),
        ...     LLMResponse(content="<task_summary>done</task_summary>", ...),
        ... ]
        >>> client = MockLLMClient(responses=responses)
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Raises:
            IndexError: If no more responses available
        """
        self.call_history.append({
            "messages": [dict(m) for m in messages],
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50] if response.content else "",
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
