"""LiteLLM client and response parsing helpers for the model-output boundary.

This module provides:
- LLMClient: Thin wrapper around litellm.acompletion that maps provider
  failures onto ModelOutputError (transient or permanent)
- MockLLMClient: Scripted client for tests
- extract_json_from_response: Pull a JSON object out of free-form model text

Retries are not performed here; the phase orchestrator owns the retry policy
so that model and sandbox failures share one backoff schedule.
"""

import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import Settings, settings
from errors import ModelOutputError

logger = structlog.get_logger(__name__)


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        finish_reason: Why the model stopped (stop, length, etc.)
        model: The model that produced the response
        input_tokens: Prompt tokens reported by the provider
        output_tokens: Completion tokens reported by the provider
        latency_ms: Wall-clock latency of the call
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    finish_reason: str = "stop"
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    latency_ms: int = 0
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM for single completion calls.

    Provider errors are translated so callers only handle ModelOutputError:
    - AuthenticationError, BadRequestError -> ModelOutputError(transient=False)
    - RateLimitError, ServiceUnavailableError, InternalServerError, Timeout,
      APIConnectionError and any other APIError
      -> ModelOutputError(transient=True)

    Attributes:
        default_model: Model used when a call does not name one
        temperature: Default sampling temperature
        request_timeout: Per-request timeout passed to LiteLLM
    """

    def __init__(
        self,
        default_model: str | None = None,
        temperature: float | None = None,
        request_timeout: float | None = None,
        app_settings: Settings | None = None,
    ) -> None:
        app_settings = app_settings or settings
        self.default_model = default_model or app_settings.default_model
        self.temperature = (
            temperature if temperature is not None else app_settings.model_temperature
        )
        self.request_timeout = (
            request_timeout
            if request_timeout is not None
            else app_settings.model_call_timeout_seconds
        )

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> LLMResponse:
        """Make one LLM call.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (defaults to self.temperature)
            max_tokens: Maximum tokens in response
            session_id: Session ID, used for logging only

        Returns:
            LLMResponse with content and token usage

        Raises:
            ModelOutputError: If the provider call fails
        """
        model = model or self.default_model
        start_time = time.time()

        try:
            response = await self._make_request(
                messages=messages,
                model=model,
                temperature=self.temperature if temperature is None else temperature,
                max_tokens=max_tokens,
            )
        except (AuthenticationError, BadRequestError) as e:
            logger.error(
                "llm_call_failed_no_retry",
                model=model,
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ModelOutputError(f"{type(e).__name__}: {e}", transient=False) from e
        except (
            RateLimitError,
            ServiceUnavailableError,
            InternalServerError,
            Timeout,
            APIConnectionError,
            APIError,
        ) as e:
            logger.warning(
                "llm_call_transient_failure",
                model=model,
                session_id=session_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ModelOutputError(f"{type(e).__name__}: {e}", transient=True) from e

        latency_ms = int((time.time() - start_time) * 1000)
        llm_response = self._parse_response(response, model, latency_ms)

        logger.info(
            "llm_call_complete",
            model=model,
            session_id=session_id,
            input_tokens=llm_response.input_tokens,
            output_tokens=llm_response.output_tokens,
            latency_ms=latency_ms,
        )
        return llm_response

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": self.request_timeout,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        choice = response.choices[0]
        usage = getattr(response, "usage", None)

        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
            raw_response=response,
        )


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Usage:
        >>> client = MockLLMClient(responses=['{"title": "Todo app", "phases": []}'])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[str | LLMResponse | Exception] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        session_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted response, raising it if it is an exception.

        Raises:
            IndexError: If no more responses are available
        """
        self.call_history.append({
            "messages": messages,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        if isinstance(response, Exception):
            raise response
        if isinstance(response, str):
            response = LLMResponse(content=response, model=model or self.default_model)

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            content_preview=response.content[:50],
        )
        return response

    def reset(self) -> None:
        self._response_index = 0
        self.call_history.clear()


def _extract_balanced_json_objects(text: str) -> list[str]:
    """Extract balanced JSON object candidates from arbitrary text."""
    candidates: list[str] = []

    for start, char in enumerate(text):
        if char != "{":
            continue

        depth = 0
        in_string = False
        escaped = False
        for end in range(start, len(text)):
            ch = text[end]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue

            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    candidates.append(text[start : end + 1])
                    break

    return candidates


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Extract a JSON object from a model response that may contain extra text.

    Tries, in order: the whole response, fenced code blocks, then balanced
    ``{...}`` spans anywhere in the text.

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    def try_parse(candidate: str) -> dict[str, Any] | None:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None

    parsed = try_parse(response.strip())
    if parsed is not None:
        return parsed

    for match in re.finditer(r"```(?:json)?\s*([\s\S]*?)\s*```", response, re.IGNORECASE):
        body = match.group(1).strip()
        parsed = try_parse(body)
        if parsed is not None:
            return parsed
        for candidate in _extract_balanced_json_objects(body):
            parsed = try_parse(candidate)
            if parsed is not None:
                return parsed

    for candidate in _extract_balanced_json_objects(response):
        parsed = try_parse(candidate)
        if parsed is not None:
            return parsed

    return None
