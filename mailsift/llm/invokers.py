"""Composable invocation strategies around one generation backend call.

Responsibilities:
- `GenerationInvoker`: pace, call, time-box, completeness-check, and parse one call.
- `BackoffInvoker`: retry transient failures along a bounded delay ladder.
- `TruncatingInvoker`: retry size-overflow failures with a shrinking input.

The two recovery strategies never mix: a size overflow passes straight through
the delay ladder, and a transient failure never triggers truncation.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, Protocol

from ..config import DEFAULT_RETRY_DELAYS_SECONDS, DEFAULT_TRUNCATE_RATIOS, PipelineSettings
from ..errors import (
    ProviderError,
    RetryExhaustedError,
    SchemaViolationError,
    SizeOverflowError,
    TransientProviderError,
)
from ..telemetry.logger import log_event
from ..text.chunking import CONTINUATION_MARKER, truncate_text
from .completeness import extract_json_document, is_json_complete
from .openrouter_client import ChatBackend, looks_like_size_overflow
from .prompts import PromptBuilder
from .rate_limiter import RateLimiter

_TRANSIENT_FAILURE_KINDS = frozenset(
    {
        "timeout",
        "transport",
        "rate_limited",
        "server_error",
        "empty_response",
        "incomplete",
        "malformed",
    }
)
_TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})
_TRANSIENT_MESSAGE_TOKENS = ("timeout", "timed out", "econnreset", "etimedout", "connection reset")


@dataclass(frozen=True, slots=True)
class InvocationRequest:
    """One logical call: instruction header plus the data to process."""

    header: str
    input_text: str


class Invoker(Protocol):
    """Anything that turns a request into one parsed JSON document."""

    async def invoke(self, request: InvocationRequest) -> dict[str, Any]:
        """Execute the request and return the parsed document."""


def classify_provider_error(exc: ProviderError) -> ProviderError:
    """Map a raw provider error onto the size-overflow / transient / permanent taxonomy.

    Returns the error itself when it is already classified or permanent.
    """

    if isinstance(exc, SizeOverflowError | TransientProviderError):
        return exc
    message = str(exc)
    metadata = {
        "failure_kind": exc.failure_kind,
        "status_code": exc.status_code,
        "provider_code": exc.provider_code,
    }
    if exc.failure_kind == "size_overflow" or looks_like_size_overflow(message):
        return SizeOverflowError(message, **metadata)
    message_lower = message.lower()
    if (
        exc.failure_kind in _TRANSIENT_FAILURE_KINDS
        or exc.status_code in _TRANSIENT_STATUS_CODES
        or any(token in message_lower for token in _TRANSIENT_MESSAGE_TOKENS)
    ):
        return TransientProviderError(message, **metadata)
    return exc


def validate_required_fields(document: dict[str, Any], required: Iterable[str]) -> dict[str, Any]:
    """Return `document` unchanged, or raise `SchemaViolationError` for missing fields."""

    missing = tuple(field_name for field_name in required if field_name not in document)
    if missing:
        raise SchemaViolationError(missing)
    return document


class GenerationInvoker:
    """Perform exactly one paced, time-boxed backend call and parse its output."""

    def __init__(
        self,
        backend: ChatBackend,
        *,
        rate_limiter: RateLimiter | None = None,
        prompt_builder: PromptBuilder | None = None,
        call_timeout_seconds: float = 300.0,
    ) -> None:
        self.backend = backend
        self.rate_limiter = rate_limiter
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.call_timeout_seconds = call_timeout_seconds

    async def invoke(self, request: InvocationRequest) -> dict[str, Any]:
        prompt = self.prompt_builder.build(request.header, request.input_text)
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        try:
            raw_text = await asyncio.wait_for(
                asyncio.to_thread(self.backend.complete, prompt),
                timeout=self.call_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise TransientProviderError(
                f"Backend call exceeded the {self.call_timeout_seconds:g}s wall-clock timeout.",
                failure_kind="timeout",
            ) from exc
        except ConnectionError as exc:
            raise TransientProviderError(
                f"Backend connection failed: {exc}", failure_kind="transport"
            ) from exc
        except ProviderError as exc:
            classified = classify_provider_error(exc)
            if classified is exc:
                raise
            raise classified from exc

        if not is_json_complete(raw_text):
            raise TransientProviderError(
                "Incomplete JSON response (output was cut off).",
                failure_kind="incomplete",
            )
        return extract_json_document(raw_text)


class BackoffInvoker:
    """Retry transient failures of an inner invoker along a delay ladder.

    Each ladder rung buys one retry, so a ladder of N delays allows N + 1 attempts.
    """

    def __init__(
        self,
        inner: Invoker,
        *,
        delays_seconds: tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECONDS,
        sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.inner = inner
        self.delays_seconds = tuple(delays_seconds)
        self.sleeper = sleeper
        self.retry_count = 0

    async def invoke(self, request: InvocationRequest) -> dict[str, Any]:
        max_attempts = len(self.delays_seconds) + 1
        last_error: TransientProviderError | None = None
        for attempt in range(1, max_attempts + 1):
            try:
                return await self.inner.invoke(request)
            except TransientProviderError as exc:
                last_error = exc
                if attempt == max_attempts:
                    break
                delay = self.delays_seconds[attempt - 1]
                log_event(
                    "WARNING",
                    "backoff",
                    "retry",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    failure_kind=exc.failure_kind,
                )
                self.retry_count += 1
                await self.sleeper(delay)

        raise RetryExhaustedError(
            f"Gave up after {max_attempts} attempts: {last_error}",
            attempts=max_attempts,
            last_error=last_error,
        ) from last_error


class TruncatingInvoker:
    """Shrink the input along a ratio ladder whenever the backend reports overflow."""

    def __init__(
        self,
        inner: Invoker,
        *,
        ratios: tuple[float, ...] = DEFAULT_TRUNCATE_RATIOS,
        marker: str = CONTINUATION_MARKER,
    ) -> None:
        if not ratios:
            raise ValueError("`ratios` must contain at least one value.")
        if any(ratio <= 0.0 or ratio > 1.0 for ratio in ratios):
            raise ValueError("`ratios` values must be in the (0, 1] range.")
        self.inner = inner
        self.ratios = tuple(ratios)
        self.marker = marker

    async def invoke(self, request: InvocationRequest) -> dict[str, Any]:
        original_input = request.input_text
        first_error: SizeOverflowError | None = None
        for step, ratio in enumerate(self.ratios):
            attempt_request = request
            if ratio < 1.0:
                max_chars = int(len(original_input) * ratio)
                attempt_request = replace(
                    request,
                    input_text=truncate_text(original_input, max_chars, self.marker),
                )
                log_event(
                    "WARNING",
                    "truncate",
                    "shrink",
                    ratio=f"{ratio:.2f}",
                    step=step,
                    input_chars=len(attempt_request.input_text),
                )
            try:
                return await self.inner.invoke(attempt_request)
            except SizeOverflowError as exc:
                if first_error is None:
                    first_error = exc

        if first_error is None:
            raise RuntimeError("Truncation ladder has no ratios.")
        raise first_error


def build_invoker_stack(
    backend: ChatBackend,
    settings: PipelineSettings,
    *,
    rate_limiter: RateLimiter | None,
    sleeper: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> TruncatingInvoker:
    """Compose truncation over backoff over a single paced backend call."""

    generation = GenerationInvoker(
        backend,
        rate_limiter=rate_limiter,
        call_timeout_seconds=settings.call_timeout_seconds,
    )
    backoff = BackoffInvoker(
        generation,
        delays_seconds=settings.retry_delays_seconds,
        sleeper=sleeper,
    )
    return TruncatingInvoker(backoff, ratios=settings.truncate_ratios)
