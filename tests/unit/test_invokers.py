"""Unit tests for generation, backoff, and truncation invokers."""

from __future__ import annotations

import asyncio
import json
import time

import pytest

from mailsift.config import PipelineSettings
from mailsift.errors import (
    ProviderError,
    RetryExhaustedError,
    SchemaViolationError,
    SizeOverflowError,
    TransientProviderError,
)
from mailsift.llm.invokers import (
    BackoffInvoker,
    GenerationInvoker,
    InvocationRequest,
    TruncatingInvoker,
    build_invoker_stack,
    classify_provider_error,
    validate_required_fields,
)
from mailsift.text.chunking import CONTINUATION_MARKER

_OK = '{"items": [{"title": "A"}]}'


class _ScriptedInvoker:
    """Inner invoker double that raises or returns scripted outcomes."""

    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = list(outcomes)
        self.requests: list[InvocationRequest] = []

    async def invoke(self, request: InvocationRequest) -> dict:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome  # type: ignore[return-value]


def _request(text: str = "payload") -> InvocationRequest:
    return InvocationRequest(header="Extract items.", input_text=text)


def test_generation_invoker_parses_document_and_builds_prompt(scripted_backend) -> None:
    """One call should return the parsed object embedded in the response."""

    backend = scripted_backend([f"Sure! {_OK}"])
    invoker = GenerationInvoker(backend)

    document = asyncio.run(invoker.invoke(_request("mail body")))

    assert document == {"items": [{"title": "A"}]}
    assert backend.prompts[0].startswith("Extract items.")
    assert "# Data to process\nmail body" in backend.prompts[0]


def test_generation_invoker_marks_incomplete_output_as_transient(scripted_backend) -> None:
    """A cut-off JSON response should be a retryable failure."""

    invoker = GenerationInvoker(scripted_backend(['{"items": [{"title": "A"']))

    with pytest.raises(TransientProviderError) as exc_info:
        asyncio.run(invoker.invoke(_request()))

    assert exc_info.value.failure_kind == "incomplete"


def test_generation_invoker_enforces_wall_clock_timeout() -> None:
    """A backend call outliving the timeout should surface as a transient timeout."""

    class _SlowBackend:
        def complete(self, prompt: str) -> str:
            time.sleep(0.3)
            return _OK

    invoker = GenerationInvoker(_SlowBackend(), call_timeout_seconds=0.05)

    with pytest.raises(TransientProviderError) as exc_info:
        asyncio.run(invoker.invoke(_request()))

    assert exc_info.value.failure_kind == "timeout"


def test_generation_invoker_classifies_backend_errors(scripted_backend) -> None:
    """Raw provider errors should be mapped onto overflow/transient/permanent classes."""

    overflow = GenerationInvoker(
        scripted_backend([ProviderError("This model's maximum context length is 8192 tokens")])
    )
    transient = GenerationInvoker(
        scripted_backend([ProviderError("upstream", failure_kind="http_error", status_code=503)])
    )
    permanent = GenerationInvoker(
        scripted_backend([ProviderError("bad key", failure_kind="invalid_api_key", status_code=401)])
    )

    with pytest.raises(SizeOverflowError):
        asyncio.run(overflow.invoke(_request()))
    with pytest.raises(TransientProviderError):
        asyncio.run(transient.invoke(_request()))
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(permanent.invoke(_request()))
    assert not isinstance(exc_info.value, SizeOverflowError | TransientProviderError)


def test_classify_provider_error_uses_message_tokens() -> None:
    """Connection-reset style messages are transient even without a status code."""

    classified = classify_provider_error(ProviderError("read ECONNRESET"))

    assert isinstance(classified, TransientProviderError)


def test_backoff_sleeps_exactly_the_consumed_ladder_prefix(recording_sleeper) -> None:
    """Two transient failures then success should sleep the first two delays only."""

    inner = _ScriptedInvoker(
        [
            TransientProviderError("t1", failure_kind="timeout"),
            TransientProviderError("t2", failure_kind="incomplete"),
            {"items": []},
        ]
    )
    invoker = BackoffInvoker(inner, delays_seconds=(2.0, 4.0, 6.0), sleeper=recording_sleeper)

    document = asyncio.run(invoker.invoke(_request()))

    assert document == {"items": []}
    assert recording_sleeper.delays == [2.0, 4.0]
    assert invoker.retry_count == 2


def test_backoff_gives_up_after_ladder_length_plus_one_attempts(recording_sleeper) -> None:
    """An always-transient inner invoker should be called N+1 times, then exhausted."""

    inner = _ScriptedInvoker([TransientProviderError(f"t{i}") for i in range(4)])
    invoker = BackoffInvoker(inner, delays_seconds=(1.0, 2.0, 3.0), sleeper=recording_sleeper)

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(invoker.invoke(_request()))

    assert len(inner.requests) == 4
    assert recording_sleeper.delays == [1.0, 2.0, 3.0]
    assert exc_info.value.attempts == 4
    assert isinstance(exc_info.value.last_error, TransientProviderError)


def test_backoff_does_not_retry_size_overflow(recording_sleeper) -> None:
    """Overflow must pass straight through the delay ladder."""

    inner = _ScriptedInvoker([SizeOverflowError("too long")])
    invoker = BackoffInvoker(inner, delays_seconds=(1.0,), sleeper=recording_sleeper)

    with pytest.raises(SizeOverflowError):
        asyncio.run(invoker.invoke(_request()))

    assert recording_sleeper.delays == []


def test_truncation_shrinks_input_relative_to_the_original() -> None:
    """Each overflow retry should use the next ratio of the original input length."""

    original = "x" * 1000
    inner = _ScriptedInvoker(
        [SizeOverflowError("too long"), SizeOverflowError("too long"), {"items": []}]
    )
    invoker = TruncatingInvoker(inner, ratios=(1.0, 0.8, 0.6, 0.4), marker="")

    asyncio.run(invoker.invoke(_request(original)))

    assert [len(request.input_text) for request in inner.requests] == [1000, 800, 600]


def test_truncation_reraises_first_overflow_after_last_ratio() -> None:
    """Exhausting the ratio ladder should surface the original overflow error."""

    errors = [SizeOverflowError(f"overflow {i}") for i in range(3)]
    inner = _ScriptedInvoker(list(errors))
    invoker = TruncatingInvoker(inner, ratios=(1.0, 0.5, 0.25))

    with pytest.raises(SizeOverflowError) as exc_info:
        asyncio.run(invoker.invoke(_request("y" * 200)))

    assert exc_info.value is errors[0]
    assert inner.requests[1].input_text.endswith(CONTINUATION_MARKER)


def test_truncation_does_not_handle_transient_failures() -> None:
    """Transient failures are not a reason to shrink the input."""

    inner = _ScriptedInvoker([TransientProviderError("flaky")])
    invoker = TruncatingInvoker(inner)

    with pytest.raises(TransientProviderError):
        asyncio.run(invoker.invoke(_request()))

    assert len(inner.requests) == 1


def test_truncation_rejects_invalid_ratios() -> None:
    """Ratios must lie in the (0, 1] range."""

    with pytest.raises(ValueError):
        TruncatingInvoker(_ScriptedInvoker([]), ratios=(1.0, 1.5))


def test_stack_retries_incomplete_response_then_succeeds(scripted_backend, recording_sleeper) -> None:
    """The composed stack should retry an incomplete response and return the full one."""

    backend = scripted_backend(['{"items": [', _OK])
    settings = PipelineSettings(retry_delays_seconds=(2.0, 4.0))
    invoker = build_invoker_stack(backend, settings, rate_limiter=None, sleeper=recording_sleeper)

    document = asyncio.run(invoker.invoke(_request()))

    assert document == json.loads(_OK)
    assert backend.call_count == 2
    assert recording_sleeper.delays == [2.0]


def test_validate_required_fields_reports_missing_names() -> None:
    """Documents lacking required fields should raise a schema violation."""

    with pytest.raises(SchemaViolationError) as exc_info:
        validate_required_fields({"other": 1}, ("items",))

    assert exc_info.value.missing_fields == ("items",)
