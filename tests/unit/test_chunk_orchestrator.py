"""Unit tests for chunked execution of one logical generation call."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from mailsift.config import PipelineSettings
from mailsift.errors import PersistenceError, RetryExhaustedError, SchemaViolationError, TransientProviderError
from mailsift.llm.invokers import InvocationRequest
from mailsift.pipeline.chunk_orchestrator import ChunkOrchestrator
from mailsift.text.chunking import ChunkSplitter


class _ChunkInvoker:
    """Invoker double keyed by call order; inspects tmp artifacts before each call."""

    def __init__(self, outcomes: list[object], tmp_dir: Path) -> None:
        self.outcomes = list(outcomes)
        self.tmp_dir = tmp_dir
        self.inputs: list[str] = []
        self.artifacts_seen: list[int] = []

    async def invoke(self, request: InvocationRequest) -> dict:
        self.inputs.append(request.input_text)
        self.artifacts_seen.append(len(list(self.tmp_dir.glob("_chunk_*.json"))) if self.tmp_dir.exists() else 0)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome  # type: ignore[return-value]


def _settings() -> PipelineSettings:
    return PipelineSettings(chunk_size_chars=60, max_header_chars=10)


def _long_input() -> str:
    return "\n\n".join(f"Paragraph {index} with some words." for index in range(6))


def test_short_input_uses_single_call(tmp_path: Path) -> None:
    """Input within the budget should be sent as-is in one call."""

    invoker = _ChunkInvoker([{"items": [{"title": "A"}]}], tmp_path / "tmp")
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_path / "tmp", settings=_settings())

    result = asyncio.run(orchestrator.process("hdr", "short text"))

    assert invoker.inputs == ["short text"]
    assert result.items == [{"title": "A"}]
    assert result.chunk_count == 1
    assert not result.is_partial


def test_empty_input_still_makes_one_call(tmp_path: Path) -> None:
    """Empty input is a valid single call (for example header-only prompts)."""

    invoker = _ChunkInvoker([{"items": []}], tmp_path / "tmp")
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_path / "tmp", settings=_settings())

    result = asyncio.run(orchestrator.process("hdr", ""))

    assert invoker.inputs == [""]
    assert result.items == []


def test_single_call_enforces_required_fields(tmp_path: Path) -> None:
    """A document missing `items` should be a schema violation."""

    invoker = _ChunkInvoker([{"title": "lonely"}], tmp_path / "tmp")
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_path / "tmp", settings=_settings())

    with pytest.raises(SchemaViolationError):
        asyncio.run(orchestrator.process("hdr", "short"))


def test_chunks_run_in_order_persist_and_merge(tmp_path: Path) -> None:
    """Chunk results should be persisted before the next chunk and merged with dedupe."""

    tmp_dir = tmp_path / "tmp"
    output_path = tmp_path / "result.json"
    text = _long_input()
    budget = ChunkOrchestrator(None, tmp_dir=tmp_dir, settings=_settings()).available_chars("hdr")  # type: ignore[arg-type]
    expected_chunks = ChunkSplitter().split(text, budget)
    outcomes = [{"items": [{"title": f"T{index}"}, {"title": "shared"}]} for index in range(len(expected_chunks))]
    invoker = _ChunkInvoker(outcomes, tmp_dir)
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_dir, settings=_settings(), token_factory=lambda: "tok")

    result = asyncio.run(orchestrator.process("hdr", text, output_path=output_path))

    assert invoker.inputs == expected_chunks
    assert invoker.artifacts_seen == list(range(len(expected_chunks)))
    titles = [item["title"] for item in result.items]
    assert titles == ["T0", "shared", *[f"T{index}" for index in range(1, len(expected_chunks))]]
    assert result.chunk_count == len(expected_chunks)
    assert json.loads(output_path.read_text(encoding="utf-8")) == {"items": result.items}
    assert list(tmp_dir.glob("_chunk_*.json")) == []


def _chunk_outcomes(tmp_dir: Path, text: str) -> list[object]:
    budget = ChunkOrchestrator(None, tmp_dir=tmp_dir, settings=_settings()).available_chars("hdr")  # type: ignore[arg-type]
    return [{"items": [{"title": f"T{index}"}]} for index in range(len(ChunkSplitter().split(text, budget)))]


def test_failed_output_write_keeps_chunk_artifacts(tmp_path: Path) -> None:
    """Chunk artifacts must survive when the final result cannot be written."""

    tmp_dir = tmp_path / "tmp"
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not dir", encoding="utf-8")
    text = _long_input()
    outcomes = _chunk_outcomes(tmp_dir, text)
    orchestrator = ChunkOrchestrator(_ChunkInvoker(outcomes, tmp_dir), tmp_dir=tmp_dir, settings=_settings())

    with pytest.raises(PersistenceError):
        asyncio.run(orchestrator.process("hdr", text, output_path=blocker / "result.json"))

    assert len(list(tmp_dir.glob("_chunk_*.json"))) == len(outcomes)


def test_kept_artifacts_are_removed_only_by_cleanup(tmp_path: Path) -> None:
    """With `keep_artifacts` the caller decides when chunk artifacts go away."""

    tmp_dir = tmp_path / "tmp"
    text = _long_input()
    outcomes = _chunk_outcomes(tmp_dir, text)
    orchestrator = ChunkOrchestrator(_ChunkInvoker(outcomes, tmp_dir), tmp_dir=tmp_dir, settings=_settings())

    result = asyncio.run(orchestrator.process("hdr", text, keep_artifacts=True))

    assert sorted(result.artifacts) == sorted(tmp_dir.glob("_chunk_*.json"))
    assert len(result.artifacts) == len(outcomes)
    orchestrator.cleanup(result)
    assert list(tmp_dir.glob("_chunk_*.json")) == []


def test_failed_chunk_is_skipped_and_counted(tmp_path: Path) -> None:
    """A chunk that exhausts recovery should not abort its siblings."""

    tmp_dir = tmp_path / "tmp"
    text = _long_input()
    orchestrator_probe = ChunkOrchestrator(None, tmp_dir=tmp_dir, settings=_settings())  # type: ignore[arg-type]
    chunk_total = len(ChunkSplitter().split(text, orchestrator_probe.available_chars("hdr")))
    outcomes: list[object] = [RetryExhaustedError("gone", attempts=8)]
    outcomes.extend({"items": [{"title": f"T{index}"}]} for index in range(1, chunk_total))
    invoker = _ChunkInvoker(outcomes, tmp_dir)
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_dir, settings=_settings())

    result = asyncio.run(orchestrator.process("hdr", text))

    assert result.failed_chunks == 1
    assert result.is_partial
    assert [item["title"] for item in result.items] == [f"T{index}" for index in range(1, chunk_total)]


def test_all_chunks_failing_raises_retry_exhausted(tmp_path: Path) -> None:
    """When no chunk succeeds the call as a whole is exhausted."""

    tmp_dir = tmp_path / "tmp"
    invoker = _ChunkInvoker([TransientProviderError("flaky")] * 20, tmp_dir)
    orchestrator = ChunkOrchestrator(invoker, tmp_dir=tmp_dir, settings=_settings())

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(orchestrator.process("hdr", _long_input()))

    assert isinstance(exc_info.value.last_error, TransientProviderError)
