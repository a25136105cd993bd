"""Unit tests for paragraph chunking, force splitting, and truncation."""

from __future__ import annotations

import pytest

from mailsift.config import PipelineSettings
from mailsift.pipeline.chunk_orchestrator import ChunkOrchestrator
from mailsift.text.chunking import CONTINUATION_MARKER, ChunkSplitter, truncate_text


def _paragraph_text(total_chars: int, paragraph_chars: int = 900) -> str:
    sentence = "Markets moved on new data. "
    paragraph = (sentence * (paragraph_chars // len(sentence) + 1))[:paragraph_chars].strip()
    paragraphs: list[str] = []
    while sum(len(p) + 2 for p in paragraphs) < total_chars:
        paragraphs.append(paragraph)
    return "\n\n".join(paragraphs)


def test_input_within_budget_is_returned_unchanged() -> None:
    """Short input should come back as one untouched chunk."""

    text = "one\n\ntwo"
    assert ChunkSplitter().split(text, 100) == [text]


def test_header_adjusted_budget_bounds_every_chunk() -> None:
    """A 40k input with a 3k header under a 15k budget should split into <=12k chunks."""

    orchestrator = ChunkOrchestrator(
        invoker=None,  # type: ignore[arg-type]
        tmp_dir=None,  # type: ignore[arg-type]
        settings=PipelineSettings(chunk_size_chars=15000, max_header_chars=5000),
    )
    header = "h" * 3000
    budget = orchestrator.available_chars(header)
    text = _paragraph_text(40000)

    chunks = ChunkSplitter().split(text, budget)

    assert budget == 12000
    assert len(chunks) >= 4
    assert all(len(chunk) <= 12000 for chunk in chunks)
    assert chunks[-1].strip()


def test_header_longer_than_cap_only_consumes_the_cap() -> None:
    """Header length above `max_header_chars` should reduce the budget by the cap only."""

    orchestrator = ChunkOrchestrator(
        invoker=None,  # type: ignore[arg-type]
        tmp_dir=None,  # type: ignore[arg-type]
        settings=PipelineSettings(chunk_size_chars=15000, max_header_chars=5000),
    )

    assert orchestrator.available_chars("h" * 9000) == 10000


def test_paragraphs_are_kept_whole_and_in_order() -> None:
    """Every paragraph should land in exactly one chunk, in source order."""

    paragraphs = [f"Paragraph {index} " + "x" * 30 for index in range(10)]
    text = "\n\n".join(paragraphs)

    chunks = ChunkSplitter().split(text, 120)
    rejoined = "\n\n".join(chunks).split("\n\n")

    assert rejoined == paragraphs


def test_horizontal_rule_line_starts_a_new_paragraph() -> None:
    """A `---` line without surrounding blank lines is still a paragraph boundary."""

    text = "alpha line one\n---\nbeta line two"

    chunks = ChunkSplitter().split(text, 20)

    assert chunks == ["alpha line one", "---\nbeta line two"]
    lines = [line for chunk in chunks for line in chunk.splitlines() if line.strip()]
    assert lines == ["alpha line one", "---", "beta line two"]


def test_oversized_paragraph_is_force_split_at_sentence_end() -> None:
    """A single paragraph above the limit should be cut, preferring a sentence terminator."""

    text = ("Alpha beta gamma. " * 20).strip()

    chunks = ChunkSplitter().split(text, 100)

    assert len(chunks) > 1
    assert all(len(chunk) <= 100 for chunk in chunks)
    assert all(chunk.endswith(".") for chunk in chunks[:-1])


def test_split_rejects_non_positive_budget() -> None:
    """A zero budget is a programming error."""

    with pytest.raises(ValueError, match="positive"):
        ChunkSplitter().split("text", 0)


def test_truncate_text_prefers_sentence_boundary_and_appends_marker() -> None:
    """Truncation should stop after the last sentence inside the budget."""

    text = "First sentence here. Second sentence here. Third sentence is long."

    truncated = truncate_text(text, 50)

    assert truncated == "First sentence here. Second sentence here." + CONTINUATION_MARKER


def test_truncate_text_hard_cuts_without_usable_boundary() -> None:
    """Without a sentence end past half the budget the text is hard-cut."""

    truncated = truncate_text("x" * 100, 40, marker="~")

    assert truncated == "x" * 40 + "~"


def test_truncate_text_keeps_short_input() -> None:
    """Input within the budget should not gain a marker."""

    assert truncate_text("short", 10) == "short"
