"""Shared pytest fixtures for the mailsift test suite."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from pathlib import Path
import sys
from typing import Any

import pytest
from loguru import logger

from mailsift.llm.prompts import PromptBuilder


class ScriptedBackend:
    """Chat backend test double that replays scripted responses in order.

    A script entry is either raw assistant text, an exception instance to raise,
    or a callable receiving the prompt and returning one of those.
    """

    def __init__(self, script: list[Any] | None = None, default: Any = None) -> None:
        self.script = list(script or [])
        self.default = default
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        entry = self.script.pop(0) if self.script else self.default
        if callable(entry):
            entry = entry(prompt)
        if isinstance(entry, BaseException):
            raise entry
        if entry is None:
            raise AssertionError(f"Unexpected backend call #{len(self.prompts)}.")
        return entry

    @property
    def call_count(self) -> int:
        return len(self.prompts)


class RecordingSleeper:
    """Async sleeper double that records requested delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def items_json(*titles: str, **extra: Any) -> str:
    """Return an extraction response carrying one item per title."""

    return json.dumps({"items": [{"title": title, "summary": f"about {title}", **extra} for title in titles]})


@pytest.fixture
def scripted_backend() -> Callable[..., ScriptedBackend]:
    """Provide a factory for scripted chat backends."""

    return ScriptedBackend


@pytest.fixture
def recording_sleeper() -> RecordingSleeper:
    """Provide an async sleeper that records delays."""

    return RecordingSleeper()


@pytest.fixture
def items_response() -> Callable[..., str]:
    """Provide a builder for `{"items": [...]}` backend responses."""

    return items_json


@pytest.fixture
def mail_input_dir(tmp_path: Path) -> Path:
    """Create a mail export directory with two newsletter messages for label `news`."""

    label_dir = tmp_path / "mail" / "news"
    label_dir.mkdir(parents=True)
    (label_dir / "m1.json").write_text(
        json.dumps(
            {
                "id": "m1",
                "from": "Letters <letters@example.com>",
                "subject": "Morning digest",
                "date": "2026-10-15T12:00:00+09:00",
                "html": "<p>Chip makers expand.</p><p>Rates held <a href='https://example.com/r'>steady</a>.</p>",
            }
        ),
        encoding="utf-8",
    )
    (label_dir / "m2.json").write_text(
        json.dumps(
            {
                "id": "m2",
                "sender": "weekly@example.org",
                "subject": "Weekly",
                "date": "Thu, 15 Oct 2026 14:30:00 +0900",
                "text": "Battery plant opens in the north.",
            }
        ),
        encoding="utf-8",
    )
    return tmp_path / "mail"


def _data_section(prompt: str) -> str:
    builder = PromptBuilder()
    body = prompt.split(f"{builder.data_heading}\n", 1)[1]
    return body.rsplit(f"\n\n{builder.closing_instruction}", 1)[0]


def newsletter_response(prompt: str) -> str:
    """Answer extract/merge/enrich prompts the way a cooperative backend would.

    Extraction yields one story per subject plus a headline shared by every
    message; merge echoes its items; enrichment adds an `insight` object.
    """

    if prompt.startswith("ENRICH") or prompt.startswith("MERGE"):
        payload = json.loads(_data_section(prompt))
        items = payload["items"]
        if prompt.startswith("ENRICH"):
            items = [{**item, "insight": {"relevance": "high"}} for item in items]
        return json.dumps({"items": items})

    subject = next(
        (line.split(":", 1)[1].strip() for line in prompt.splitlines() if line.startswith("Subject:")),
        "unknown",
    )
    return json.dumps(
        {
            "items": [
                {"title": f"{subject} story", "summary": f"Summary of {subject}.", "keywords": ["mail"]},
                {"title": "Shared headline", "summary": "Seen in every message."},
            ]
        }
    )


@pytest.fixture
def newsletter_backend_response() -> Callable[[str], str]:
    """Provide the cooperative backend responder."""

    return newsletter_response


@pytest.fixture
def prompts_dir(tmp_path: Path) -> Path:
    """Create a prompts directory with extract, merge, and enrich headers."""

    directory = tmp_path / "prompts"
    directory.mkdir()
    (directory / "extract.md").write_text("EXTRACT newsletter items as JSON.", encoding="utf-8")
    (directory / "merge.md").write_text("MERGE similar items.", encoding="utf-8")
    (directory / "enrich.md").write_text("ENRICH items for the reader profile.", encoding="utf-8")
    return directory


@pytest.fixture(autouse=True)
def _restore_loguru_sink() -> Iterator[None]:
    """Reset loguru after tests that rebind it to a captured stream."""

    yield
    logger.remove()
    logger.add(sys.stderr)
