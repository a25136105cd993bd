"""Core datatypes shared across mailsift modules.

Responsibilities:
- Represent records exchanged between pipeline steps and external adapters.
- Provide explicit typing for persisted state and run outcomes.

Key types:
- `MailRecord`, `CleanMessage`, `LabelSpec`, `TimeWindow`, `StepStatus`,
  `FailedBatchRecord`, `InvocationResult`, and `LabelOutcome`.

Items produced by the generation backend stay plain dictionaries; only their
`title` field is interpreted (for deduplication).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

Item = dict[str, Any]


class StepStatus(str, Enum):
    """Progress state of one (label, step) pair."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class MailRecord:
    """One raw message as delivered by a mail source.

    Attributes:
        id: Stable message identifier.
        sender: Raw `From` header value.
        subject: Message subject.
        date: Message date as delivered by the source (ISO-8601 when known).
        html_or_text: HTML or plain-text body.
    """

    id: str
    sender: str
    subject: str
    date: str
    html_or_text: str


@dataclass(frozen=True, slots=True)
class CleanMessage:
    """A message after markup normalization, ready for extraction."""

    message_id: str
    sender: str
    subject: str
    date: str
    clean_text: str


@dataclass(frozen=True, slots=True)
class LabelSpec:
    """A configured mail category processed as one work unit.

    Attributes:
        name: Work unit name, also used for artifact paths and prompt lookup.
        enabled: Whether the label participates in runs.
        mail_label: Source-side label name (defaults to `name`).
        sub_labels: Additional source-side labels merged into this work unit.
    """

    name: str
    enabled: bool = True
    mail_label: str | None = None
    sub_labels: tuple[str, ...] = field(default_factory=tuple)

    @property
    def source_label(self) -> str:
        """Return the label name used when querying the mail source."""

        return self.mail_label or self.name


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Half-open collection window `[start, end)` with timezone-aware bounds."""

    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        """Return whether `moment` falls inside the window."""

        return self.start <= moment < self.end


@dataclass(frozen=True, slots=True)
class FailedBatchRecord:
    """One unresolved chunk/batch failure kept for diagnosis and selective retry."""

    label: str
    step: str
    batch_index: int
    error: str
    context: dict[str, Any]
    failed_at: str
    retry_count: int = 0

    def to_payload(self) -> dict[str, Any]:
        """Return the JSON payload persisted in the failed-batches file."""

        return {
            "label": self.label,
            "step": self.step,
            "batch_index": self.batch_index,
            "error": self.error,
            "context": dict(self.context),
            "failed_at": self.failed_at,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> FailedBatchRecord:
        """Build a record from a persisted JSON payload."""

        context = payload.get("context")
        return cls(
            label=str(payload["label"]),
            step=str(payload["step"]),
            batch_index=int(payload["batch_index"]),
            error=str(payload.get("error", "")),
            context=dict(context) if isinstance(context, dict) else {},
            failed_at=str(payload.get("failed_at", "")),
            retry_count=int(payload.get("retry_count", 0)),
        )


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """Parsed outcome of one logical generation call.

    Attributes:
        document: Parsed top-level JSON object (merged `{"items": [...]}` for chunked runs).
        items: Flat item sequence taken from `document["items"]`.
        chunk_count: Number of chunks the input was split into (1 when unchunked).
        failed_chunks: Number of chunks that exhausted recovery and were skipped.
        artifacts: Chunk artifacts still on disk, left for the caller to remove.
    """

    document: dict[str, Any]
    items: list[Item]
    chunk_count: int = 1
    failed_chunks: int = 0
    artifacts: tuple[Path, ...] = ()

    @property
    def is_partial(self) -> bool:
        """Return whether some chunks failed and the result covers only a subset."""

        return self.failed_chunks > 0


@dataclass(frozen=True, slots=True)
class LabelOutcome:
    """Summary of one work unit run."""

    label: str
    success: bool
    message_count: int = 0
    item_count: int = 0
    failed_messages: int = 0
    error: str | None = None
