"""Durable run state: per-step progress and unresolved batch failures.

Responsibilities:
- Track the status of every step of every label in `progress.json`.
- Keep a queryable list of failed chunks/batches in `failed_batches.json`.
- Persist every mutation immediately through a whole-file atomic rewrite.

A step recorded as `in_progress` is treated as not completed, so a crashed run
re-executes that step on resume.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, Callable

from ..errors import PersistenceError
from ..io.storage import read_json, write_json_atomic
from ..models.datatypes import FailedBatchRecord, StepStatus
from ..telemetry.logger import log_event

DEFAULT_STEPS: tuple[str, ...] = ("fetch", "normalize", "llm_extract", "merge", "enrich")
PROGRESS_FILE_NAME = "progress.json"
FAILED_BATCHES_FILE_NAME = "failed_batches.json"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def _load_document(path: Path, default: dict[str, Any]) -> dict[str, Any]:
    if not path.exists():
        return default
    try:
        payload = read_json(path)
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"State file `{path}` could not be read: {exc}", path=path) from exc
    if not isinstance(payload, dict):
        raise PersistenceError(f"State file `{path}` must contain a JSON object.", path=path)
    return payload


class ProgressManager:
    """Step-status store for one run, backed by a single JSON document.

    Layout::

        {"labels": {"<label>": {"<step>": "pending|in_progress|completed"}},
         "started_at": "...", "updated_at": "...", "completed_at": "..."}
    """

    def __init__(
        self,
        path: Path,
        *,
        steps: tuple[str, ...] = DEFAULT_STEPS,
        now: Callable[[], str] = _utc_now_iso,
    ) -> None:
        self.path = path
        self.steps = steps
        self._now = now
        self._progress = _load_document(path, {"labels": {}, "started_at": now()})
        self._progress.setdefault("labels", {})

    def init_label(self, label: str) -> None:
        """Register `label` with every step pending; existing entries are kept."""

        labels = self._progress["labels"]
        if label in labels:
            return
        labels[label] = {step: StepStatus.PENDING.value for step in self.steps}
        self._save()

    def set_step_status(self, label: str, step: str, status: StepStatus | str) -> None:
        """Record a step status and persist it before returning.

        Raises:
            ValueError: For unknown statuses or a transition out of `completed`.
        """

        new_status = StepStatus(status)
        self.init_label(label)
        current = self.get_step_status(label, step)
        if current is StepStatus.COMPLETED and new_status is not StepStatus.COMPLETED:
            raise ValueError(
                f"Step `{step}` of label `{label}` is completed and cannot move back "
                f"to `{new_status.value}`."
            )
        self._progress["labels"][label][step] = new_status.value
        self._save()
        log_event("DEBUG", "state", "step-status", label=label, step=step, status=new_status.value)

    def is_step_completed(self, label: str, step: str) -> bool:
        """Return whether `step` of `label` finished in this or an earlier run."""

        return self.get_step_status(label, step) is StepStatus.COMPLETED

    def get_step_status(self, label: str, step: str) -> StepStatus:
        """Return the recorded status, `pending` when the label or step is unknown."""

        raw = self._progress["labels"].get(label, {}).get(step)
        try:
            return StepStatus(raw) if raw is not None else StepStatus.PENDING
        except ValueError:
            return StepStatus.PENDING

    def label_statuses(self) -> dict[str, dict[str, str]]:
        """Return a copy of all recorded step statuses keyed by label."""

        return {label: dict(steps) for label, steps in self._progress["labels"].items()}

    def mark_run_completed(self) -> None:
        """Stamp the run as completed."""

        self._progress["completed_at"] = self._now()
        self._save()

    @property
    def completed_at(self) -> str | None:
        """Return the run completion timestamp, if the run finished."""

        value = self._progress.get("completed_at")
        return str(value) if value else None

    def _save(self) -> None:
        self._progress["updated_at"] = self._now()
        write_json_atomic(self.path, self._progress)


class FailedBatchManager:
    """Append-mostly store of unresolved chunk/batch failures for one run."""

    def __init__(self, path: Path, *, now: Callable[[], str] = _utc_now_iso) -> None:
        self.path = path
        self._now = now
        payload = _load_document(path, {"batches": []})
        raw_batches = payload.get("batches")
        self._records = [
            FailedBatchRecord.from_payload(entry)
            for entry in (raw_batches if isinstance(raw_batches, list) else [])
            if isinstance(entry, dict)
        ]

    def record_failure(
        self,
        label: str,
        step: str,
        batch_index: int,
        error: BaseException | str,
        context: dict[str, Any] | None = None,
    ) -> FailedBatchRecord:
        """Append one failure and persist it before returning."""

        record = FailedBatchRecord(
            label=label,
            step=step,
            batch_index=batch_index,
            error=str(error),
            context=dict(context or {}),
            failed_at=self._now(),
        )
        self._records.append(record)
        self._save()
        log_event(
            "WARNING",
            "state",
            "batch-failed",
            label=label,
            step=step,
            batch_index=batch_index,
        )
        return record

    def get_failed_batches(
        self, label: str | None = None, step: str | None = None
    ) -> list[FailedBatchRecord]:
        """Return failures, optionally filtered by label and/or step."""

        return [
            record
            for record in self._records
            if (label is None or record.label == label) and (step is None or record.step == step)
        ]

    def mark_resolved(self, label: str, step: str, batch_index: int) -> int:
        """Drop matching failures and return how many were removed."""

        kept = [
            record
            for record in self._records
            if not (
                record.label == label and record.step == step and record.batch_index == batch_index
            )
        ]
        removed = len(self._records) - len(kept)
        if removed:
            self._records = kept
            self._save()
        return removed

    def has_failures(self) -> bool:
        """Return whether any unresolved failure is recorded."""

        return bool(self._records)

    def clear(self) -> None:
        """Drop every recorded failure."""

        self._records = []
        self._save()

    def _save(self) -> None:
        write_json_atomic(
            self.path,
            {
                "batches": [record.to_payload() for record in self._records],
                "updated_at": self._now(),
            },
        )


@dataclass(slots=True)
class PipelineStateStore:
    """Both state files of one run directory."""

    progress: ProgressManager
    failures: FailedBatchManager

    @classmethod
    def for_run_dir(
        cls,
        run_dir: Path,
        *,
        steps: tuple[str, ...] = DEFAULT_STEPS,
        now: Callable[[], str] = _utc_now_iso,
    ) -> PipelineStateStore:
        """Open (or start) the state files under `run_dir`."""

        return cls(
            progress=ProgressManager(run_dir / PROGRESS_FILE_NAME, steps=steps, now=now),
            failures=FailedBatchManager(run_dir / FAILED_BATCHES_FILE_NAME, now=now),
        )
