"""Label-level orchestration of the mail extraction pipeline.

Responsibilities:
- Walk each label through `fetch`, `normalize`, `llm_extract`, `merge`, `enrich`,
  skipping steps an earlier run already completed.
- Keep per-message and per-batch failures local and recorded; let persistence
  failures abort the run.
- Render one report per label and admit labels through a FIFO gate.

Run directory layout::

    <run_dir>/progress.json
    <run_dir>/failed_batches.json
    <run_dir>/labels/<label>/raw/msg_<id>.json
    <run_dir>/labels/<label>/clean/clean_<id>.json
    <run_dir>/labels/<label>/items/items_<id>.json
    <run_dir>/merged/merged_<label>.json
    <run_dir>/final/<label>.md
    <run_dir>/tmp/_chunk_<i>_of_<n>_<token>.json   (only while a chunked call is in flight)
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict
from datetime import datetime, timezone
from email.utils import parseaddr
import json
from pathlib import Path
import re
from typing import Any, Sequence, TypeVar

from ..config import PipelineSettings
from ..errors import (
    PersistenceError,
    PipelineStageError,
    ProviderError,
    RetryExhaustedError,
    SchemaViolationError,
)
from ..io.storage import ArtifactStore, read_json
from ..llm.invokers import InvocationRequest, Invoker, validate_required_fields
from ..llm.prompts import PromptLibrary
from ..models.datatypes import CleanMessage, Item, LabelOutcome, LabelSpec, MailRecord, TimeWindow
from ..sources import MailSource, ReportRenderer, TextNormalizer
from ..telemetry.logger import RunLogger, log_event
from .adaptive_batch import AdaptiveBatchProcessor
from .admission import AdmissionGate
from .chunk_orchestrator import ChunkOrchestrator
from .merger import ResultMerger
from .state import PipelineStateStore

_StepResult = TypeVar("_StepResult")

_CALL_FAILURES = (ProviderError, RetryExhaustedError, SchemaViolationError)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


def _safe_name(value: str) -> str:
    return _UNSAFE_FILENAME_CHARS.sub("_", value) or "message"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class MailPipeline:
    """Coordinate all steps of one run over a set of labels."""

    def __init__(
        self,
        *,
        run_dir: Path,
        source: MailSource,
        normalizer: TextNormalizer,
        renderer: ReportRenderer,
        invoker: Invoker,
        prompts: PromptLibrary,
        state: PipelineStateStore | None = None,
        settings: PipelineSettings | None = None,
        profile: Any = None,
        run_logger: RunLogger | None = None,
    ) -> None:
        self.run_dir = run_dir
        self.source = source
        self.normalizer = normalizer
        self.renderer = renderer
        self.invoker = invoker
        self.prompts = prompts
        self.settings = settings or PipelineSettings()
        self.state = state or PipelineStateStore.for_run_dir(run_dir)
        self.profile = profile
        self.store = ArtifactStore(run_dir)
        self.merger = ResultMerger()
        self.chunker = ChunkOrchestrator(
            invoker, tmp_dir=run_dir / "tmp", settings=self.settings, merger=self.merger
        )
        self._run_logger = run_logger

    async def run(self, labels: Sequence[LabelSpec], window: TimeWindow) -> list[LabelOutcome]:
        """Process every label and stamp the run as completed.

        A label-level failure becomes a failed `LabelOutcome`; `PersistenceError`
        propagates and leaves the run unfinished.
        """

        gate = AdmissionGate(self.settings.concurrency_limit)
        outcomes = await asyncio.gather(
            *(gate.run(lambda label=label: self._process_guarded(label, window)) for label in labels)
        )
        self.state.progress.mark_run_completed()
        return list(outcomes)

    async def _process_guarded(self, label: LabelSpec, window: TimeWindow) -> LabelOutcome:
        try:
            return await self.process_label(label, window)
        except PersistenceError:
            raise
        except Exception as exc:
            log_event("ERROR", "label", "failure", label=label.name, error_type=type(exc).__name__)
            return LabelOutcome(label=label.name, success=False, error=str(exc))

    async def process_label(self, label: LabelSpec, window: TimeWindow) -> LabelOutcome:
        """Run all steps for one label and render its report."""

        name = label.name
        progress = self.state.progress
        progress.init_label(name)
        label_dir = Path("labels") / name
        raw_dir, clean_dir, items_dir = label_dir / "raw", label_dir / "clean", label_dir / "items"
        for directory in (raw_dir, clean_dir, items_dir):
            self.store.ensure_dir(directory)

        await self._run_step(name, "fetch", lambda: self._fetch(label, window, raw_dir))
        raw_files = self.store.list_files(raw_dir, "msg_")
        if not raw_files:
            log_event("INFO", "fetch", "empty", label=name)
            return LabelOutcome(label=name, success=True)

        await self._run_step(name, "normalize", lambda: self._normalize(raw_files, clean_dir))
        failed_messages = await self._run_step(
            name, "llm_extract", lambda: self._extract(name, clean_dir, items_dir)
        )

        merged_path = Path("merged") / f"merged_{name}.json"
        await self._run_step(name, "merge", lambda: self._merge(name, items_dir, merged_path))
        merged = self._load_merged(name, merged_path)

        await self._run_step(name, "enrich", lambda: self._enrich(name, merged, merged_path))
        merged = self._load_merged(name, merged_path)

        report = self.renderer.render(name, merged, window)
        self.store.save_text(Path("final") / f"{name}{self.renderer.file_suffix}", report)

        return LabelOutcome(
            label=name,
            success=True,
            message_count=len(raw_files),
            item_count=len(merged.get("items") or []),
            failed_messages=failed_messages or 0,
        )

    async def _fetch(self, label: LabelSpec, window: TimeWindow, raw_dir: Path) -> int:
        records = self.source.fetch(label, window)
        for record in records:
            self.store.save_json(raw_dir / f"msg_{_safe_name(record.id)}.json", asdict(record))
        log_event("INFO", "fetch", "collected", label=label.name, messages=len(records))
        return len(records)

    async def _normalize(self, raw_files: list[Path], clean_dir: Path) -> int:
        for raw_path in raw_files:
            record = MailRecord(**read_json(raw_path))
            clean = CleanMessage(
                message_id=record.id,
                sender=record.sender,
                subject=record.subject,
                date=record.date,
                clean_text=self.normalizer.normalize(record.html_or_text),
            )
            self.store.save_json(clean_dir / f"clean_{_safe_name(record.id)}.json", asdict(clean))
        return len(raw_files)

    async def _extract(self, label: str, clean_dir: Path, items_dir: Path) -> int:
        header = self.prompts.extract_header(label)
        clean_files = self.store.list_files(clean_dir, "clean_")
        failed = 0
        for index, clean_path in enumerate(clean_files):
            message = CleanMessage(**read_json(clean_path))
            items_path = items_dir / f"items_{_safe_name(message.message_id)}.json"
            if self.store.exists(items_path):
                continue

            sender_email = parseaddr(message.sender)[1] or message.sender
            try:
                result = await self.chunker.process(
                    header, self._message_input(message), keep_artifacts=True
                )
            except _CALL_FAILURES as exc:
                failed += 1
                self.state.failures.record_failure(
                    label,
                    "llm_extract",
                    index,
                    exc,
                    {"message_id": message.message_id, "sender": sender_email},
                )
                continue

            items = [
                {**item, "source_email": sender_email, "message_id": message.message_id}
                for item in result.items
            ]
            self.store.save_json(
                items_path,
                {
                    "items": items,
                    "chunk_count": result.chunk_count,
                    "failed_chunks": result.failed_chunks,
                },
            )
            self.chunker.cleanup(result)
        log_event(
            "INFO",
            "llm_extract",
            "summary",
            label=label,
            messages=len(clean_files),
            failed=failed,
        )
        return failed

    @staticmethod
    def _message_input(message: CleanMessage) -> str:
        return (
            f"From: {message.sender}\n"
            f"Subject: {message.subject}\n"
            f"Date: {message.date}\n\n"
            f"{message.clean_text}"
        )

    async def _merge(self, label: str, items_dir: Path, merged_path: Path) -> int:
        documents = [
            read_json(path)
            for path in self.store.list_files(items_dir, "items_")
        ]
        all_items = self.merger.flatten(documents)
        items = self.merger.merge(documents)

        merge_header = self.prompts.merge_header()
        if merge_header is not None and len(items) > 1:
            items = await self._backend_merge(label, merge_header, items)

        merged = {
            "label": label,
            "merged_at": _utc_now_iso(),
            "total_items": len(items),
            "items": items,
            "stats": {
                "original_count": len(all_items),
                "total_items": len(items),
                "duplicates_removed": len(all_items) - len(items),
            },
        }
        self.store.save_json(merged_path, merged)
        return len(items)

    async def _backend_merge(self, label: str, header: str, items: list[Item]) -> list[Item]:
        batch_size = self.settings.merge_batch_size
        merged: list[Item] = []
        for batch_number, start in enumerate(range(0, len(items), batch_size), start=1):
            batch = items[start : start + batch_size]
            try:
                result = await self._invoke_items(header, {"label": label, "items": batch})
            except _CALL_FAILURES as exc:
                self._keep_batch(label, batch_number, batch, exc, merged)
                continue
            if not result:
                self._keep_batch(label, batch_number, batch, "Empty result", merged)
                continue
            merged.extend(result)
        return merged

    def _keep_batch(
        self,
        label: str,
        batch_number: int,
        batch: list[Item],
        error: BaseException | str,
        merged: list[Item],
    ) -> None:
        merged.extend(batch)
        self.state.failures.record_failure(
            label, "merge", batch_number, error, {"batch_size": len(batch)}
        )

    async def _enrich(self, label: str, merged: dict[str, Any], merged_path: Path) -> bool:
        header = self.prompts.enrich_header()
        items = list(merged.get("items") or [])
        if header is None or not items:
            merged["has_insights"] = False
            self.store.save_json(merged_path, merged)
            return False

        async def call(batch: list[Item]) -> list[Item]:
            return await self._invoke_items(
                header, {"profile": self.profile, "label": label, "items": batch}
            )

        processor = AdaptiveBatchProcessor(
            self.settings.enrich_batch_ladder,
            recovery_step=self.settings.batch_recovery_step,
            failures=self.state.failures,
        )
        report = await processor.process_all(
            items,
            call,
            initial_batch_size=self.settings.enrich_initial_batch_size,
            label=label,
            step="enrich",
        )
        merged["items"] = report.items
        merged["total_items"] = len(report.items)
        merged["has_insights"] = report.enriched_windows > 0
        self.store.save_json(merged_path, merged)
        log_event(
            "INFO",
            "enrich",
            "summary",
            label=label,
            enriched_windows=report.enriched_windows,
            degraded_windows=report.degraded_windows,
        )
        return merged["has_insights"]

    async def _invoke_items(self, header: str, payload: dict[str, Any]) -> list[Item]:
        document = await self.invoker.invoke(
            InvocationRequest(header=header, input_text=json.dumps(payload, ensure_ascii=False))
        )
        validate_required_fields(document, self.settings.required_fields)
        return self.merger.flatten([document])

    def _load_merged(self, label: str, merged_path: Path) -> dict[str, Any]:
        if not self.store.exists(merged_path):
            raise PipelineStageError(
                stage="merge",
                detail=f"Merged artifact for label `{label}` is missing: {self.store.path(merged_path)}",
                hint="Delete the run directory's progress.json entry for this label and rerun.",
            )
        payload = self.store.load_json(merged_path)
        if not isinstance(payload, dict):
            raise PipelineStageError(
                stage="merge",
                detail=f"Merged artifact for label `{label}` must contain a JSON object.",
            )
        return payload

    async def _run_step(
        self,
        label: str,
        step: str,
        action: Callable[[], Awaitable[_StepResult]],
    ) -> _StepResult | None:
        """Run one step unless already completed, bracketing it with status writes."""

        progress = self.state.progress
        if progress.is_step_completed(label, step):
            self._on_step_skipped(label, step)
            return None

        progress.set_step_status(label, step, "in_progress")
        self._on_step_start(label, step)
        try:
            result = await action()
        except Exception as exc:
            self._on_step_failure(label, step, exc)
            raise
        progress.set_step_status(label, step, "completed")
        self._on_step_complete(label, step)
        return result

    def _on_step_start(self, label: str, step: str) -> None:
        if self._run_logger is not None:
            self._run_logger.log_stage_start(step, label=label)

    def _on_step_skipped(self, label: str, step: str) -> None:
        if self._run_logger is not None:
            self._run_logger.log_stage_skipped(step, label=label)

    def _on_step_complete(self, label: str, step: str) -> None:
        if self._run_logger is not None:
            self._run_logger.log_stage_complete(step, label=label)

    def _on_step_failure(self, label: str, step: str, exc: Exception) -> None:
        if self._run_logger is not None:
            self._run_logger.log_stage_failure(step, type(exc).__name__, label=label)
