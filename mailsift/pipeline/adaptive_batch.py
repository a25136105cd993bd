"""Adaptive batch sizing for per-item enrichment calls.

Responsibilities:
- Walk a forward-only cursor over the items in windows sized from a descending ladder.
- Step one rung down on empty results or failures and retry the same window.
- Step back up after a success (configurable recovery step).
- At the smallest rung, keep the original items of a failing window and record it.

Every input item appears exactly once in the output, enriched or original.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from ..errors import ProviderError, RetryExhaustedError, SchemaViolationError, SizeOverflowError
from ..models.datatypes import Item
from ..telemetry.logger import log_event
from .state import FailedBatchManager

BatchCall = Callable[[list[Item]], Awaitable[list[Item]]]

_BATCH_FAILURES = (ProviderError, RetryExhaustedError, SchemaViolationError)


@dataclass(frozen=True, slots=True)
class BatchSizeLadder:
    """Strictly descending positive batch sizes, largest first."""

    sizes: tuple[int, ...]

    def __post_init__(self) -> None:
        if not self.sizes:
            raise ValueError("Batch size ladder must not be empty.")
        if any(size <= 0 for size in self.sizes):
            raise ValueError("Batch size ladder values must be positive.")
        if any(left <= right for left, right in zip(self.sizes, self.sizes[1:])):
            raise ValueError("Batch size ladder must be strictly descending.")

    def rung_for(self, batch_size: int) -> int:
        """Return the rung of the largest size not above `batch_size` (smallest rung if none)."""

        for rung, size in enumerate(self.sizes):
            if size <= batch_size:
                return rung
        return len(self.sizes) - 1

    @property
    def smallest_rung(self) -> int:
        return len(self.sizes) - 1


@dataclass(frozen=True, slots=True)
class BatchAttempt:
    """One iteration of the batch loop."""

    cursor: int
    batch_size: int
    outcome: str


@dataclass(slots=True)
class AdaptiveBatchReport:
    """Result of one adaptive batch run.

    Attributes:
        items: Enriched items, with original items substituted for degraded windows.
        enriched_windows: Windows that returned a non-empty result.
        degraded_windows: Windows kept in original form after failing at the smallest rung.
        attempts: Every loop iteration in order, for diagnostics.
    """

    items: list[Item] = field(default_factory=list)
    enriched_windows: int = 0
    degraded_windows: int = 0
    attempts: list[BatchAttempt] = field(default_factory=list)


def classify_batch_failure(exc: BaseException) -> str:
    """Return a short failure class for logging and failure records."""

    cause = exc.last_error if isinstance(exc, RetryExhaustedError) else exc
    if isinstance(cause, SizeOverflowError):
        return "size_overflow"
    if isinstance(exc, SchemaViolationError):
        return "schema"
    if isinstance(exc, RetryExhaustedError):
        return "exhausted"
    return getattr(exc, "failure_kind", "error")


class AdaptiveBatchProcessor:
    """Sequential batch loop whose window size adapts to backend behavior."""

    def __init__(
        self,
        ladder: BatchSizeLadder | Sequence[int],
        *,
        recovery_step: int = 1,
        failures: FailedBatchManager | None = None,
    ) -> None:
        if recovery_step < 0:
            raise ValueError("`recovery_step` must be zero or a positive integer.")
        self.ladder = ladder if isinstance(ladder, BatchSizeLadder) else BatchSizeLadder(tuple(ladder))
        self.recovery_step = recovery_step
        self.failures = failures

    async def process_all(
        self,
        items: Sequence[Item],
        call: BatchCall,
        *,
        initial_batch_size: int | None = None,
        label: str = "",
        step: str = "enrich",
    ) -> AdaptiveBatchReport:
        """Run `call` over `items` and return the combined report.

        `PersistenceError` and any exception outside the provider taxonomy raised by
        `call` propagate unchanged.
        """

        report = AdaptiveBatchReport()
        rung = 0 if initial_batch_size is None else self.ladder.rung_for(initial_batch_size)
        cursor = 0
        while cursor < len(items):
            batch_size = self.ladder.sizes[rung]
            window = list(items[cursor : cursor + batch_size])
            failure_class: str | None = None
            error: BaseException | str = ""
            try:
                result = await call(window)
            except _BATCH_FAILURES as exc:
                failure_class = classify_batch_failure(exc)
                error = exc
            else:
                if result:
                    report.items.extend(result)
                    report.enriched_windows += 1
                    report.attempts.append(BatchAttempt(cursor, batch_size, "enriched"))
                    cursor += len(window)
                    rung = max(0, rung - self.recovery_step)
                    continue
                failure_class = "empty"
                error = "Empty result"

            if rung < self.ladder.smallest_rung:
                report.attempts.append(BatchAttempt(cursor, batch_size, f"shrink:{failure_class}"))
                rung += 1
                log_event(
                    "WARNING",
                    step,
                    "batch-shrink",
                    label=label,
                    cursor=cursor,
                    failure_class=failure_class,
                    next_batch_size=self.ladder.sizes[rung],
                )
                continue

            report.attempts.append(BatchAttempt(cursor, batch_size, f"degraded:{failure_class}"))
            report.items.extend(window)
            report.degraded_windows += 1
            if self.failures is not None:
                self.failures.record_failure(
                    label,
                    step,
                    cursor,
                    error,
                    {
                        "batch_size": batch_size,
                        "failure_class": failure_class,
                        "item_count": len(window),
                    },
                )
            log_event(
                "WARNING",
                step,
                "batch-degraded",
                label=label,
                cursor=cursor,
                failure_class=failure_class,
            )
            cursor += len(window)

        return report
