"""Structured run logging utilities.

Responsibilities:
- Emit concise, deterministic phase-level runtime logs through `loguru`.
- Keep secrets and free-form payloads out of log context values.
"""

from __future__ import annotations

import sys
from typing import TextIO

from loguru import logger


def _sanitize_context_value(value: object) -> str:
    """Convert context values into stable, shell-safe tokens."""

    raw = str(value).strip()
    if not raw:
        return "none"
    return "".join(
        character if character.isalnum() or character in {"-", "_", ".", ":", "/"} else "_"
        for character in raw
    )


def _format_context(context: dict[str, object]) -> str:
    """Serialize context key/value pairs in deterministic key order."""

    if not context:
        return ""
    tokens = [
        f"{key}={_sanitize_context_value(context[key])}"
        for key in sorted(context.keys())
    ]
    return " " + " ".join(tokens)


def format_event(level: str, stage: str, event: str, **context: object) -> str:
    """Render one phase log line without emitting it."""

    return f"[phase] level={level} stage={stage} event={event}{_format_context(context)}"


def log_event(level: str, stage: str, event: str, **context: object) -> None:
    """Emit one structured runtime log line through the shared loguru logger."""

    logger.log(level, format_event(level, stage, event, **context))


class RunLogger:
    """Configure the loguru sink for a CLI run and emit stage lifecycle events."""

    def __init__(self, sink: TextIO | None = None, level: str = "INFO") -> None:
        """Replace loguru sinks with one deterministic plain-message sink."""

        self._sink = sink or sys.stderr
        logger.remove()
        logger.add(self._sink, format="{message}", level=level, colorize=False)

    def log_stage_start(self, stage: str, **context: object) -> None:
        """Emit a stage-start runtime event."""

        log_event("INFO", stage, "start", **context)

    def log_stage_skipped(self, stage: str, **context: object) -> None:
        """Emit a stage-skip event for steps already completed by an earlier run."""

        log_event("INFO", stage, "skipped", **context)

    def log_stage_complete(self, stage: str, **context: object) -> None:
        """Emit a stage-complete runtime event."""

        log_event("INFO", stage, "complete", **context)

    def log_stage_failure(self, stage: str, error_type: str, **context: object) -> None:
        """Emit a stage-failure runtime event without sensitive payload details."""

        log_event("ERROR", stage, "failure", error_type=error_type, **context)
