"""CLI output and error rendering helpers.

This module centralizes user-facing CLI presentation for command diagnostics,
run summaries, step status tables, and failed-batch listings.
"""

from __future__ import annotations

from typing import NoReturn, Sequence

import typer

from .errors import PipelineStageError
from .models.datatypes import FailedBatchRecord, LabelOutcome, TimeWindow


def exit_with_command_error(command_name: str, exc: Exception) -> NoReturn:
    """Print concise diagnostics for command failures and exit with code 1."""

    if isinstance(exc, PipelineStageError):
        typer.secho(
            f"{command_name} failed at stage `{exc.stage}`: {exc.detail}",
            fg=typer.colors.RED,
            err=True,
        )
        if exc.hint:
            typer.secho(f"Hint: {exc.hint}", fg=typer.colors.YELLOW, err=True)
    else:
        typer.secho(f"{command_name} failed: {exc}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def echo_window(mode: str, window: TimeWindow) -> None:
    """Print the collection window of a run."""

    typer.echo(f"Mode: {mode}")
    typer.echo(f"Window start: {window.start.isoformat()}")
    typer.echo(f"Window end: {window.end.isoformat()}")


def echo_run_summary(outcomes: Sequence[LabelOutcome]) -> None:
    """Print one row per label plus run totals."""

    for outcome in outcomes:
        if outcome.success:
            typer.echo(
                f"[ok] {outcome.label}: messages={outcome.message_count} "
                f"items={outcome.item_count} failed_messages={outcome.failed_messages}"
            )
        else:
            typer.secho(f"[failed] {outcome.label}: {outcome.error}", fg=typer.colors.RED)
    succeeded = sum(1 for outcome in outcomes if outcome.success)
    typer.echo(f"Labels: {succeeded}/{len(outcomes)} succeeded")
    typer.echo(f"Items: {sum(outcome.item_count for outcome in outcomes)}")


def echo_step_statuses(statuses: dict[str, dict[str, str]], steps: Sequence[str]) -> None:
    """Print a compact deterministic step status table."""

    if not statuses:
        typer.echo("No labels recorded.")
        return
    for label in sorted(statuses):
        row = " ".join(f"{step}={statuses[label].get(step, 'pending')}" for step in steps)
        typer.echo(f"{label}: {row}")


def echo_failed_batches(records: Sequence[FailedBatchRecord]) -> None:
    """Print unresolved failures, one per line."""

    if not records:
        typer.echo("No unresolved failures.")
        return
    for record in records:
        typer.echo(
            f"{record.label} {record.step} #{record.batch_index} "
            f"at {record.failed_at}: {record.error}"
        )
