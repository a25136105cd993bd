"""Command-line interface for mailsift.

Responsibilities:
- Expose user-facing commands for running the pipeline and inspecting run state.
- Convert CLI arguments into `MailsiftConfig` and wire the pipeline components.

Key public functions:
- `app`: Typer application instance.
- `main`: invoke the Typer application.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Annotated, Any

import typer

from .cli_rendering import (
    echo_failed_batches,
    echo_run_summary,
    echo_step_statuses,
    echo_window,
    exit_with_command_error,
)
from .config import ConfigLoader, MailsiftConfig, RuntimeConfigSources, load_labels
from .credentials import create_credential_store
from .errors import PipelineStageError
from .llm.invokers import build_invoker_stack
from .llm.openrouter_client import OpenRouterChatClient
from .llm.prompts import PromptLibrary
from .llm.rate_limiter import RateLimiter
from .models.datatypes import LabelSpec
from .parsing import normalize_optional_string
from .pipeline import MailPipeline, PipelineStateStore
from .pipeline.state import DEFAULT_STEPS, FAILED_BATCHES_FILE_NAME, PROGRESS_FILE_NAME
from .report import MarkdownReportRenderer
from .sources import JsonDirectoryMailSource
from .telemetry.logger import RunLogger
from .text.normalizer import HtmlTextNormalizer
from .timewindow import SUPPORTED_MODES, calculate_time_window, generate_run_id

app = typer.Typer(
    name="mailsift",
    no_args_is_help=True,
    help="mailsift CLI.",
)


def _load_yaml_config(config_path: Path | None) -> MailsiftConfig | None:
    """Load a YAML config file when requested and map failures to stage errors."""

    if config_path is None:
        return None

    try:
        return ConfigLoader.from_yaml(config_path)
    except FileNotFoundError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Config file not found: `{config_path}`.",
            hint="Provide an existing path via `--config <path.yaml>`.",
        ) from exc
    except ValueError as exc:
        raise PipelineStageError(
            stage="config",
            detail=f"Invalid config file `{config_path}`: {exc}",
            hint="Fix config schema/values and rerun.",
        ) from exc


def _resolve_command_config(
    config_file: Path | None,
    input_dir: Path | None,
    out: Path | None,
    prompts_dir: Path | None,
    labels_file: Path | None,
    runtime_sources: RuntimeConfigSources,
) -> MailsiftConfig:
    """Resolve effective command config from YAML defaults and explicit CLI overrides."""

    loaded = _load_yaml_config(config_file)
    if loaded is None:
        if input_dir is None:
            raise PipelineStageError(
                stage="config",
                detail="Input directory is required when `--config` is not provided.",
                hint="Pass `--input-dir <dir>` or use `--config <path.yaml>` with `input_dir`.",
            )
        loaded = MailsiftConfig(input_dir=input_dir)

    config = MailsiftConfig(
        input_dir=input_dir if input_dir is not None else loaded.input_dir,
        output_dir=out if out is not None else loaded.output_dir,
        prompts_dir=prompts_dir if prompts_dir is not None else loaded.prompts_dir,
        labels_file=labels_file if labels_file is not None else loaded.labels_file,
        model=loaded.model,
        base_url=loaded.base_url,
        api_key=loaded.api_key,
        profile_path=loaded.profile_path,
        max_tokens=loaded.max_tokens,
        settings=loaded.settings,
        runtime_sources=runtime_sources,
    )
    try:
        config.validate()
    except ValueError as exc:
        raise PipelineStageError(stage="config", detail=str(exc)) from exc
    return config


def _runtime_sources(api_key: str | None, model: str | None) -> RuntimeConfigSources:
    """Assemble CLI, secure-storage, and environment sources for precedence resolution."""

    cli_values: dict[str, str] = {}
    for key, value in (("api_key", api_key), ("model", model)):
        normalized = normalize_optional_string(value)
        if normalized is not None:
            cli_values[key] = normalized

    secure_values: dict[str, str] = {}
    if "api_key" not in cli_values:
        stored = create_credential_store().get_api_key()
        if stored is not None:
            secure_values["api_key"] = stored
    return RuntimeConfigSources(cli=cli_values, secure=secure_values, env=dict(os.environ))


def _resolve_labels(config: MailsiftConfig, labels: str | None) -> list[LabelSpec]:
    selected = [name.strip() for name in labels.split(",")] if labels else None
    if config.labels_file is not None:
        try:
            return load_labels(config.labels_file, selected)
        except (OSError, ValueError) as exc:
            raise PipelineStageError(
                stage="labels",
                detail=str(exc),
                hint="Check the label file and the `--labels` selection.",
            ) from exc
    if not selected:
        raise PipelineStageError(
            stage="labels",
            detail="No labels to process.",
            hint="Pass `--labels a,b` or set `labels_file` in the config.",
        )
    return [LabelSpec(name=name) for name in selected if name]


def _load_profile(path: Path | None) -> Any:
    if path is None or not path.is_file():
        return None
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise PipelineStageError(
                stage="config",
                detail=f"Profile file `{path}` is not valid JSON: {exc}",
            ) from exc
    return text.strip() or None


def _run_dir_state(run_dir: Path) -> PipelineStateStore:
    if not (run_dir / PROGRESS_FILE_NAME).exists() and not (
        run_dir / FAILED_BATCHES_FILE_NAME
    ).exists():
        raise PipelineStageError(
            stage="state",
            detail=f"No run state found in `{run_dir}`.",
            hint="Pass a run directory such as `out/runs/<YYYYMMDD>`.",
        )
    return PipelineStateStore.for_run_dir(run_dir)


@app.command("run")
def run_command(
    config_file: Annotated[
        Path | None,
        typer.Option("--config", help="Path to YAML config file with command defaults."),
    ] = None,
    input_dir: Annotated[
        Path | None,
        typer.Option("--input-dir", help="Directory of collected mail records per label."),
    ] = None,
    out: Annotated[
        Path | None,
        typer.Option("--out", help="Output directory (overrides config file value)."),
    ] = None,
    prompts_dir: Annotated[
        Path | None,
        typer.Option("--prompts-dir", help="Directory with extract/merge/enrich headers."),
    ] = None,
    labels_file: Annotated[
        Path | None,
        typer.Option("--labels-file", help="JSON or YAML file listing labels."),
    ] = None,
    labels: Annotated[
        str | None,
        typer.Option("--labels", help="Comma-separated label names to process."),
    ] = None,
    mode: Annotated[
        str,
        typer.Option("--mode", help=f"Time window mode: {', '.join(SUPPORTED_MODES)}."),
    ] = "schedule",
    date: Annotated[
        str | None,
        typer.Option("--date", help="Target date `YYYY-MM-DD` for `--mode custom`."),
    ] = None,
    api_key: Annotated[
        str | None,
        typer.Option("--api-key", help="Backend API key override."),
    ] = None,
    model: Annotated[
        str | None,
        typer.Option("--model", help="Backend model id override."),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Emit debug-level phase logs."),
    ] = False,
) -> None:
    """Run the pipeline for all selected labels."""

    try:
        config = _resolve_command_config(
            config_file=config_file,
            input_dir=input_dir,
            out=out,
            prompts_dir=prompts_dir,
            labels_file=labels_file,
            runtime_sources=_runtime_sources(api_key, model),
        )
        resolved_api_key = config.resolved_api_key()
        if resolved_api_key is None:
            raise PipelineStageError(
                stage="config",
                detail="Missing backend API key.",
                hint="Set `OPENROUTER_API_KEY`, pass `--api-key`, or run `mailsift credentials --set-api-key`.",
            )
        selected_labels = _resolve_labels(config, labels)
        try:
            window = calculate_time_window(mode, date)
        except ValueError as exc:
            raise PipelineStageError(stage="timewindow", detail=str(exc)) from exc

        run_id = generate_run_id()
        run_dir = config.output_dir / "runs" / run_id
        settings = config.settings
        client = OpenRouterChatClient(
            api_key=resolved_api_key,
            model=config.resolved_model(),
            base_url=config.base_url,
            timeout_seconds=settings.call_timeout_seconds,
            max_tokens=config.max_tokens,
        )
        limiter = RateLimiter(
            max_requests_per_window=settings.max_requests_per_minute,
            min_interval_seconds=settings.min_request_interval_seconds,
        )
        pipeline = MailPipeline(
            run_dir=run_dir,
            source=JsonDirectoryMailSource(config.input_dir),
            normalizer=HtmlTextNormalizer(),
            renderer=MarkdownReportRenderer(),
            invoker=build_invoker_stack(client, settings, rate_limiter=limiter),
            prompts=PromptLibrary(config.prompts_dir),
            settings=settings,
            profile=_load_profile(config.profile_path),
            run_logger=RunLogger(level="DEBUG" if verbose else "INFO"),
        )
        outcomes = asyncio.run(pipeline.run(selected_labels, window))
    except Exception as exc:
        exit_with_command_error("run", exc)

    typer.echo(f"Run id: {run_id}")
    typer.echo(f"Run directory: {run_dir}")
    echo_window(mode, window)
    echo_run_summary(outcomes)


@app.command("status")
def status_command(
    run_dir: Annotated[Path, typer.Argument(help="Run directory (`out/runs/<run id>`).")],
) -> None:
    """Show per-label step statuses of a run."""

    try:
        state = _run_dir_state(run_dir)
    except Exception as exc:
        exit_with_command_error("status", exc)

    echo_step_statuses(state.progress.label_statuses(), DEFAULT_STEPS)
    completed_at = state.progress.completed_at
    typer.echo(f"Run completed: {completed_at or 'no'}")
    typer.echo(f"Unresolved failures: {len(state.failures.get_failed_batches())}")


@app.command("failures")
def failures_command(
    run_dir: Annotated[Path, typer.Argument(help="Run directory (`out/runs/<run id>`).")],
    label: Annotated[str | None, typer.Option("--label", help="Filter by label.")] = None,
    step: Annotated[str | None, typer.Option("--step", help="Filter by step.")] = None,
) -> None:
    """List unresolved chunk/batch failures of a run."""

    try:
        state = _run_dir_state(run_dir)
    except Exception as exc:
        exit_with_command_error("failures", exc)

    echo_failed_batches(state.failures.get_failed_batches(label, step))


@app.command("resolve")
def resolve_command(
    run_dir: Annotated[Path, typer.Argument(help="Run directory (`out/runs/<run id>`).")],
    label: Annotated[str, typer.Argument(help="Label of the failure.")],
    step: Annotated[str, typer.Argument(help="Step of the failure.")],
    batch_index: Annotated[int, typer.Argument(help="Batch index of the failure.")],
) -> None:
    """Mark one recorded failure as resolved."""

    try:
        state = _run_dir_state(run_dir)
        removed = state.failures.mark_resolved(label, step, batch_index)
    except Exception as exc:
        exit_with_command_error("resolve", exc)

    if removed:
        typer.echo(f"Resolved {removed} failure record(s).")
    else:
        typer.echo("No matching failure record found.")


@app.command("clear-failures")
def clear_failures_command(
    run_dir: Annotated[Path, typer.Argument(help="Run directory (`out/runs/<run id>`).")],
) -> None:
    """Drop every recorded failure of a run."""

    try:
        state = _run_dir_state(run_dir)
        state.failures.clear()
    except Exception as exc:
        exit_with_command_error("clear-failures", exc)

    typer.echo("Cleared all failure records.")


@app.command("credentials")
def credentials_command(
    set_api_key: Annotated[
        bool,
        typer.Option(
            "--set-api-key",
            help="Prompt for API key with hidden input and store it securely.",
        ),
    ] = False,
    clear_api_key: Annotated[
        bool,
        typer.Option(
            "--clear-api-key",
            help="Clear stored API key from secure credential storage.",
        ),
    ] = False,
) -> None:
    """Manage the securely stored backend API key."""

    if set_api_key and clear_api_key:
        exit_with_command_error(
            "credentials",
            PipelineStageError(
                stage="credentials",
                detail="`--set-api-key` and `--clear-api-key` cannot be used together.",
                hint="Run one credentials action per command invocation.",
            ),
        )

    credential_store = create_credential_store()
    if set_api_key:
        prompted_api_key = normalize_optional_string(
            typer.prompt(
                "OpenRouter API key (hidden input)",
                default="",
                hide_input=True,
                show_default=False,
            )
        )
        if prompted_api_key is None:
            exit_with_command_error(
                "credentials",
                PipelineStageError(
                    stage="credentials",
                    detail="No API key entered.",
                    hint="Provide a non-empty API key when using `--set-api-key`.",
                ),
            )
        try:
            credential_store.set_api_key(prompted_api_key)
        except (RuntimeError, ValueError) as exc:
            exit_with_command_error(
                "credentials",
                PipelineStageError(
                    stage="credentials",
                    detail=f"Failed to store API key securely: {exc}",
                    hint="Install and configure a keyring backend and retry.",
                ),
            )
        typer.echo("API key stored in secure credential storage.")
        return

    if clear_api_key:
        removed = credential_store.clear_api_key()
        if removed:
            typer.echo("Stored API key cleared from secure credential storage.")
        else:
            typer.echo("No stored API key found in secure credential storage.")
        return

    availability = "available" if credential_store.is_available() else "unavailable"
    status = "present" if credential_store.get_api_key() is not None else "not set"
    typer.echo(f"Secure credential storage: {availability}")
    typer.echo(f"Stored OpenRouter API key: {status}")


def main() -> None:
    """CLI entrypoint for console scripts."""
    app()
