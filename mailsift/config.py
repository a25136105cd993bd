"""Configuration model and loaders for mailsift.

Responsibilities:
- Define pipeline tuning knobs and runtime configuration as typed dataclasses.
- Provide deterministic precedence resolution for the backend API key and model.
- Provide loader entry points for file- and environment-based configuration.
- Load the label list (`labels.json` / `labels.yaml`) with optional filtering.

Key types:
- `PipelineSettings`: chunking, invocation ladders, pacing and batching knobs.
- `MailsiftConfig`: normalized runtime settings for a pipeline run.
- `RuntimeConfigSources`: optional value sources for precedence resolution.
- `ConfigLoader`: static construction helpers for `MailsiftConfig`.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import json
import os
from pathlib import Path
from typing import Any, Iterable, Mapping

import yaml

from .models.datatypes import LabelSpec
from .parsing import (
    normalize_optional_string,
    parse_number_sequence,
    parse_permissive_boolean,
    parse_positive_int,
    parse_positive_number,
)


DEFAULT_TRUNCATE_RATIOS: tuple[float, ...] = (1.0, 0.8, 0.6, 0.4)
DEFAULT_RETRY_DELAYS_SECONDS: tuple[float, ...] = (2.0, 4.0, 6.0, 10.0, 30.0, 60.0, 90.0)
DEFAULT_ENRICH_BATCH_LADDER: tuple[int, ...] = (6, 4, 2, 1)

_DEFAULT_MODEL = "upstage/solar-pro"
_DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
_API_KEY_ENV = "OPENROUTER_API_KEY"
_MODEL_ENV = "MAILSIFT_MODEL"


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Tuning knobs shared by the chunking, invocation and batching layers.

    Attributes:
        chunk_size_chars: Maximum characters of input text per backend call.
        max_header_chars: Header length above which chunk size is reduced.
        truncate_ratios: Fractions of the original input tried on size overflow.
        retry_delays_seconds: Delay ladder for transient failures.
        max_requests_per_minute: Backend calls allowed per rolling minute.
        min_request_interval_seconds: Minimum spacing between backend calls.
        call_timeout_seconds: Hard wall-clock bound for one backend call.
        enrich_batch_ladder: Descending batch sizes for adaptive enrichment.
        enrich_initial_batch_size: Starting enrichment batch size.
        batch_recovery_step: Ladder rungs regained after a success (0 disables growth).
        merge_batch_size: Fixed batch size of the backend merge pass.
        concurrency_limit: Labels processed concurrently.
        required_fields: Top-level fields every extraction document must carry.
    """

    chunk_size_chars: int = 15000
    max_header_chars: int = 5000
    truncate_ratios: tuple[float, ...] = DEFAULT_TRUNCATE_RATIOS
    retry_delays_seconds: tuple[float, ...] = DEFAULT_RETRY_DELAYS_SECONDS
    max_requests_per_minute: int = 20
    min_request_interval_seconds: float = 4.0
    call_timeout_seconds: float = 300.0
    enrich_batch_ladder: tuple[int, ...] = DEFAULT_ENRICH_BATCH_LADDER
    enrich_initial_batch_size: int = 6
    batch_recovery_step: int = 1
    merge_batch_size: int = 15
    concurrency_limit: int = 1
    required_fields: tuple[str, ...] = ("items",)

    def validate(self) -> None:
        """Validate tuning values before any component is built from them."""

        for name in (
            "chunk_size_chars",
            "max_header_chars",
            "max_requests_per_minute",
            "enrich_initial_batch_size",
            "merge_batch_size",
            "concurrency_limit",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"`{name}` must be a positive integer.")
        if self.batch_recovery_step < 0:
            raise ValueError("`batch_recovery_step` must be zero or a positive integer.")
        if self.min_request_interval_seconds < 0:
            raise ValueError("`min_request_interval_seconds` must not be negative.")
        if self.call_timeout_seconds <= 0:
            raise ValueError("`call_timeout_seconds` must be a positive number.")
        if not self.truncate_ratios or any(r <= 0.0 or r > 1.0 for r in self.truncate_ratios):
            raise ValueError("`truncate_ratios` must be non-empty values in the (0, 1] range.")
        if any(delay < 0 for delay in self.retry_delays_seconds):
            raise ValueError("`retry_delays_seconds` must not contain negative delays.")
        ladder = self.enrich_batch_ladder
        if not ladder or any(size <= 0 for size in ladder):
            raise ValueError("`enrich_batch_ladder` must be non-empty positive sizes.")
        if any(left <= right for left, right in zip(ladder, ladder[1:])):
            raise ValueError("`enrich_batch_ladder` must be strictly descending.")


@dataclass(frozen=True, slots=True)
class RuntimeConfigSources:
    """Source mappings used for deterministic runtime value precedence.

    Attributes:
        cli: Values explicitly provided by CLI arguments.
        secure: Values loaded from secure local credential storage.
        env: Values loaded from environment variables.
    """

    cli: Mapping[str, str] = field(default_factory=dict)
    secure: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class MailsiftConfig:
    """Runtime configuration for one pipeline run.

    Attributes:
        input_dir: Directory holding collected mail records, one subdirectory per label.
        output_dir: Root directory for run artifacts.
        prompts_dir: Optional directory with instruction headers.
        labels_file: Optional `labels.json`/`labels.yaml` listing the work units.
        model: Backend model identifier.
        base_url: Backend REST base URL.
        api_key: Optional API key from the config file (lowest precedence).
        profile_path: Optional user profile text passed to enrichment.
        max_tokens: Optional output token cap per backend call.
        settings: Pipeline tuning knobs.
        runtime_sources: Optional runtime source overrides injected by CLI.
    """

    input_dir: Path
    output_dir: Path = Path("out")
    prompts_dir: Path | None = None
    labels_file: Path | None = None
    model: str = _DEFAULT_MODEL
    base_url: str = _DEFAULT_BASE_URL
    api_key: str | None = None
    profile_path: Path | None = None
    max_tokens: int | None = None
    settings: PipelineSettings = field(default_factory=PipelineSettings)
    runtime_sources: RuntimeConfigSources = field(default_factory=RuntimeConfigSources)

    def validate(self) -> None:
        """Validate runtime configuration values before pipeline execution."""

        if not isinstance(self.model, str) or not self.model.strip():
            raise ValueError("`model` must be a non-empty string.")
        if not isinstance(self.base_url, str) or not self.base_url.strip():
            raise ValueError("`base_url` must be a non-empty string.")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("`max_tokens` must be a positive integer.")
        self.settings.validate()

    def resolved_api_key(self, sources: RuntimeConfigSources | None = None) -> str | None:
        """Resolve the backend API key.

        Precedence is `cli` > `secure` > `env` (`OPENROUTER_API_KEY`) > config file.
        """

        return self._resolve_runtime_value(
            key="api_key",
            env_key=_API_KEY_ENV,
            default_value=self.api_key,
            sources=sources if sources is not None else self.runtime_sources,
        )

    def resolved_model(self, sources: RuntimeConfigSources | None = None) -> str:
        """Resolve the backend model with the same precedence as the API key."""

        model = self._resolve_runtime_value(
            key="model",
            env_key=_MODEL_ENV,
            default_value=self.model,
            sources=sources if sources is not None else self.runtime_sources,
        )
        if model is None:
            raise ValueError("`model` could not be resolved from CLI, env, or defaults.")
        return model

    @staticmethod
    def _resolve_runtime_value(
        key: str,
        env_key: str,
        default_value: str | None,
        sources: RuntimeConfigSources,
    ) -> str | None:
        for mapping, lookup_key in (
            (sources.cli, key),
            (sources.secure, key),
            (sources.env, env_key),
        ):
            if lookup_key in mapping:
                value = normalize_optional_string(mapping.get(lookup_key))
                if value is not None:
                    return value
        return normalize_optional_string(default_value)


class ConfigLoader:
    """Factory methods for creating `MailsiftConfig` from external sources."""

    _REQUIRED_YAML_KEYS = frozenset({"input_dir"})
    _SUPPORTED_YAML_KEYS = frozenset(
        {
            "input_dir",
            "output_dir",
            "prompts_dir",
            "labels_file",
            "model",
            "base_url",
            "api_key",
            "profile_path",
            "max_tokens",
            "settings",
        }
    )
    _SETTINGS_KEYS = frozenset(item.name for item in fields(PipelineSettings))
    _RUNTIME_ENV_KEYS = frozenset({_API_KEY_ENV, _MODEL_ENV})

    @staticmethod
    def from_yaml(path: Path) -> MailsiftConfig:
        """Create a validated config from a YAML file.

        Relative paths inside the file are resolved against the file's directory.
        """

        payload = ConfigLoader._parse_yaml_payload(path.read_text(encoding="utf-8"), path)
        return ConfigLoader._build_config_from_mapping(
            payload, source_label=f"YAML `{path}`", base_dir=path.parent
        )

    @staticmethod
    def from_env(env: Mapping[str, str] | None = None) -> MailsiftConfig:
        """Create a validated config from `MAILSIFT_*` environment variables."""

        env_map: Mapping[str, str] = os.environ if env is None else env

        input_dir = normalize_optional_string(env_map.get("MAILSIFT_INPUT_DIR"))
        if input_dir is None:
            raise ValueError("Environment variable `MAILSIFT_INPUT_DIR` is required.")

        settings_payload = {
            key: env_map[f"MAILSIFT_{key.upper()}"]
            for key in ConfigLoader._SETTINGS_KEYS
            if normalize_optional_string(env_map.get(f"MAILSIFT_{key.upper()}")) is not None
        }
        max_tokens_raw = normalize_optional_string(env_map.get("MAILSIFT_MAX_TOKENS"))
        runtime_env = {
            key: value
            for key, value in env_map.items()
            if key in ConfigLoader._RUNTIME_ENV_KEYS
            and normalize_optional_string(value) is not None
        }

        config = MailsiftConfig(
            input_dir=Path(input_dir),
            output_dir=ConfigLoader._optional_env_path(env_map, "MAILSIFT_OUTPUT_DIR")
            or Path("out"),
            prompts_dir=ConfigLoader._optional_env_path(env_map, "MAILSIFT_PROMPTS_DIR"),
            labels_file=ConfigLoader._optional_env_path(env_map, "MAILSIFT_LABELS_FILE"),
            base_url=normalize_optional_string(env_map.get("MAILSIFT_BASE_URL"))
            or _DEFAULT_BASE_URL,
            profile_path=ConfigLoader._optional_env_path(env_map, "MAILSIFT_PROFILE_PATH"),
            max_tokens=(
                parse_positive_int(max_tokens_raw, "MAILSIFT_MAX_TOKENS")
                if max_tokens_raw is not None
                else None
            ),
            settings=ConfigLoader._build_settings(settings_payload, "environment"),
            runtime_sources=RuntimeConfigSources(env=runtime_env),
        )
        config.validate()
        return config

    @staticmethod
    def _parse_yaml_payload(raw_text: str, path: Path) -> Mapping[str, Any]:
        """Parse YAML text and enforce a mapping root payload."""

        try:
            payload = yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ValueError(f"YAML config `{path}` could not be parsed: {exc}") from exc
        if payload is None:
            payload = {}
        if not isinstance(payload, Mapping):
            raise ValueError(f"YAML config `{path}` must contain a top-level mapping/object.")
        return payload

    @staticmethod
    def _build_config_from_mapping(
        payload: Mapping[str, Any], source_label: str, base_dir: Path
    ) -> MailsiftConfig:
        """Build a validated config from a normalized mapping payload."""

        ConfigLoader._validate_keys(
            payload,
            supported=ConfigLoader._SUPPORTED_YAML_KEYS,
            required=ConfigLoader._REQUIRED_YAML_KEYS,
            source_label=source_label,
        )

        def path_value(key: str) -> Path | None:
            value = normalize_optional_string(payload.get(key))
            if value is None:
                return None
            candidate = Path(value).expanduser()
            return candidate if candidate.is_absolute() else base_dir / candidate

        input_dir = path_value("input_dir")
        if input_dir is None:
            raise ValueError(f"{source_label} requires non-empty `input_dir`.")

        settings_raw = payload.get("settings") or {}
        if not isinstance(settings_raw, Mapping):
            raise ValueError(f"{source_label} field `settings` must be a mapping/object.")

        max_tokens = None
        if normalize_optional_string(payload.get("max_tokens")) is not None:
            max_tokens = parse_positive_int(payload["max_tokens"], "max_tokens")

        config = MailsiftConfig(
            input_dir=input_dir,
            output_dir=path_value("output_dir") or base_dir / "out",
            prompts_dir=path_value("prompts_dir"),
            labels_file=path_value("labels_file"),
            model=normalize_optional_string(payload.get("model")) or _DEFAULT_MODEL,
            base_url=normalize_optional_string(payload.get("base_url")) or _DEFAULT_BASE_URL,
            api_key=normalize_optional_string(payload.get("api_key")),
            profile_path=path_value("profile_path"),
            max_tokens=max_tokens,
            settings=ConfigLoader._build_settings(settings_raw, f"{source_label} `settings`"),
        )
        config.validate()
        return config

    @staticmethod
    def _build_settings(payload: Mapping[str, Any], source_label: str) -> PipelineSettings:
        """Build `PipelineSettings` from a flat mapping of overrides."""

        ConfigLoader._validate_keys(
            payload,
            supported=ConfigLoader._SETTINGS_KEYS,
            required=frozenset(),
            source_label=source_label,
        )
        overrides: dict[str, Any] = {}
        for key, raw_value in payload.items():
            if key in {"truncate_ratios", "retry_delays_seconds"}:
                overrides[key] = parse_number_sequence(raw_value, key)
            elif key == "enrich_batch_ladder":
                tokens = raw_value.split(",") if isinstance(raw_value, str) else raw_value
                if not isinstance(tokens, list | tuple) or not tokens:
                    raise ValueError(f"`{key}` must be a non-empty list or comma-separated string.")
                overrides[key] = tuple(parse_positive_int(size, key) for size in tokens)
            elif key == "required_fields":
                overrides[key] = ConfigLoader._string_tuple(raw_value, key)
            elif key == "batch_recovery_step":
                overrides[key] = ConfigLoader._non_negative_int(raw_value, key)
            elif key == "min_request_interval_seconds":
                overrides[key] = ConfigLoader._non_negative_number(raw_value, key)
            elif key == "call_timeout_seconds":
                overrides[key] = parse_positive_number(raw_value, key)
            else:
                overrides[key] = parse_positive_int(raw_value, key)
        return PipelineSettings(**overrides)

    @staticmethod
    def _validate_keys(
        payload: Mapping[str, Any],
        *,
        supported: frozenset[str],
        required: frozenset[str],
        source_label: str,
    ) -> None:
        """Validate supported and required mapping keys."""

        unknown = sorted(str(key) for key in set(payload).difference(supported))
        if unknown:
            key_list = ", ".join(unknown)
            raise ValueError(f"{source_label} includes unsupported key(s): {key_list}.")

        missing = sorted(key for key in required if key not in payload)
        if missing:
            key_list = ", ".join(missing)
            raise ValueError(f"{source_label} is missing required key(s): {key_list}.")

    @staticmethod
    def _non_negative_int(value: object, field_name: str) -> int:
        if isinstance(value, bool):
            raise ValueError(f"`{field_name}` must be zero or a positive integer.")
        try:
            number = int(str(value).strip())
        except ValueError as exc:
            raise ValueError(f"`{field_name}` must be zero or a positive integer.") from exc
        if number < 0:
            raise ValueError(f"`{field_name}` must be zero or a positive integer.")
        return number

    @staticmethod
    def _non_negative_number(value: object, field_name: str) -> float:
        if isinstance(value, bool):
            raise ValueError(f"`{field_name}` must be zero or a positive number.")
        try:
            number = float(str(value).strip())
        except ValueError as exc:
            raise ValueError(f"`{field_name}` must be zero or a positive number.") from exc
        if number < 0:
            raise ValueError(f"`{field_name}` must be zero or a positive number.")
        return number

    @staticmethod
    def _string_tuple(value: object, field_name: str) -> tuple[str, ...]:
        if isinstance(value, str):
            raw_items: Iterable[object] = value.split(",")
        elif isinstance(value, list | tuple):
            raw_items = value
        else:
            raise ValueError(f"`{field_name}` must be a list or comma-separated string.")
        items = tuple(
            normalized
            for normalized in (normalize_optional_string(item) for item in raw_items)
            if normalized is not None
        )
        return items

    @staticmethod
    def _optional_env_path(env: Mapping[str, str], key: str) -> Path | None:
        """Read an optional path value from environment mapping."""

        value = normalize_optional_string(env.get(key))
        if value is None:
            return None
        return Path(value)


def load_labels(path: Path, selected: Iterable[str] | None = None) -> list[LabelSpec]:
    """Load enabled labels from a JSON or YAML label file.

    The file holds `{"labels": [{"name": ..., "enabled": ..., "mail_label": ...,
    "sub_labels": [...]}]}`. When `selected` is given, only those names are kept,
    in file order.

    Raises:
        ValueError: If the file is malformed or a selected label is unknown.
    """

    raw_text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            payload = yaml.safe_load(raw_text)
        else:
            payload = json.loads(raw_text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ValueError(f"Label file `{path}` could not be parsed: {exc}") from exc

    entries = payload.get("labels") if isinstance(payload, Mapping) else None
    if not isinstance(entries, list):
        raise ValueError(f"Label file `{path}` must contain a `labels` list.")

    labels: list[LabelSpec] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            raise ValueError(f"Label file `{path}` entry {index} must be a mapping/object.")
        name = normalize_optional_string(entry.get("name"))
        if name is None:
            raise ValueError(f"Label file `{path}` entry {index} requires a non-empty `name`.")
        enabled = parse_permissive_boolean(entry.get("enabled", True))
        if enabled is None:
            raise ValueError(f"Label `{name}` has a non-boolean `enabled` value.")
        sub_labels = entry.get("sub_labels") or []
        if not isinstance(sub_labels, list):
            raise ValueError(f"Label `{name}` field `sub_labels` must be a list.")
        labels.append(
            LabelSpec(
                name=name,
                enabled=enabled,
                mail_label=normalize_optional_string(entry.get("mail_label")),
                sub_labels=tuple(
                    value
                    for value in (normalize_optional_string(item) for item in sub_labels)
                    if value is not None
                ),
            )
        )

    enabled_labels = [label for label in labels if label.enabled]
    if selected is None:
        return enabled_labels

    wanted = [name.strip() for name in selected if name.strip()]
    known = {label.name for label in enabled_labels}
    unknown = sorted(set(wanted).difference(known))
    if unknown:
        raise ValueError(f"Unknown or disabled label(s): {', '.join(unknown)}.")
    return [label for label in enabled_labels if label.name in wanted]
