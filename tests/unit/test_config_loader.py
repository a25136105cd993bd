"""Unit tests for YAML/env configuration loading and label files."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from mailsift.config import (
    DEFAULT_RETRY_DELAYS_SECONDS,
    ConfigLoader,
    MailsiftConfig,
    PipelineSettings,
    RuntimeConfigSources,
    load_labels,
)


def test_from_yaml_resolves_relative_paths_and_settings(tmp_path: Path) -> None:
    """Relative paths should resolve against the YAML directory; settings override defaults."""

    config_path = tmp_path / "mailsift.yaml"
    config_path.write_text(
        "\n".join(
            [
                "input_dir: mail",
                "prompts_dir: prompts",
                "model: vendor/model-x",
                "max_tokens: 4096",
                "settings:",
                "  chunk_size_chars: 9000",
                "  retry_delays_seconds: [1, 2]",
                "  enrich_batch_ladder: \"8,4,1\"",
                "  batch_recovery_step: 0",
                "  min_request_interval_seconds: 0",
                "  required_fields: [items, meta]",
            ]
        ),
        encoding="utf-8",
    )

    config = ConfigLoader.from_yaml(config_path)

    assert config.input_dir == tmp_path / "mail"
    assert config.prompts_dir == tmp_path / "prompts"
    assert config.output_dir == tmp_path / "out"
    assert config.model == "vendor/model-x"
    assert config.max_tokens == 4096
    assert config.settings.chunk_size_chars == 9000
    assert config.settings.retry_delays_seconds == (1.0, 2.0)
    assert config.settings.enrich_batch_ladder == (8, 4, 1)
    assert config.settings.batch_recovery_step == 0
    assert config.settings.min_request_interval_seconds == 0.0
    assert config.settings.required_fields == ("items", "meta")
    assert config.settings.max_header_chars == 5000


def test_from_yaml_rejects_unknown_keys(tmp_path: Path) -> None:
    """Typos in config keys should fail loudly."""

    config_path = tmp_path / "mailsift.yaml"
    config_path.write_text("input_dir: mail\nchunk_size: 10\n", encoding="utf-8")

    with pytest.raises(ValueError, match="unsupported key"):
        ConfigLoader.from_yaml(config_path)


def test_from_yaml_requires_input_dir(tmp_path: Path) -> None:
    """`input_dir` is the only required key."""

    config_path = tmp_path / "mailsift.yaml"
    config_path.write_text("model: x\n", encoding="utf-8")

    with pytest.raises(ValueError, match="input_dir"):
        ConfigLoader.from_yaml(config_path)


def test_from_yaml_rejects_non_descending_ladder(tmp_path: Path) -> None:
    """Settings validation should run on loaded values."""

    config_path = tmp_path / "mailsift.yaml"
    config_path.write_text(
        "input_dir: mail\nsettings:\n  enrich_batch_ladder: [2, 4]\n", encoding="utf-8"
    )

    with pytest.raises(ValueError, match="descending"):
        ConfigLoader.from_yaml(config_path)


def test_from_env_reads_paths_settings_and_runtime_keys() -> None:
    """Environment variables should populate config and runtime sources."""

    config = ConfigLoader.from_env(
        {
            "MAILSIFT_INPUT_DIR": "/data/mail",
            "MAILSIFT_OUTPUT_DIR": "/data/out",
            "MAILSIFT_CONCURRENCY_LIMIT": "3",
            "MAILSIFT_TRUNCATE_RATIOS": "1.0,0.5",
            "OPENROUTER_API_KEY": "env-key",
            "UNRELATED": "x",
        }
    )

    assert config.input_dir == Path("/data/mail")
    assert config.output_dir == Path("/data/out")
    assert config.settings.concurrency_limit == 3
    assert config.settings.truncate_ratios == (1.0, 0.5)
    assert config.resolved_api_key() == "env-key"
    assert dict(config.runtime_sources.env) == {"OPENROUTER_API_KEY": "env-key"}


def test_from_env_requires_input_dir() -> None:
    """Without an input directory the env config is incomplete."""

    with pytest.raises(ValueError, match="MAILSIFT_INPUT_DIR"):
        ConfigLoader.from_env({})


def test_runtime_precedence_is_cli_then_secure_then_env_then_config() -> None:
    """API key and model resolution should follow the documented precedence."""

    config = MailsiftConfig(input_dir=Path("mail"), api_key="config-key")

    assert config.resolved_api_key(RuntimeConfigSources()) == "config-key"
    assert (
        config.resolved_api_key(RuntimeConfigSources(env={"OPENROUTER_API_KEY": "env-key"}))
        == "env-key"
    )
    assert (
        config.resolved_api_key(
            RuntimeConfigSources(
                secure={"api_key": "secure-key"}, env={"OPENROUTER_API_KEY": "env-key"}
            )
        )
        == "secure-key"
    )
    assert (
        config.resolved_api_key(
            RuntimeConfigSources(cli={"api_key": "cli-key"}, secure={"api_key": "secure-key"})
        )
        == "cli-key"
    )
    assert config.resolved_model(RuntimeConfigSources(env={"MAILSIFT_MODEL": "env/model"})) == "env/model"


def test_default_settings_match_documented_ladders() -> None:
    """Defaults should give eight attempts and start enrichment at six items."""

    settings = PipelineSettings()

    assert settings.retry_delays_seconds == DEFAULT_RETRY_DELAYS_SECONDS
    assert len(settings.retry_delays_seconds) + 1 == 8
    assert settings.truncate_ratios == (1.0, 0.8, 0.6, 0.4)
    assert settings.enrich_batch_ladder == (6, 4, 2, 1)
    settings.validate()


def test_load_labels_filters_disabled_and_selected(tmp_path: Path) -> None:
    """Only enabled labels are returned; selection keeps file order."""

    labels_path = tmp_path / "labels.json"
    labels_path.write_text(
        json.dumps(
            {
                "labels": [
                    {"name": "news", "mail_label": "Newsletters/News", "sub_labels": ["Extra"]},
                    {"name": "tech"},
                    {"name": "old", "enabled": False},
                ]
            }
        ),
        encoding="utf-8",
    )

    labels = load_labels(labels_path)
    selected = load_labels(labels_path, ["tech", "news"])

    assert [label.name for label in labels] == ["news", "tech"]
    assert labels[0].source_label == "Newsletters/News"
    assert labels[0].sub_labels == ("Extra",)
    assert labels[1].source_label == "tech"
    assert [label.name for label in selected] == ["news", "tech"]
    with pytest.raises(ValueError, match="old"):
        load_labels(labels_path, ["old"])


def test_load_labels_accepts_yaml(tmp_path: Path) -> None:
    """YAML label files are supported by extension."""

    labels_path = tmp_path / "labels.yaml"
    labels_path.write_text("labels:\n  - name: news\n    enabled: yes\n", encoding="utf-8")

    assert [label.name for label in load_labels(labels_path)] == ["news"]
