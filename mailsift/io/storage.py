"""Artifact storage abstraction.

Responsibilities:
- Provide durable filesystem storage for JSON and text artifacts of a run.
- Write through a temporary sibling plus `os.replace` so a crash never leaves
  a half-written artifact behind.
- Map filesystem failures to `PersistenceError`.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from ..errors import PersistenceError


def write_text_atomic(path: Path, content: str) -> Path:
    """Durably replace `path` with `content` and return the path."""

    staging = path.with_name(f".{path.name}.partial")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with staging.open("w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(staging, path)
    except OSError as exc:
        raise PersistenceError(f"Failed to write artifact `{path}`: {exc}", path=path) from exc
    return path


def write_json_atomic(path: Path, payload: Any) -> Path:
    """Durably replace `path` with a pretty-printed JSON document."""

    return write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2))


def read_json(path: Path) -> Any:
    """Load a JSON document from `path`."""

    return json.loads(path.read_text(encoding="utf-8"))


class ArtifactStore:
    """Filesystem-backed artifact store rooted at one run directory."""

    def __init__(self, root: Path) -> None:
        """Initialize the store with a root output directory."""

        self.root = root

    def path(self, relative_path: Path | str) -> Path:
        """Resolve a store-relative path."""

        return self.root / relative_path

    def save_text(self, relative_path: Path | str, content: str) -> Path:
        """Save text content and return final path."""

        return write_text_atomic(self.path(relative_path), content)

    def save_json(self, relative_path: Path | str, payload: Any) -> Path:
        """Save JSON-serializable payload and return final path."""

        return write_json_atomic(self.path(relative_path), payload)

    def load_json(self, relative_path: Path | str) -> Any:
        """Load a JSON artifact."""

        return read_json(self.path(relative_path))

    def exists(self, relative_path: Path | str) -> bool:
        """Return whether the given artifact exists."""

        return self.path(relative_path).exists()

    def list_files(self, relative_dir: Path | str, prefix: str) -> list[Path]:
        """Return artifact files in a directory whose names start with `prefix`, sorted."""

        directory = self.path(relative_dir)
        if not directory.is_dir():
            return []
        return sorted(
            candidate
            for candidate in directory.iterdir()
            if candidate.is_file() and candidate.name.startswith(prefix)
        )

    def ensure_dir(self, relative_dir: Path | str) -> Path:
        """Create a store directory if needed and return its path."""

        directory = self.path(relative_dir)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise PersistenceError(
                f"Failed to create directory `{directory}`: {exc}", path=directory
            ) from exc
        return directory
