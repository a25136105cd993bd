"""Filesystem persistence helpers."""

from .storage import ArtifactStore, read_json, write_json_atomic, write_text_atomic

__all__ = ["ArtifactStore", "read_json", "write_json_atomic", "write_text_atomic"]
