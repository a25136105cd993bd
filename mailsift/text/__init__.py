"""Text processing utilities (chunking, truncation, markup normalization)."""

from .chunking import CONTINUATION_MARKER, ChunkSplitter, truncate_text
from .normalizer import HtmlTextNormalizer

__all__ = ["CONTINUATION_MARKER", "ChunkSplitter", "HtmlTextNormalizer", "truncate_text"]
