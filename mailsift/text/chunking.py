"""Oversized-input segmentation logic.

Responsibilities:
- Split text blobs into ordered, size-bounded chunks along paragraph boundaries.
- Force-split paragraphs that exceed the limit at sentence terminators.
- Truncate text for size-overflow retries while keeping whole sentences.
"""

from __future__ import annotations

import re

CONTINUATION_MARKER = "\n\n[... continued ...]"


class ChunkSplitter:
    """Split text into paragraph-aligned chunks no longer than a character budget."""

    _PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n|(?=^-{3,}[ \t]*$)", re.MULTILINE)
    _PARAGRAPH_JOINER = "\n\n"
    _SENTENCE_TERMINATORS = (". ", ".\n", "! ", "!\n", "? ", "?\n")
    _SENTENCE_SEARCH_RATIO = 0.30

    def split(self, text: str, max_chars_per_chunk: int) -> list[str]:
        """Split `text` into ordered chunks.

        Args:
            text: Source text, typically one normalized message body.
            max_chars_per_chunk: Maximum chunk length in characters.

        Returns:
            One or more chunks. Input that already fits is returned unchanged as a
            single chunk; otherwise paragraphs are trimmed and rejoined with a blank
            line, so every non-blank source line lands in exactly one chunk.

        Raises:
            ValueError: If `max_chars_per_chunk` is not positive.
        """

        if max_chars_per_chunk <= 0:
            raise ValueError("`max_chars_per_chunk` must be a positive integer.")
        if len(text) <= max_chars_per_chunk:
            return [text]

        chunks: list[str] = []
        current = ""
        for raw_paragraph in self._PARAGRAPH_BOUNDARY.split(text):
            paragraph = raw_paragraph.strip()
            if not paragraph:
                continue

            candidate = f"{current}{self._PARAGRAPH_JOINER}{paragraph}" if current else paragraph
            if len(candidate) <= max_chars_per_chunk:
                current = candidate
                continue

            if current:
                chunks.append(current)
            if len(paragraph) > max_chars_per_chunk:
                pieces = self.force_split(paragraph, max_chars_per_chunk)
                chunks.extend(pieces[:-1])
                current = pieces[-1]
            else:
                current = paragraph

        if current:
            chunks.append(current)
        return chunks or [text]

    def force_split(self, text: str, max_chars: int) -> list[str]:
        """Cut one oversized paragraph into pieces, preferring sentence ends.

        The search for a terminator covers only the last 30% of each window, so
        every piece keeps at least 70% of the budget.
        """

        pieces: list[str] = []
        remaining = text
        while len(remaining) > max_chars:
            cut_point = max_chars
            search_start = int(max_chars * (1.0 - self._SENTENCE_SEARCH_RATIO))
            search_area = remaining[search_start:max_chars]
            sentence_end = max(search_area.rfind(token) for token in self._SENTENCE_TERMINATORS)
            if sentence_end > 0:
                cut_point = search_start + sentence_end + 1

            piece = remaining[:cut_point].strip()
            if piece:
                pieces.append(piece)
            remaining = remaining[cut_point:].strip()

        if remaining:
            pieces.append(remaining)
        return pieces


def truncate_text(text: str, max_chars: int, marker: str = CONTINUATION_MARKER) -> str:
    """Shorten `text` to about `max_chars`, ending on a sentence when possible.

    A sentence boundary is used only when it keeps more than half of the budget;
    otherwise the text is hard-cut. The continuation marker is appended whenever
    anything was removed.
    """

    if len(text) <= max_chars:
        return text

    truncated = text[:max_chars]
    last_sentence = max(
        truncated.rfind(token) for token in (".\n", ". ", "!\n", "! ", "?\n", "? ")
    )
    cut_point = last_sentence + 1 if last_sentence > max_chars * 0.5 else max_chars
    return truncated[:cut_point].strip() + marker
