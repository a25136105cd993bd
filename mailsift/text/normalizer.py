"""Markup-to-plain-text normalization for mail bodies.

Responsibilities:
- Convert HTML (or already-plain) message bodies into readable plain text.
- Keep block structure as paragraph breaks and preserve outbound http links.
- Never raise: unparseable input degrades to an empty string.
"""

from __future__ import annotations

from html.parser import HTMLParser
import re

_BLOCK_TAGS = frozenset(
    {
        "article", "blockquote", "br", "div", "footer", "h1", "h2", "h3", "h4", "h5",
        "h6", "header", "hr", "li", "nav", "ol", "p", "pre", "section", "table", "td",
        "th", "tr", "ul",
    }
)
_SKIPPED_TAGS = frozenset({"head", "script", "style", "title"})


class _TextExtractor(HTMLParser):
    """Collect visible text fragments while tracking links and block boundaries."""

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.parts: list[str] = []
        self._skip_depth = 0
        self._link_href: str | None = None
        self._link_text: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth += 1
            return
        if tag in _BLOCK_TAGS:
            self.parts.append("\n")
        if tag == "a":
            self._link_href = dict(attrs).get("href")
            self._link_text = []
        elif tag == "img":
            alt = (dict(attrs).get("alt") or "").strip()
            if alt:
                self.parts.append(f"[image: {alt}]")

    def handle_endtag(self, tag: str) -> None:
        if tag in _SKIPPED_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
            return
        if tag == "a" and self._link_href is not None:
            text = " ".join("".join(self._link_text).split())
            href = self._link_href
            if text and href.startswith("http"):
                self.parts.append(f"{text} [{href}]")
            elif text:
                self.parts.append(text)
            self._link_href = None
            self._link_text = []
        if tag in _BLOCK_TAGS:
            self.parts.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip_depth:
            return
        if self._link_href is not None:
            self._link_text.append(data)
            return
        self.parts.append(data)


class HtmlTextNormalizer:
    """Normalize raw message markup into plain text."""

    def normalize(self, raw_html: str) -> str:
        """Return plain text for `raw_html`; empty string when nothing is readable."""

        if not raw_html or not raw_html.strip():
            return ""
        extractor = _TextExtractor()
        try:
            extractor.feed(raw_html)
            extractor.close()
        except (AssertionError, ValueError):
            return ""
        return self._collapse_whitespace("".join(extractor.parts))

    @staticmethod
    def _collapse_whitespace(text: str) -> str:
        """Collapse runs of spaces and cap blank-line runs at one."""

        text = text.replace("\r\n", "\n").replace("\xa0", " ")
        text = re.sub(r"[ \t]+", " ", text)
        text = re.sub(r" *\n *", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()
