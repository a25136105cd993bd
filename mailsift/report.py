"""Markdown rendering of a label's merged item document."""

from __future__ import annotations

from typing import Any

from .models.datatypes import TimeWindow


class MarkdownReportRenderer:
    """Render items as one markdown section each.

    Items are expected to carry `title`, `summary`, `keywords`, and an optional
    `link`; any nested enrichment object is rendered as an indented list.
    """

    file_suffix = ".md"

    def render(self, label: str, document: dict[str, Any], window: TimeWindow) -> str:
        items = [item for item in document.get("items") or [] if isinstance(item, dict)]
        lines = [f"# {label} ({window.start.date().isoformat()})", ""]
        summary_line = f"> {len(items)} items"
        if document.get("has_insights"):
            summary_line += " | enriched"
        lines.extend([summary_line, "", "---", ""])

        for index, item in enumerate(items, start=1):
            lines.append(f"## {index}. {item.get('title') or '(untitled)'}")
            lines.append("")
            summary = item.get("summary")
            if summary:
                lines.extend([str(summary), ""])
            keywords = item.get("keywords")
            if isinstance(keywords, list) and keywords:
                lines.extend(["**Keywords**: " + " ".join(f"#{word}" for word in keywords), ""])
            if item.get("link"):
                lines.extend([f"**Link**: [original]({item['link']})", ""])
            for key, value in item.items():
                if isinstance(value, dict):
                    lines.append(f"### {key}")
                    lines.append("")
                    lines.extend(_render_nested(value, depth=0))
                    lines.append("")
            lines.extend(["---", ""])

        return "\n".join(lines)


def _render_nested(value: Any, depth: int) -> list[str]:
    indent = "  " * depth
    if isinstance(value, dict):
        rendered: list[str] = []
        for key, child in value.items():
            if isinstance(child, dict | list):
                rendered.append(f"{indent}- **{key}**:")
                rendered.extend(_render_nested(child, depth + 1))
            else:
                rendered.append(f"{indent}- **{key}**: {child}")
        return rendered
    if isinstance(value, list):
        rendered = []
        for child in value:
            if isinstance(child, dict | list):
                rendered.extend(_render_nested(child, depth + 1))
            else:
                rendered.append(f"{indent}- {child}")
        return rendered
    return [f"{indent}- {value}"]
