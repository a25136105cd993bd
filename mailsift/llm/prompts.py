"""Prompt assembly for generation calls.

Responsibilities:
- Load instruction headers (extract/merge/enrich) from a prompts directory.
- Assemble the final prompt from a header and the data section.

Prompt wording is deployment data, not code: only the assembly shape lives here.
"""

from __future__ import annotations

from pathlib import Path

_DEFAULT_EXTRACT_HEADER = (
    "You extract newsletter items from one email. Return a JSON object with an "
    "`items` array; every item has `title`, `summary`, `keywords` and an optional `link`."
)


class PromptBuilder:
    """Join an instruction header and a data section into one prompt string."""

    data_heading = "# Data to process"
    closing_instruction = "Follow the instructions above and output the result as a JSON object."

    def build(self, header: str, input_text: str) -> str:
        """Return the full prompt for one call."""

        sections = [header]
        if input_text:
            sections.append(f"{self.data_heading}\n{input_text}")
        sections.append(self.closing_instruction)
        return "\n\n".join(sections)


class PromptLibrary:
    """Resolve instruction headers from markdown files under `prompts_dir`.

    Layout::

        prompts_dir/
            extract.md          default extraction instructions
            labels/<label>.md   per-label extraction instructions (optional)
            merge.md            backend merge pass instructions (optional)
            enrich.md           enrichment instructions (optional)
            rules.md            shared writing rules appended to every header (optional)
    """

    def __init__(self, prompts_dir: Path | None) -> None:
        self.prompts_dir = prompts_dir

    def extract_header(self, label: str) -> str:
        """Return the extraction header for `label`."""

        body = self._read("labels", f"{label}.md") or self._read("extract.md")
        return self._with_rules(body or _DEFAULT_EXTRACT_HEADER)

    def merge_header(self) -> str | None:
        """Return the merge-pass header, or `None` when the pass is not configured."""

        body = self._read("merge.md")
        return self._with_rules(body) if body else None

    def enrich_header(self) -> str | None:
        """Return the enrichment header, or `None` when enrichment is not configured."""

        body = self._read("enrich.md")
        return self._with_rules(body) if body else None

    def _with_rules(self, body: str) -> str:
        rules = self._read("rules.md")
        if rules:
            return f"{body}\n\n# Writing rules\n{rules}"
        return body

    def _read(self, *parts: str) -> str | None:
        if self.prompts_dir is None:
            return None
        path = self.prompts_dir.joinpath(*parts)
        if not path.is_file():
            return None
        text = path.read_text(encoding="utf-8").strip()
        return text or None
