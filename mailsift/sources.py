"""External interface adapters around the pipeline core.

Responsibilities:
- Declare the `MailSource`, `TextNormalizer`, and `ReportRenderer` seams.
- Provide `JsonDirectoryMailSource`, which reads mail records exported to disk.

Key types:
- `MailSource`: yields raw `MailRecord`s for one label and time window.
- `TextNormalizer`: pure markup-to-text conversion.
- `ReportRenderer`: renders one label's merged document into report text.
"""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import json
from pathlib import Path
from typing import Any, Protocol

from .models.datatypes import LabelSpec, MailRecord, TimeWindow
from .parsing import normalize_optional_string
from .telemetry.logger import log_event


class MailSource(Protocol):
    """Supplier of raw mail records."""

    def fetch(self, label: LabelSpec, window: TimeWindow) -> list[MailRecord]:
        """Return records of `label` dated inside `window`."""


class TextNormalizer(Protocol):
    """Markup-to-plain-text converter with no failure modes beyond `""`."""

    def normalize(self, raw_html: str) -> str:
        """Return readable plain text for `raw_html`."""


class ReportRenderer(Protocol):
    """Renderer of one label's merged, enriched document."""

    file_suffix: str

    def render(self, label: str, document: dict[str, Any], window: TimeWindow) -> str:
        """Return the report body for `label`."""


def parse_message_date(value: str) -> datetime | None:
    """Parse an ISO-8601 or RFC 2822 date; naive values are taken as UTC."""

    text = value.strip()
    if not text:
        return None
    parsed: datetime | None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JsonDirectoryMailSource:
    """Read `<input_dir>/<mail label>/*.json` records exported by a mail connector.

    Each file holds one object with `id`, `sender` (or `from`), `subject`, `date`,
    and an `html` or `text` body. Records of the label's `sub_labels` directories
    are included; duplicates by id are dropped. Records whose date cannot be
    parsed are kept.
    """

    def __init__(self, input_dir: Path) -> None:
        self.input_dir = input_dir

    def fetch(self, label: LabelSpec, window: TimeWindow) -> list[MailRecord]:
        records: dict[str, MailRecord] = {}
        for source_label in (label.source_label, *label.sub_labels):
            directory = self.input_dir / source_label
            if not directory.is_dir():
                log_event("DEBUG", "fetch", "missing-dir", label=label.name, source=source_label)
                continue
            for path in sorted(directory.glob("*.json")):
                record = self._load_record(path)
                if record is None or record.id in records:
                    continue
                moment = parse_message_date(record.date)
                if moment is not None and not window.contains(moment):
                    continue
                records[record.id] = record
        return list(records.values())

    @staticmethod
    def _load_record(path: Path) -> MailRecord | None:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log_event("WARNING", "fetch", "unreadable-record", file=path.name, error=type(exc).__name__)
            return None
        if not isinstance(payload, dict):
            return None
        message_id = normalize_optional_string(payload.get("id")) or path.stem
        body = payload.get("html")
        if not isinstance(body, str) or not body.strip():
            body = payload.get("text")
        return MailRecord(
            id=message_id,
            sender=str(payload.get("sender") or payload.get("from") or ""),
            subject=str(payload.get("subject") or ""),
            date=str(payload.get("date") or ""),
            html_or_text=body if isinstance(body, str) else "",
        )
