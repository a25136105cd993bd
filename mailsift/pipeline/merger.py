"""Flattening and title-based deduplication of extraction outputs.

Responsibilities:
- Normalize raw chunk/batch outputs into one tagged shape at the boundary.
- Flatten outputs into one item sequence in first-seen order.
- Drop later items whose normalized title repeats an earlier one.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from ..models.datatypes import Item


@dataclass(frozen=True, slots=True)
class SingleItem:
    """A raw output that is itself one item."""

    item: Item


@dataclass(frozen=True, slots=True)
class ItemCollection:
    """A raw output that wraps its items in an `items` array."""

    items: tuple[Item, ...]


NormalizedOutput = SingleItem | ItemCollection


def normalize_output(raw: Any) -> NormalizedOutput | None:
    """Classify one raw output; non-object values yield `None`.

    Entries of an `items` array that are not objects are dropped.
    """

    if not isinstance(raw, dict):
        return None
    wrapped = raw.get("items")
    if isinstance(wrapped, list):
        return ItemCollection(items=tuple(entry for entry in wrapped if isinstance(entry, dict)))
    return SingleItem(item=raw)


def title_key(item: Item) -> str | None:
    """Return the dedupe key of `item`, or `None` when it has no usable title."""

    title = item.get("title")
    if not isinstance(title, str):
        return None
    key = title.strip().casefold()
    return key or None


class ResultMerger:
    """Merge raw outputs into a flat, deduplicated item list."""

    def merge(self, outputs: Iterable[Any]) -> list[Item]:
        """Flatten `outputs` and keep the first item per normalized title.

        Items without a usable title are always kept.
        """

        return self.deduplicate(self.flatten(outputs))

    @staticmethod
    def flatten(outputs: Iterable[Any]) -> list[Item]:
        flat: list[Item] = []
        for raw in outputs:
            normalized = normalize_output(raw)
            if isinstance(normalized, ItemCollection):
                flat.extend(normalized.items)
            elif isinstance(normalized, SingleItem):
                flat.append(normalized.item)
        return flat

    @staticmethod
    def deduplicate(items: Iterable[Item]) -> list[Item]:
        seen: set[str] = set()
        unique: list[Item] = []
        for item in items:
            key = title_key(item)
            if key is not None:
                if key in seen:
                    continue
                seen.add(key)
            unique.append(item)
        return unique
