"""Shared parsing helpers for config values and persisted payload normalization."""

from __future__ import annotations

from typing import Any


_TRUE_BOOLEAN_TOKENS = frozenset({"1", "true", "yes", "on"})
_FALSE_BOOLEAN_TOKENS = frozenset({"0", "false", "no", "off"})


def normalize_optional_string(value: object) -> str | None:
    """Normalize an optional value to a stripped non-empty string.

    Args:
        value: Arbitrary input value.

    Returns:
        Stripped string value, or `None` when the value is empty after trimming.
    """

    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text


def parse_permissive_boolean(value: object) -> bool | None:
    """Parse a permissive boolean token and return `None` for invalid values."""

    if isinstance(value, bool):
        return value

    normalized = normalize_optional_string(value)
    if normalized is None:
        return None

    token = normalized.lower()
    if token in _TRUE_BOOLEAN_TOKENS:
        return True
    if token in _FALSE_BOOLEAN_TOKENS:
        return False
    return None


def parse_positive_number(value: object, field_name: str) -> float:
    """Parse a strictly positive number from an int, float, or numeric string.

    Raises:
        ValueError: If the value is not numeric or not greater than zero.
    """

    if isinstance(value, bool):
        raise ValueError(f"`{field_name}` must be a positive number.")
    try:
        number = float(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"`{field_name}` must be a positive number.") from exc
    if number <= 0:
        raise ValueError(f"`{field_name}` must be a positive number.")
    return number


def parse_positive_int(value: object, field_name: str) -> int:
    """Parse a strictly positive integer from an int or integer string."""

    if isinstance(value, bool):
        raise ValueError(f"`{field_name}` must be a positive integer.")
    try:
        number = int(str(value).strip())
    except ValueError as exc:
        raise ValueError(f"`{field_name}` must be a positive integer.") from exc
    if number <= 0:
        raise ValueError(f"`{field_name}` must be a positive integer.")
    return number


def parse_number_sequence(value: Any, field_name: str) -> tuple[float, ...]:
    """Parse a ladder value given as a YAML list or a comma-separated string.

    Returns:
        Tuple of positive numbers in the given order.
    """

    if isinstance(value, str):
        tokens: list[object] = [token for token in value.split(",") if token.strip()]
    elif isinstance(value, list | tuple):
        tokens = list(value)
    else:
        raise ValueError(f"`{field_name}` must be a list or comma-separated string.")
    if not tokens:
        raise ValueError(f"`{field_name}` must not be empty.")
    return tuple(parse_positive_number(token, field_name) for token in tokens)
