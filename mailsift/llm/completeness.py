"""Structural checks and extraction for JSON documents embedded in model output.

Responsibilities:
- Detect truncated output by brace/bracket balance outside quoted strings.
- Extract the first decodable top-level JSON object from free-form text.
"""

from __future__ import annotations

import json
import re
from typing import Any

from ..errors import TransientProviderError

_OBJECT_SPAN = re.compile(r"\{[\s\S]*\}")
_DECODER = json.JSONDecoder()


def is_json_complete(text: str | None) -> bool:
    """Return whether the object span of `text` has balanced braces and brackets.

    The span runs from the first `{` to the last `}`. Characters inside string
    literals do not count, and a backslash escapes the next character, so
    `{"a":"}"}` is complete while `{"items": [` is not.
    """

    if not text or not isinstance(text, str):
        return False
    match = _OBJECT_SPAN.search(text)
    if match is None:
        return False

    brace_depth = 0
    bracket_depth = 0
    in_string = False
    escaped = False
    for character in match.group(0):
        if escaped:
            escaped = False
            continue
        if character == "\\":
            escaped = True
            continue
        if character == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if character == "{":
            brace_depth += 1
        elif character == "}":
            brace_depth -= 1
        elif character == "[":
            bracket_depth += 1
        elif character == "]":
            bracket_depth -= 1
        if brace_depth < 0 or bracket_depth < 0:
            return False
    return brace_depth == 0 and bracket_depth == 0


def extract_json_document(text: str) -> dict[str, Any]:
    """Return the first top-level JSON object found in `text`.

    Raises:
        TransientProviderError: If no decodable object exists; a fresh call may
            produce well-formed output.
    """

    start = text.find("{")
    while start != -1:
        try:
            document, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(document, dict):
            return document
        start = text.find("{", start + 1)
    raise TransientProviderError(
        "Response does not contain a decodable JSON object.",
        failure_kind="malformed",
    )
