"""Pull the first JSON value out of noisy LLM output.

Models wrap structured answers in markdown fences, prefix them with prose
("Here is the plan:") or stop mid-array when they hit a token limit. The
extraction runs in tiers and returns ``None`` rather than raising, so callers
can decide whether to retry the model or give up:

1. strip known wrapping (fences, ``json`` labels, surrounding whitespace);
2. parse the whole remainder;
3. scan for each ``[`` / ``{`` in order and decode one value from there,
   ignoring any trailing prose;
4. otherwise ``None``. A value that runs off the end of the text is treated
   as truncated and also yields ``None``.
"""

from __future__ import annotations

import json
import re
from typing import Any

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)
_LEADING_FENCE = re.compile(r"^```(?:json|JSON)?\s*")
_TRAILING_FENCE = re.compile(r"\s*```\s*$")

_decoder = json.JSONDecoder()


def strip_wrapping(text: str) -> str:
    stripped = text.strip()
    fenced = _FENCE_PATTERN.search(stripped)
    if fenced:
        return fenced.group(1).strip()
    stripped = _LEADING_FENCE.sub("", stripped)
    stripped = _TRAILING_FENCE.sub("", stripped)
    if stripped[:4].lower() == "json" and stripped[4:5] in {"\n", " ", "\r"}:
        stripped = stripped[4:]
    return stripped.strip()


def _is_truncated(error: json.JSONDecodeError, text: str) -> bool:
    return error.pos >= len(text.rstrip()) or error.msg.startswith("Unterminated string")


def extract_json_value(raw: str | None, *, max_candidates: int = 16) -> Any | None:
    """Return the first array or object found in ``raw``, or ``None``."""
    if not raw or not isinstance(raw, str):
        return None
    text = strip_wrapping(raw)
    if not text:
        return None

    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(value, (list, dict)):
            return value

    attempts = 0
    for index, char in enumerate(text):
        if char not in "[{":
            continue
        attempts += 1
        if attempts > max_candidates:
            break
        try:
            value, _end = _decoder.raw_decode(text, index)
        except json.JSONDecodeError as exc:
            if _is_truncated(exc, text):
                # a cut-off value must not be mistaken for one of its own fragments
                return None
            continue
        if isinstance(value, (list, dict)):
            return value
    return None


def extract_json_object(raw: str | None) -> dict[str, Any] | None:
    """Like :func:`extract_json_value` but only accepts an object."""
    if not raw or not isinstance(raw, str):
        return None
    text = strip_wrapping(raw)
    start = text.find("{")
    if start == -1:
        return None
    value = extract_json_value(text[start:])
    return value if isinstance(value, dict) else None


__all__ = ["extract_json_object", "extract_json_value", "strip_wrapping"]
