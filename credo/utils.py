"""Shared utility functions used across Credo modules."""
from __future__ import annotations

import json
import re
from typing import Any

_MISSING = object()

_PRIVATE_USE_RE = re.compile("[\ue000-\uf8ff]")
_GLUED_CITE_RE = re.compile(r"\bcite(?=turn\d)", re.IGNORECASE)
_TOOL_TURN_RE = re.compile(r"\bturn\d+(?:search|news)\d+\b", re.IGNORECASE)
_CITE_WORD_RE = re.compile(r"\b(?:cite|citation|citations)\b", re.IGNORECASE)
_BRACKET_REF_RE = re.compile(r"\[\d+(?:-\d+)?\]")
_MULTI_SPACE_RE = re.compile(r"\s{2,}")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def _strip_citation_pass(text: str) -> str:
    # Markers separate words, so they become spaces rather than vanishing.
    text = _PRIVATE_USE_RE.sub(" ", text)
    text = _GLUED_CITE_RE.sub(" ", text)
    text = _TOOL_TURN_RE.sub("", text)
    text = _CITE_WORD_RE.sub("", text)
    text = _BRACKET_REF_RE.sub("", text)
    return _MULTI_SPACE_RE.sub(" ", text).strip()


def sanitize_citations(text: str | None) -> str | None:
    """Remove model/tool citation artifacts from free text.

    Strips private-use-area marker characters, ``turnXsearchY``/``turnXnewsY``
    tokens, bare ``cite``/``citation`` words and bracketed numeric references
    like ``[1]`` or ``[2-4]``, then collapses whitespace runs. Passes repeat
    until nothing changes, so the result is a fixed point. Returns ``None``
    when nothing readable is left.
    """
    if text is None:
        return None
    current = str(text)
    while True:
        cleaned = _strip_citation_pass(current)
        if cleaned == current:
            break
        current = cleaned
    return current or None
