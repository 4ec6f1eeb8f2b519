"""Text helpers applied before embedding and when showing results."""

from __future__ import annotations

import re
from typing import Iterable, List

_CONTROL_CHARS_RE = re.compile("[\x01-\x08\x0b\x0e-\x1f\x7f\x8f\x9f]")
_SPACE_LIKE_RE = re.compile("[\t\n\x0c\r\u1680\u200b-\u200f\u2028\u2029\u2581\ufeff\ufffd]")
_WHITESPACE_RE = re.compile(r"\s+")


def nmt_normalize(text: str) -> str:
    """Drop control characters and map line breaks and invisible spaces to ``" "``.

    Tokenizers for the default embedding model expect this clean-up.
    """
    text = _CONTROL_CHARS_RE.sub("", text)
    return _SPACE_LIKE_RE.sub(" ", text)


def nmt_normalize_all(texts: Iterable[str]) -> List[str]:
    return [nmt_normalize(text) for text in texts]


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def make_snippet(text: str, max_chars: int = 180) -> str:
    """Single-line preview, cut at ``max_chars`` with an ellipsis."""
    snippet = collapse_whitespace(text)
    if len(snippet) <= max_chars:
        return snippet
    return snippet[: max_chars - 1].rstrip() + "…"
