"""Length-preserving markdown clean-up.

Every helper here replaces markup with the same number of spaces instead of
deleting it, so a position in the cleaned text is also a valid position in
the input. The segmenter relies on this to report offsets into the original
document without keeping a separate offset map.
"""

from __future__ import annotations

import re
from typing import Tuple

FRONTMATTER_RE = re.compile(r"\A---\s*[\r\n]+(.*?)[\r\n]+---\s*[\r\n]+", re.DOTALL)

TABLE_ROW_RE = re.compile(r"^[ \t]*\|.*\|[ \t\r]*$")
TABLE_SEPARATOR_RE = re.compile(r"^[ \t]*\|(?:[ \t]*:?-+:?[ \t]*\|)+")
URL_RE = re.compile(r"https?://[^\s)>\]]+")
IMAGE_LINK_RE = re.compile(r"!\[\[[^\]\n]*\]\]|!\[[^\]\n]*\]\([^)\n]*\)")
QUOTE_MARKER_RE = re.compile(
    r"^[ \t]*(?:>[ \t]*)+(?:\[![^\]\s]+\][+-]?)?", re.MULTILINE
)


def _blank(match: re.Match[str]) -> str:
    return " " * len(match.group(0))


def strip_frontmatter(text: str) -> Tuple[str, int]:
    """Remove a leading ``---`` block.

    Returns the remaining text and the number of characters removed, which
    callers add back to offsets computed on the remainder.
    """
    match = FRONTMATTER_RE.match(text)
    if match is None:
        return text, 0
    return text[match.end() :], match.end()


def blank_tables(text: str) -> str:
    """Turn ``| a | b |`` rows into space-separated cells, separators into blanks."""
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if not TABLE_ROW_RE.match(line):
            continue
        if TABLE_SEPARATOR_RE.match(line):
            lines[i] = " " * len(line)
        else:
            lines[i] = line.replace("|", " ")
    return "\n".join(lines)


def blank_urls(text: str) -> str:
    return URL_RE.sub(_blank, text)


def blank_image_links(text: str) -> str:
    """Blank ``![alt](target)`` images and ``![[note]]`` embeds."""
    return IMAGE_LINK_RE.sub(_blank, text)


def blank_quote_markers(text: str) -> str:
    """Blank ``>`` / ``>>`` prefixes and ``[!TYPE]`` callout headers at line start."""
    return QUOTE_MARKER_RE.sub(_blank, text)


def normalize_markdown(text: str) -> str:
    normalized = blank_tables(text)
    normalized = blank_urls(normalized)
    normalized = blank_image_links(normalized)
    return blank_quote_markers(normalized)
