"""Sentence-aware segmentation with exact offsets into the source document.

Pipeline: strip frontmatter, blank structural markdown without changing the
text length, split into sentence-like units, break up oversized units, then
greedily pack units into chunks of at most ``max_chunk_size`` characters.

Each unit is tracked in two coordinate systems. Its ``text`` is trimmed on the
normalised text, while its reported span is trimmed on the original
characters: markup that normalisation blanked (table pipes, quote markers,
image links) therefore stays inside the span, plain whitespace never does.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator, List, Optional

from notefinder.chunking.markdown import normalize_markdown, strip_frontmatter
from notefinder.models import Chunk

MAX_CHUNK_SIZE = 1000
MAX_SENTENCE_CHARS = 500
MIN_SENTENCE_CHARS = 50

_CLOSERS = "\"')\\]’”」』）】"
TERMINATOR_RE = re.compile(
    rf"[。！？｡．]+[{_CLOSERS}]*"
    rf"|[.!?…]+[{_CLOSERS}]*(?=\s|$)"
)
PARAGRAPH_BREAK_RE = re.compile(r"\n[ \t\r\u3000]*\n")
PREFERRED_SPLIT_CHARS = frozenset("。、，．,.!?！？；：")


@dataclass(frozen=True)
class SegmenterConfig:
    """Size limits for segmentation.

    Attributes:
        max_chunk_size: Upper bound on a merged chunk's text length
        max_sentence_chars: Units longer than this are split further
        min_sentence_chars: Smallest piece the oversized-unit split may produce
    """

    max_chunk_size: int = MAX_CHUNK_SIZE
    max_sentence_chars: int = MAX_SENTENCE_CHARS
    min_sentence_chars: int = MIN_SENTENCE_CHARS

    def __post_init__(self) -> None:
        if self.min_sentence_chars <= 0:
            raise ValueError(
                f"min_sentence_chars must be positive, got {self.min_sentence_chars}"
            )
        if self.max_sentence_chars <= self.min_sentence_chars:
            raise ValueError(
                f"max_sentence_chars ({self.max_sentence_chars}) must be greater than "
                f"min_sentence_chars ({self.min_sentence_chars})"
            )
        if self.max_chunk_size < self.max_sentence_chars:
            raise ValueError(
                f"max_chunk_size ({self.max_chunk_size}) must be at least "
                f"max_sentence_chars ({self.max_sentence_chars})"
            )


@dataclass(slots=True)
class _Segment:
    text: str
    # trimmed span in normalised coordinates
    start: int
    end: int
    # span trimmed against the original characters
    raw_start: int
    raw_end: int


def _trimmed_span(text: str, start: int, end: int) -> tuple[int, int]:
    """Shrink ``[start, end)`` so it begins and ends on non-whitespace."""
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return start, end


class Segmenter:
    """Turns one document into ordered, non-overlapping chunks."""

    def __init__(self, config: SegmenterConfig | None = None) -> None:
        self.config = config or SegmenterConfig()

    def segment(self, document: str) -> List[Chunk]:
        if not document or not document.strip():
            return []

        body, base_offset = strip_frontmatter(document)
        normalized = normalize_markdown(body)
        if not normalized.strip():
            return []

        segments = list(self._split_units(body, normalized))
        return self._assemble(segments, base_offset)

    def _unit_bounds(self, normalized: str) -> List[int]:
        cuts = {0, len(normalized)}
        cuts.update(match.end() for match in TERMINATOR_RE.finditer(normalized))
        cuts.update(match.start() for match in PARAGRAPH_BREAK_RE.finditer(normalized))
        return sorted(cuts)

    def _split_units(self, original: str, normalized: str) -> Iterator[_Segment]:
        bounds = self._unit_bounds(normalized)
        for unit_start, unit_end in zip(bounds, bounds[1:]):
            start, end = _trimmed_span(normalized, unit_start, unit_end)
            if start == end:
                continue
            if end - start > self.config.max_sentence_chars:
                yield from self._split_oversized(
                    original, normalized, start, end, unit_start, unit_end
                )
                continue
            raw_start, raw_end = _trimmed_span(original, unit_start, unit_end)
            yield _Segment(normalized[start:end], start, end, raw_start, raw_end)

    def _split_oversized(
        self,
        original: str,
        normalized: str,
        start: int,
        end: int,
        unit_start: int,
        unit_end: int,
    ) -> Iterator[_Segment]:
        """Cut a long unit into pieces of ``min..max`` sentence chars (last may be shorter)."""
        cursor = start
        while cursor < end:
            piece_end = min(cursor + self.config.max_sentence_chars, end)
            if piece_end < end:
                piece_end = self._find_split_index(normalized, cursor, piece_end)

            span_start = unit_start if cursor == start else cursor
            span_end = unit_end if piece_end >= end else piece_end
            text_start, text_end = _trimmed_span(normalized, cursor, piece_end)
            if text_start < text_end:
                raw_start, raw_end = _trimmed_span(original, span_start, span_end)
                yield _Segment(
                    normalized[text_start:text_end], text_start, text_end, raw_start, raw_end
                )
            cursor = piece_end

    def _find_split_index(self, text: str, cursor: int, preferred_end: int) -> int:
        lowest = cursor + self.config.min_sentence_chars
        for index in range(preferred_end, lowest - 1, -1):
            char = text[index - 1]
            if char.isspace() or char in PREFERRED_SPLIT_CHARS:
                return index
        return preferred_end

    def _assemble(self, segments: List[_Segment], base_offset: int) -> List[Chunk]:
        chunks: List[Chunk] = []
        current: List[tuple[int, _Segment]] = []
        current_text = ""

        def flush() -> None:
            nonlocal current, current_text
            if not current:
                return
            chunks.append(
                Chunk(
                    text=current_text,
                    original_start=base_offset + current[0][1].raw_start,
                    original_end=base_offset + current[-1][1].raw_end,
                    contributing_segment_ids=[seg_id for seg_id, _ in current],
                )
            )
            current = []
            current_text = ""

        limit = self.config.max_chunk_size
        for seg_id, segment in enumerate(segments):
            if len(segment.text) > limit:
                flush()
                current = [(seg_id, segment)]
                current_text = segment.text
                flush()
                continue

            merged = f"{current_text} {segment.text}" if current_text else segment.text
            if len(merged) <= limit:
                current.append((seg_id, segment))
                current_text = merged
                continue

            flush()
            current = [(seg_id, segment)]
            current_text = segment.text

        flush()
        return chunks


_DEFAULT_SEGMENTER: Optional[Segmenter] = None


def segment(document: str, config: SegmenterConfig | None = None) -> List[Chunk]:
    """Convenience wrapper around :class:`Segmenter`."""
    global _DEFAULT_SEGMENTER
    if config is not None:
        return Segmenter(config).segment(document)
    if _DEFAULT_SEGMENTER is None:
        _DEFAULT_SEGMENTER = Segmenter()
    return _DEFAULT_SEGMENTER.segment(document)
