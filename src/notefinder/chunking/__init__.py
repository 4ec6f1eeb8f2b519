"""Offset-exact markdown segmentation."""

from notefinder.chunking.cache import SegmenterCache
from notefinder.chunking.segmenter import Segmenter, SegmenterConfig, segment

__all__ = ["Segmenter", "SegmenterCache", "SegmenterConfig", "segment"]
