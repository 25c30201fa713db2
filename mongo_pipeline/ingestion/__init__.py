"""
Incremental extraction of changed documents from MongoDB collections.
"""

from .extractor import IncrementalExtractor, build_window_filter, parse_base_filter, parse_pipeline
from .offsets import FileOffsetStore, parse_offset_value, to_epoch_millis, from_epoch_millis

__all__ = [
    'IncrementalExtractor',
    'build_window_filter',
    'parse_base_filter',
    'parse_pipeline',
    'FileOffsetStore',
    'parse_offset_value',
    'to_epoch_millis',
    'from_epoch_millis',
]
