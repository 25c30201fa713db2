"""
Write paths for applying incoming records to a collection.
"""

from .merger import MergeUpsertEngine, composite_key, dedupe_array, document_id_for
from .write_strategy import UpdateIfNewerStrategy

__all__ = [
    'MergeUpsertEngine',
    'composite_key',
    'dedupe_array',
    'document_id_for',
    'UpdateIfNewerStrategy',
]
