"""
Record key resolution shared by the extractor and the merger.
"""
import re
from typing import Any, Mapping, Optional

from mongo_pipeline.interfaces.base import DataShapeError, ID_FIELD


_STRUCT_ID_PATTERN = re.compile(r'_id="([^"]+)"')


class KeyResolver:
    """Resolves a record key from a document by field name or dotted path."""

    def __init__(self, key_field: Optional[str] = None, id_field: str = ID_FIELD):
        self.key_field = key_field or None
        self.id_field = id_field
        self._path = self.key_field.split('.') if self.key_field else []

    def resolve(self, document: Mapping[str, Any]) -> Optional[Any]:
        """Return the key value, or None when the path cannot be followed."""
        if not self._path:
            return document.get(self.id_field)

        current: Any = document
        for part in self._path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(part)
            if current is None:
                return None
        return current


def resolve_record_key(raw_key: Any, id_field: str = ID_FIELD) -> Any:
    """
    Turn an incoming sink record key into a document identifier.

    Structured keys (mappings) are read directly. Textual keys rendered from a
    structured key, e.g. ``Struct{_id="X",...}``, have the ``_id`` value pulled
    out; any other text is used verbatim.
    """
    if raw_key is None:
        raise DataShapeError("Record key is missing")

    if isinstance(raw_key, Mapping):
        if id_field not in raw_key:
            raise DataShapeError(f"Structured record key has no '{id_field}' field")
        return raw_key[id_field]

    if isinstance(raw_key, (bytes, bytearray)):
        raw_key = raw_key.decode('utf-8')

    key_text = str(raw_key)
    if key_text.startswith('Struct') and '_id=' in key_text:
        match = _STRUCT_ID_PATTERN.search(key_text)
        if match:
            return match.group(1)
    return key_text
