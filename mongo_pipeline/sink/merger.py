"""
Read-modify-write merge of incoming records into stored documents.

Non-array fields are overwritten last-write-wins; the configured array field
accumulates one entry per record, deduplicated on a composite key built from
the configured fields (last occurrence wins, first-occurrence order kept).
The read and the write are two separate store calls: concurrent writers on
the same identifier can lose updates.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional

from bson import json_util

from mongo_pipeline.config.settings import MergerConfig
from mongo_pipeline.interfaces.base import (
    DataShapeError, DeleteOne, Document, DocumentStore, InsertOne, PipelineComponent,
    ReplaceOne, WriteModel
)
from mongo_pipeline.utils.key_resolver import resolve_record_key


DEDUP_KEY_SEPARATOR = "::"


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple)):
        return json_util.dumps(value, sort_keys=True)
    return str(value)


def composite_key(element: Mapping[str, Any], key_fields: List[str]) -> str:
    """Join the stringified key field values; a missing field contributes ''."""
    return DEDUP_KEY_SEPARATOR.join(
        _stringify(element[name]) if name in element else "" for name in key_fields
    )


def dedupe_array(elements: Iterable[Any], key_fields: List[str]) -> List[Document]:
    """
    Keep the last element per composite key.

    The result follows the first-occurrence order of each surviving key.
    Elements that are not documents have no key and are dropped.
    """
    latest: Dict[str, Document] = {}
    for element in elements:
        if not isinstance(element, Mapping):
            continue
        key = composite_key(element, key_fields)
        # dict assignment keeps the original insertion slot
        latest[key] = dict(element)
    return list(latest.values())


def document_id_for(record_key: Any, config: MergerConfig) -> Any:
    """Stored identifier for a record key, wrapped as {<document.id.name>: key} when configured."""
    key = resolve_record_key(record_key, config.id_field)
    if config.document_id_name:
        return {config.document_id_name: key}
    return key


class MergeUpsertEngine(PipelineComponent):
    """Builds the write model that merges one record into the target collection."""

    def __init__(self, config: MergerConfig, store: DocumentStore):
        super().__init__(f"merger:{config.database}.{config.collection}", config)
        self.store = store
        self.array_field = config.array_field_name
        self.dedup_keys = list(config.array_field_dedup_keys)

    def document_id(self, record_key: Any) -> Any:
        return document_id_for(record_key, self.config)

    def apply(self, record_key: Any, record_value: Optional[Mapping[str, Any]]) -> WriteModel:
        doc_id = self.document_id(record_key)
        id_filter = {self.config.id_field: doc_id}

        if record_value is None:
            self.logger.debug("Tombstone, deleting document", document_id=str(doc_id))
            return DeleteOne(filter=id_filter)

        if not isinstance(record_value, Mapping):
            raise DataShapeError(f"Unsupported record value type: {type(record_value).__name__}")

        if self.array_field not in record_value:
            raise DataShapeError(f"Record does not contain array field '{self.array_field}'")

        new_element = record_value[self.array_field]
        if not isinstance(new_element, Mapping):
            raise DataShapeError(
                f"Array field '{self.array_field}' must hold a document, "
                f"got {type(new_element).__name__}"
            )

        existing = self.store.find_one(id_filter)

        if existing is None:
            document = dict(record_value)
            document[self.config.id_field] = doc_id
            document[self.array_field] = [dict(new_element)]
            self.logger.debug("Inserting new document", document_id=str(doc_id))
            return InsertOne(document=document)

        merged = dict(existing)
        for name, value in record_value.items():
            if name != self.array_field and name != self.config.id_field:
                merged[name] = value

        current = merged.get(self.array_field)
        if current is None:
            current = []
        elif not isinstance(current, list):
            self.logger.warning("Stored array field is not a list, resetting it",
                                document_id=str(doc_id), array_field=self.array_field)
            current = []

        dropped = sum(1 for element in current if not isinstance(element, Mapping))
        if dropped:
            self.logger.warning("Dropping non-document array entries",
                                document_id=str(doc_id), dropped=dropped)

        merged[self.array_field] = dedupe_array(current + [new_element], self.dedup_keys)
        self.logger.debug("Replacing merged document", document_id=str(doc_id),
                          array_size=len(merged[self.array_field]))
        return ReplaceOne(filter=id_filter, document=merged)

    def initialize(self) -> bool:
        self.logger.info("Merge engine initialized", array_field=self.array_field,
                         dedup_keys=self.dedup_keys)
        return True

    def cleanup(self) -> None:
        pass

    def health_check(self) -> bool:
        return self.store.ping()
