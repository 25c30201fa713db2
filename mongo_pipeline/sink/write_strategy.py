"""
"Update only if newer" write model strategy.
"""
from typing import Any, Mapping, Optional

from mongo_pipeline.interfaces.base import (
    ConfigurationError, DataShapeError, UpdateOne, WriteModelStrategy, ID_FIELD
)
from mongo_pipeline.utils.logging import get_logger


logger = get_logger(__name__)


class UpdateIfNewerStrategy(WriteModelStrategy):
    """
    Upserts a document unless the stored copy carries an equal or later
    comparison date.

    The staleness check lives in the update filter, so the server evaluates it
    atomically with the write:

        {_id: <id>, $or: [{<field>: {$lt: <incoming>}}, {<field>: {$exists: false}}]}

    Incoming values without the comparison field are upserted unconditionally.
    """

    def __init__(self, comparison_field: Optional[str] = None, id_field: str = ID_FIELD):
        self.comparison_field = (comparison_field or '').strip() or None
        self.id_field = id_field
        if self.comparison_field is None:
            logger.warning("No comparison date field configured, every write is unconditional")

    def build(self, value_doc: Mapping[str, Any]) -> UpdateOne:
        if self.id_field not in value_doc or value_doc[self.id_field] is None:
            raise ConfigurationError(
                f"Cannot build write model, the '{self.id_field}' field is missing"
            )

        doc_id = value_doc[self.id_field]
        # _id is immutable; the filter carries it and upserts copy it in
        fields = {k: v for k, v in value_doc.items() if k != self.id_field}
        if not fields:
            raise DataShapeError(f"Nothing to write for document {doc_id!r} besides its identifier")
        update = {'$set': fields}

        incoming = value_doc.get(self.comparison_field) if self.comparison_field else None
        if incoming is None:
            return UpdateOne(filter={self.id_field: doc_id}, update=update, upsert=True)

        staleness_filter = {
            self.id_field: doc_id,
            '$or': [
                {self.comparison_field: {'$lt': incoming}},
                {self.comparison_field: {'$exists': False}},
            ],
        }
        return UpdateOne(filter=staleness_filter, update=update, upsert=True, conditional=True)
