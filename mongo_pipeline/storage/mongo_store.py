"""
pymongo-backed document store with scoped connection management.
"""
from contextlib import contextmanager
from typing import Any, Callable, Iterable, Iterator, List, Optional, Tuple

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError, PyMongoError

from mongo_pipeline.interfaces.base import (
    Document, DocumentStore, WriteModel, WriteModelType, WriteOutcome
)
from mongo_pipeline.utils.logging import get_logger


logger = get_logger(__name__)


class MongoDocumentStore(DocumentStore):
    """DocumentStore over a single pymongo collection."""

    def __init__(self, collection: Collection):
        self._collection = collection

    @property
    def database_name(self) -> str:
        return self._collection.database.name

    @property
    def collection_name(self) -> str:
        return self._collection.name

    @classmethod
    @contextmanager
    def connect(cls, uri: str, database: str, collection: str,
                client_factory: Callable[..., Any] = MongoClient,
                **client_kwargs) -> Iterator['MongoDocumentStore']:
        """Open a client for the lifetime of the block; the client is closed on every exit path."""
        client_kwargs.setdefault('serverSelectionTimeoutMS', 30_000)
        client = client_factory(uri, **client_kwargs)
        try:
            logger.info("Connected to MongoDB", database=database, collection=collection)
            yield cls(client[database][collection])
        finally:
            client.close()
            logger.info("MongoDB client closed", database=database, collection=collection)

    def find(self, filter: Document, sort: Optional[List[Tuple[str, int]]] = None) -> Iterable[Document]:
        cursor = self._collection.find(filter)
        if sort:
            cursor = cursor.sort(sort)
        return cursor

    def aggregate(self, pipeline: List[Document]) -> Iterable[Document]:
        return self._collection.aggregate(pipeline, allowDiskUse=True)

    def find_one(self, filter: Document) -> Optional[Document]:
        return self._collection.find_one(filter)

    def execute(self, model: WriteModel) -> WriteOutcome:
        kind = model.kind

        if kind == WriteModelType.INSERT:
            result = self._collection.insert_one(model.document)
            return WriteOutcome(kind=kind, inserted_id=result.inserted_id)

        if kind == WriteModelType.REPLACE:
            result = self._collection.replace_one(model.filter, model.document)
            return WriteOutcome(kind=kind, matched=result.matched_count, modified=result.modified_count)

        if kind == WriteModelType.UPDATE:
            try:
                result = self._collection.update_one(model.filter, model.update, upsert=model.upsert)
            except DuplicateKeyError:
                if not model.conditional:
                    raise
                # The identifier exists but the staleness predicate rejected it
                logger.debug("Stale conditional write ignored", filter=str(model.filter))
                return WriteOutcome(kind=kind, stale=True)
            return WriteOutcome(kind=kind, matched=result.matched_count,
                                modified=result.modified_count, upserted_id=result.upserted_id)

        if kind == WriteModelType.DELETE:
            result = self._collection.delete_one(model.filter)
            return WriteOutcome(kind=kind, deleted=result.deleted_count)

        raise ValueError(f"Unsupported write model: {kind}")

    def ping(self) -> bool:
        try:
            self._collection.database.client.admin.command('ping')
            return True
        except PyMongoError as e:
            logger.error("MongoDB ping failed", error=str(e))
            return False
