"""
Base interfaces, shared record types and write models for the pipeline.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from dataclasses import dataclass, field
from enum import Enum


Document = Dict[str, Any]

OFFSET_TS_KEY = "lastProcessedTs"
ID_FIELD = "_id"


class PipelineError(Exception):
    """Base class for pipeline errors."""
    pass


class ConfigurationError(PipelineError):
    """Raised when configuration (or a record contract it implies) is violated."""
    pass


class DataShapeError(PipelineError):
    """Raised when a single record does not have the expected shape."""
    pass


class WriteModelType(Enum):
    """Kinds of store mutation."""
    INSERT = "INSERT"
    REPLACE = "REPLACE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class InsertOne:
    document: Document
    kind: WriteModelType = field(default=WriteModelType.INSERT, init=False)


@dataclass(frozen=True)
class ReplaceOne:
    filter: Document
    document: Document
    kind: WriteModelType = field(default=WriteModelType.REPLACE, init=False)


@dataclass(frozen=True)
class UpdateOne:
    filter: Document
    update: Document
    upsert: bool = False
    # Filter carries a staleness predicate; a miss on upsert means "older".
    conditional: bool = False
    kind: WriteModelType = field(default=WriteModelType.UPDATE, init=False)


@dataclass(frozen=True)
class DeleteOne:
    filter: Document
    kind: WriteModelType = field(default=WriteModelType.DELETE, init=False)


WriteModel = Union[InsertOne, ReplaceOne, UpdateOne, DeleteOne]


@dataclass
class WriteOutcome:
    """Result of executing a single write model."""
    kind: WriteModelType
    matched: int = 0
    modified: int = 0
    upserted_id: Any = None
    deleted: int = 0
    inserted_id: Any = None
    stale: bool = False


@dataclass
class OutputRecord:
    """Record emitted by the extractor towards the streaming layer."""
    topic: str
    partition: Dict[str, str]
    offset: Dict[str, int]
    key: Optional[str]
    value: Union[str, Dict[str, Any]]
    timestamp: Optional[int] = None


@dataclass
class SinkRecord:
    """Record consumed by the merger; ``value is None`` marks a tombstone."""
    topic: str
    key: Any
    value: Optional[Mapping[str, Any]]
    offset: Optional[int] = None

    @property
    def is_tombstone(self) -> bool:
        return self.value is None


@dataclass
class PutResult:
    """Outcome of applying one batch of sink records."""
    applied: int = 0
    deleted: int = 0
    skipped: int = 0
    stale: int = 0
    execution_time: float = 0.0
    errors: List[str] = field(default_factory=list)


def source_partition(database: str, collection: str) -> Dict[str, str]:
    """Partition identifier for a source collection."""
    return {"db": database, "collection": collection}


class DocumentStore(ABC):
    """Abstract document store bound to a single collection."""

    @abstractmethod
    def find(self, filter: Document, sort: Optional[List[Tuple[str, int]]] = None) -> Iterable[Document]:
        """Run a filtered query."""
        pass

    @abstractmethod
    def aggregate(self, pipeline: List[Document]) -> Iterable[Document]:
        """Run an aggregation pipeline."""
        pass

    @abstractmethod
    def find_one(self, filter: Document) -> Optional[Document]:
        """Return the first matching document or None."""
        pass

    @abstractmethod
    def execute(self, model: WriteModel) -> WriteOutcome:
        """Apply a single write model."""
        pass

    def execute_many(self, models: Iterable[WriteModel]) -> List[WriteOutcome]:
        """Apply write models in order."""
        return [self.execute(model) for model in models]

    @abstractmethod
    def ping(self) -> bool:
        """Check connectivity to the store."""
        pass


class OffsetStore(ABC):
    """Durable partition -> offset store."""

    @abstractmethod
    def read(self, partition: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        """Read the stored offset for a partition."""
        pass

    @abstractmethod
    def commit(self, partition: Mapping[str, str], offset: Mapping[str, Any]) -> None:
        """Persist the offset for a partition."""
        pass


class WriteModelStrategy(ABC):
    """Builds a write model from an incoming value document."""

    @abstractmethod
    def build(self, value_doc: Mapping[str, Any]) -> WriteModel:
        pass


class PipelineComponent(ABC):
    """Base class for all pipeline components."""

    def __init__(self, component_id: str, config: Any):
        self.component_id = component_id
        self.config = config
        self._logger = None

    @property
    def logger(self):
        """Get logger instance."""
        if self._logger is None:
            from mongo_pipeline.utils.logging import get_logger
            self._logger = get_logger(self.__class__.__name__)
        return self._logger

    @abstractmethod
    def initialize(self) -> bool:
        """Initialize the component."""
        pass

    @abstractmethod
    def cleanup(self) -> None:
        """Cleanup resources."""
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """Check component health."""
        pass
