"""
Task lifecycle for the extractor and the merger.

A task owns its MongoDB connection from ``start()`` to ``stop()``; both can
also be used as context managers so the client is released on every exit
path.
"""
import threading
import time
from contextlib import ExitStack
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pymongo import MongoClient

from mongo_pipeline.config.settings import ExtractorConfig, MergerConfig, WriteStrategy
from mongo_pipeline.interfaces.base import (
    DataShapeError, DeleteOne, DocumentStore, OffsetStore, OutputRecord, PipelineComponent,
    PipelineError, PutResult, SinkRecord, WriteModel, OFFSET_TS_KEY
)
from mongo_pipeline.ingestion.extractor import IncrementalExtractor
from mongo_pipeline.ingestion.offsets import parse_offset_value
from mongo_pipeline.sink.merger import MergeUpsertEngine, document_id_for
from mongo_pipeline.sink.write_strategy import UpdateIfNewerStrategy
from mongo_pipeline.storage.mongo_store import MongoDocumentStore


RecordPublisher = Callable[[OutputRecord], None]


class _StoreBoundTask(PipelineComponent):
    """Shared connection handling for tasks bound to one collection."""

    def __init__(self, component_id: str, config: Any,
                 client_factory: Callable[..., Any] = MongoClient):
        super().__init__(component_id, config)
        self._client_factory = client_factory
        self._resources: Optional[ExitStack] = None
        self.store: Optional[DocumentStore] = None

    def _open_store(self) -> DocumentStore:
        self._resources = ExitStack()
        try:
            return self._resources.enter_context(MongoDocumentStore.connect(
                self.config.connection_uri, self.config.database, self.config.collection,
                client_factory=self._client_factory,
            ))
        except Exception:
            self._resources.close()
            self._resources = None
            raise

    def stop(self) -> None:
        self.logger.info("Stopping task", task=self.component_id)
        self.cleanup()
        if self._resources is not None:
            self._resources.close()
            self._resources = None
        self.store = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def start(self) -> None:
        raise NotImplementedError

    def initialize(self) -> bool:
        try:
            self.start()
            return True
        except (PipelineError, OSError) as e:
            self.logger.error("Failed to start task", task=self.component_id, error=str(e))
            return False

    def health_check(self) -> bool:
        return self.store is not None and self.store.ping()


class ExtractorTask(_StoreBoundTask):
    """Runs the incremental extractor and commits offsets for delivered records."""

    def __init__(self, config: ExtractorConfig, offset_store: OffsetStore,
                 stop_event: Optional[threading.Event] = None,
                 client_factory: Callable[..., Any] = MongoClient,
                 clock: Callable[[], float] = time.time):
        super().__init__(f"extractor-task:{config.database}.{config.collection}", config, client_factory)
        self.offset_store = offset_store
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self.extractor: Optional[IncrementalExtractor] = None
        self.committed_ts: Optional[int] = None

    def start(self) -> None:
        store = self._open_store()
        try:
            extractor = IncrementalExtractor(self.config, store, stop_event=self.stop_event, clock=self._clock)
            stored_offset = self.offset_store.read(extractor.partition)
            extractor.last_processed_ts = parse_offset_value(stored_offset)
        except Exception:
            self.stop()
            raise

        self.store = store
        self.extractor = extractor
        self.committed_ts = extractor.last_processed_ts
        self.logger.set_context(database=self.config.database, collection=self.config.collection,
                                topic=self.config.topic)
        self.logger.info("Extractor task started",
                         time_field=self.config.time_field,
                         poll_interval_ms=self.config.poll_interval_ms,
                         output_format=self.config.output_format.value,
                         last_processed_ts=extractor.last_processed_ts)
        extractor.initialize()

    def poll(self):
        if self.extractor is None:
            raise RuntimeError("Extractor task is not started")
        return self.extractor.poll()

    def commit(self, record: OutputRecord) -> None:
        """Persist a delivered record's offset; the stored watermark never moves backwards."""
        ts = int(record.offset.get(OFFSET_TS_KEY, 0))
        if self.committed_ts is not None and ts < self.committed_ts:
            ts = self.committed_ts
        self.offset_store.commit(record.partition, {OFFSET_TS_KEY: ts})
        self.committed_ts = ts

    def run_once(self, publish: RecordPublisher) -> int:
        """Poll once, hand each record to ``publish`` and commit its offset."""
        records = self.poll()
        for record in records:
            publish(record)
            self.commit(record)
        return len(records)

    def run_batch(self, apply: Callable[[List[OutputRecord]], Any]) -> int:
        """Poll once and hand the whole batch to ``apply``; offsets are committed only if it returns."""
        records = self.poll()
        if not records:
            return 0
        apply(records)
        for record in records:
            self.commit(record)
        return len(records)

    def cleanup(self) -> None:
        if self.extractor is not None:
            self.extractor.cleanup()
            self.extractor = None
        self.logger.clear_context()


class MergerTask(_StoreBoundTask):
    """Applies batches of sink records with the configured write strategy."""

    def __init__(self, config: MergerConfig, client_factory: Callable[..., Any] = MongoClient):
        super().__init__(f"merger-task:{config.database}.{config.collection}", config, client_factory)
        self.engine: Optional[MergeUpsertEngine] = None
        self.strategy: Optional[UpdateIfNewerStrategy] = None
        self._stats: Dict[str, int] = {'applied': 0, 'deleted': 0, 'skipped': 0, 'stale': 0}

    def start(self) -> None:
        self.store = self._open_store()
        try:
            if self.config.write_strategy == WriteStrategy.MERGE:
                self.engine = MergeUpsertEngine(self.config, self.store)
                self.engine.initialize()
            else:
                self.strategy = UpdateIfNewerStrategy(self.config.comparison_date_field, self.config.id_field)
        except Exception:
            self.stop()
            raise
        self.logger.set_context(database=self.config.database, collection=self.config.collection)
        self.logger.info("Merger task started", write_strategy=self.config.write_strategy.value)

    def build_write_model(self, record: SinkRecord) -> WriteModel:
        if self.engine is not None:
            return self.engine.apply(record.key, record.value)

        if self.strategy is None:
            raise RuntimeError("Merger task is not started")
        if record.is_tombstone:
            doc_id = document_id_for(record.key, self.config)
            return DeleteOne(filter={self.config.id_field: doc_id})
        if not isinstance(record.value, Mapping):
            raise DataShapeError(f"Unsupported record value type: {type(record.value).__name__}")
        return self.strategy.build(record.value)

    def put(self, records: Iterable[SinkRecord]) -> PutResult:
        """
        Apply one batch. A record that violates its contract is skipped and
        logged; store errors propagate to the caller.
        """
        if self.store is None:
            raise RuntimeError("Merger task is not started")

        result = PutResult()
        start_time = time.time()

        for record in records:
            try:
                model = self.build_write_model(record)
            except PipelineError as e:
                result.skipped += 1
                result.errors.append(str(e))
                self.logger.warning("Record skipped", topic=record.topic,
                                    record_offset=record.offset, error=str(e))
                continue

            outcome = self.store.execute(model)
            if outcome.stale:
                result.stale += 1
            elif isinstance(model, DeleteOne):
                result.deleted += 1
            else:
                result.applied += 1

        result.execution_time = time.time() - start_time
        for key in self._stats:
            self._stats[key] += getattr(result, key)

        self.logger.info("Batch applied", applied=result.applied, deleted=result.deleted,
                         skipped=result.skipped, stale=result.stale)
        return result

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def cleanup(self) -> None:
        if self.engine is not None:
            self.engine.cleanup()
        self.engine = None
        self.strategy = None
        self.logger.clear_context()
