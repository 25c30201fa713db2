"""
Incremental extraction of new and changed documents from a collection.

Each poll reads the window ``(lastProcessedTs, now]`` on the configured time
field, optionally through a user aggregation pipeline, and emits one
``OutputRecord`` per document carrying ``{"lastProcessedTs": <millis>}`` as its
offset. The watermark only moves forward.
"""
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from bson import json_util
from pymongo import ASCENDING

from mongo_pipeline.config.settings import ExtractorConfig, MissingTimeFieldPolicy, OutputFormat
from mongo_pipeline.interfaces.base import (
    Document, DocumentStore, OutputRecord, PipelineComponent, ID_FIELD, OFFSET_TS_KEY,
    source_partition
)
from mongo_pipeline.ingestion.offsets import INITIAL_TS, from_epoch_millis, to_epoch_millis
from mongo_pipeline.utils.key_resolver import KeyResolver


JSON_OPTIONS = json_util.RELAXED_JSON_OPTIONS


def parse_base_filter(filter_json: Optional[str]) -> Document:
    """Parse an extended-JSON filter; raises ValueError on anything but a JSON object."""
    if filter_json is None or not filter_json.strip():
        return {}
    parsed = json_util.loads(filter_json)
    if not isinstance(parsed, dict):
        raise ValueError(f"filter must be a JSON object, got {type(parsed).__name__}")
    return parsed


def parse_pipeline(pipeline_json: Optional[str]) -> List[Document]:
    """Parse an extended-JSON array of stages; raises ValueError on malformed input."""
    if pipeline_json is None or not pipeline_json.strip():
        return []
    parsed = json_util.loads(pipeline_json)
    if not isinstance(parsed, list) or not all(isinstance(stage, dict) for stage in parsed):
        raise ValueError("pipeline must be a JSON array of stage objects")
    return parsed


def build_window_filter(base_filter: Document, time_field: str,
                        from_exclusive: datetime, to_inclusive: datetime) -> Document:
    """``base AND time_field in (from_exclusive, to_inclusive]``."""
    time_condition = {time_field: {'$gt': from_exclusive, '$lte': to_inclusive}}
    if not base_filter:
        return time_condition
    return {'$and': [base_filter, time_condition]}


class IncrementalExtractor(PipelineComponent):
    """Polls one collection and turns new documents into output records."""

    def __init__(self, config: ExtractorConfig, store: DocumentStore,
                 last_processed_ts: int = INITIAL_TS,
                 stop_event: Optional[threading.Event] = None,
                 clock: Callable[[], float] = time.time):
        super().__init__(f"extractor:{config.database}.{config.collection}", config)
        self.store = store
        self.key_resolver = KeyResolver(config.key_field)
        self.partition = source_partition(config.database, config.collection)
        self.last_processed_ts = last_processed_ts
        self.last_poll_started: Optional[float] = None
        self.stop_event = stop_event or threading.Event()
        self._clock = clock
        self._pipeline = self._load_pipeline()
        self._poll_stats: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _load_pipeline(self) -> List[Document]:
        try:
            return parse_pipeline(self.config.pipeline)
        except ValueError as e:
            self.logger.warning("Cannot parse pipeline, running without one",
                                pipeline=self.config.pipeline, error=str(e))
            return []

    def _load_base_filter(self) -> Document:
        try:
            return parse_base_filter(self.config.base_filter)
        except ValueError as e:
            self.logger.warning("Cannot parse base filter, matching everything",
                                base_filter=self.config.base_filter, error=str(e))
            return {}

    def _wait_for_interval(self) -> bool:
        """Sleep out the rest of the poll interval; False when shutdown interrupted the wait."""
        if self.last_poll_started is None:
            return not self.stop_event.is_set()

        elapsed_ms = (self._clock() - self.last_poll_started) * 1000
        remaining_ms = self.config.poll_interval_ms - elapsed_ms
        if remaining_ms > 0:
            self.logger.debug("Sleeping before next poll", sleep_ms=int(remaining_ms))
            if self.stop_event.wait(remaining_ms / 1000):
                return False
        return not self.stop_event.is_set()

    def poll(self) -> List[OutputRecord]:
        """Run one poll cycle and return the (possibly empty) batch of records."""
        if not self._wait_for_interval():
            self.logger.info("Shutdown requested, poll aborted")
            return []

        self.last_poll_started = self._clock()
        window_end = int(self.last_poll_started * 1000)

        query = build_window_filter(
            self._load_base_filter(),
            self.config.time_field,
            from_epoch_millis(self.last_processed_ts),
            from_epoch_millis(window_end),
        )

        if self._pipeline:
            cursor = self.store.aggregate(self._pipeline + [{'$match': query}])
        else:
            cursor = self.store.find(query, sort=[(self.config.time_field, ASCENDING)])

        records: List[OutputRecord] = []
        max_ts: Optional[int] = None
        skipped = 0

        for document in cursor:
            ts = self._document_timestamp(document)
            if ts is None:
                if self.config.missing_time_field_policy == MissingTimeFieldPolicy.EMIT_ZERO:
                    records.append(self._build_record(document, INITIAL_TS))
                else:
                    skipped += 1
                    self.logger.debug("Skipping document without usable time field",
                                      time_field=self.config.time_field,
                                      document_id=str(document.get(ID_FIELD)))
                continue

            if max_ts is None or ts > max_ts:
                max_ts = ts
            records.append(self._build_record(document, ts))

        if max_ts is not None and max_ts > self.last_processed_ts:
            self.last_processed_ts = max_ts
            self.logger.info("Poll done", record_count=len(records),
                             last_processed_ts=self.last_processed_ts)
        else:
            self.logger.info("Poll done: no new records", record_count=len(records))

        self._record_poll_stats(len(records), skipped, window_end)
        return records

    def _document_timestamp(self, document: Document) -> Optional[int]:
        value = document.get(self.config.time_field)
        if not isinstance(value, datetime):
            return None
        return to_epoch_millis(value)

    def _resolve_key(self, document: Document) -> Optional[str]:
        key_value = self.key_resolver.resolve(document)
        if key_value is None:
            self.logger.warning("Key field not resolvable, falling back to _id",
                                key_field=self.config.key_field,
                                document_id=str(document.get(ID_FIELD)))
            key_value = document.get(ID_FIELD)
        return str(key_value) if key_value is not None else None

    def _build_record(self, document: Document, ts: int) -> OutputRecord:
        payload = json_util.dumps(document, json_options=JSON_OPTIONS)

        if self.config.output_format == OutputFormat.ENVELOPE:
            doc_id = document.get(ID_FIELD)
            value: Any = {
                '_id': str(doc_id) if doc_id is not None else None,
                'payload': payload,
                'timestamp': ts,
            }
        else:
            value = payload

        return OutputRecord(
            topic=self.config.topic,
            partition=dict(self.partition),
            offset={OFFSET_TS_KEY: ts},
            key=self._resolve_key(document),
            value=value,
            timestamp=ts,
        )

    def _record_poll_stats(self, record_count: int, skipped: int, window_end: int) -> None:
        with self._lock:
            self._poll_stats = {
                'last_poll': datetime.now(),
                'record_count': record_count,
                'skipped_count': skipped,
                'window_end': window_end,
                'last_processed_ts': self.last_processed_ts,
                'duration': self._clock() - self.last_poll_started,
            }

    def get_poll_stats(self) -> Dict[str, Any]:
        with self._lock:
            return self._poll_stats.copy()

    def initialize(self) -> bool:
        self.logger.info("Extractor initialized", last_processed_ts=self.last_processed_ts,
                         time_field=self.config.time_field,
                         output_format=self.config.output_format.value)
        return True

    def cleanup(self) -> None:
        self._poll_stats.clear()

    def health_check(self) -> bool:
        return self.store.ping()
