#!/usr/bin/env python3
"""
Example wiring the extractor and merger together in one process.

Reads the ``extractor`` and ``merger`` sections from ``config/<env>.yaml``
(see ``config/example-connectors.yaml``), polls the source collection until
Ctrl-C and hands each batch straight to the merger instead of a broker.
"""
import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import threading
from typing import List

from bson import json_util

from mongo_pipeline.config.settings import ConfigManager
from mongo_pipeline.interfaces.base import OutputRecord, SinkRecord
from mongo_pipeline.ingestion.offsets import FileOffsetStore
from mongo_pipeline.orchestration import ExtractorTask, MergerTask, install_signal_handlers
from mongo_pipeline.utils.logging import configure_logging


def to_sink_record(record: OutputRecord) -> SinkRecord:
    value = record.value
    if isinstance(value, dict):
        value = value['payload']
    return SinkRecord(topic=record.topic, key=record.key, value=json_util.loads(value),
                      offset=record.offset['lastProcessedTs'])


def main():
    """Run extractor and merger until interrupted."""
    settings = ConfigManager("config").load_config()
    configure_logging({
        'level': settings.logging.level,
        'format': settings.logging.format,
        'file_path': settings.logging.file_path,
    }, force=True)

    if settings.extractor is None or settings.merger is None:
        print("Both 'extractor' and 'merger' sections are required, see config/example-connectors.yaml")
        return 1

    print(f"=== Change pipeline: {settings.extractor.database}.{settings.extractor.collection} -> "
          f"{settings.merger.database}.{settings.merger.collection} ===")

    stop_event = threading.Event()
    install_signal_handlers(stop_event)

    offset_store = FileOffsetStore(settings.offsets.path)
    extractor_task = ExtractorTask(settings.extractor, offset_store, stop_event=stop_event)

    with MergerTask(settings.merger) as merger_task:
        def apply(records: List[OutputRecord]) -> None:
            result = merger_task.put([to_sink_record(r) for r in records])
            print(f"   applied={result.applied} deleted={result.deleted} "
                  f"skipped={result.skipped} stale={result.stale}")

        with extractor_task:
            while not stop_event.is_set():
                extractor_task.run_batch(apply)

        print(f"\nTotals: {merger_task.get_stats()}")
        print(f"Offsets: {offset_store.get_all_offsets()}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
