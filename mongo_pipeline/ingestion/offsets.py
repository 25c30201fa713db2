"""
Offset persistence and epoch-millisecond helpers for incremental extraction.
"""
import json
import os
import re
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from mongo_pipeline.interfaces.base import OffsetStore, OFFSET_TS_KEY
from mongo_pipeline.utils.logging import get_logger


INITIAL_TS = 0
_EPOCH = datetime(1970, 1, 1)

logger = get_logger(__name__)


def to_epoch_millis(value: datetime) -> int:
    """Milliseconds since the epoch; naive datetimes are taken as UTC (pymongo default)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - _EPOCH.replace(tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_millis(millis: int) -> datetime:
    """Naive UTC datetime for the given epoch milliseconds, as stored by MongoDB."""
    return _EPOCH + timedelta(milliseconds=millis)


def parse_offset_value(offset: Optional[Mapping[str, Any]]) -> int:
    """Extract ``lastProcessedTs`` from a stored offset, falling back to the epoch floor."""
    if not offset or offset.get(OFFSET_TS_KEY) is None:
        return INITIAL_TS

    raw = offset[OFFSET_TS_KEY]
    if isinstance(raw, bool):
        logger.warning("Ignoring boolean offset value", offset_value=raw)
        return INITIAL_TS
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            pass

    logger.warning("Unparseable offset value, starting from epoch",
                   offset_value=repr(raw), offset_type=type(raw).__name__)
    return INITIAL_TS


class FileOffsetStore(OffsetStore):
    """File-based offset store, one JSON document per (db, collection) partition."""

    def __init__(self, store_path: str):
        self.store_path = Path(store_path)
        self.store_path.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _offset_file(self, partition: Mapping[str, str]) -> Path:
        name = f"{partition['db']}__{partition['collection']}"
        safe_name = re.sub(r'[^A-Za-z0-9_.-]', '_', name)
        return self.store_path / f"{safe_name}.offset.json"

    def read(self, partition: Mapping[str, str]) -> Optional[Dict[str, Any]]:
        offset_file = self._offset_file(partition)

        with self._lock:
            if not offset_file.exists():
                return None
            try:
                with open(offset_file, 'r') as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.warning("Offset file unreadable, treating as absent",
                               path=str(offset_file), error=str(e))
                return None

        offset = data.get('offset')
        return dict(offset) if isinstance(offset, dict) else None

    def commit(self, partition: Mapping[str, str], offset: Mapping[str, Any]) -> None:
        offset_file = self._offset_file(partition)
        data = {
            'partition': dict(partition),
            'offset': dict(offset),
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }

        # write-then-rename so a crash never leaves a truncated offset
        tmp_file = offset_file.with_suffix('.tmp')
        with self._lock:
            with open(tmp_file, 'w') as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_file, offset_file)

    def get_all_offsets(self) -> Dict[str, Dict[str, Any]]:
        """All stored offsets keyed by ``db.collection``."""
        offsets = {}

        with self._lock:
            for offset_file in self.store_path.glob("*.offset.json"):
                try:
                    with open(offset_file, 'r') as f:
                        data = json.load(f)
                except (OSError, ValueError):
                    continue
                partition = data.get('partition') or {}
                if partition:
                    offsets[f"{partition.get('db')}.{partition.get('collection')}"] = data.get('offset', {})

        return offsets
