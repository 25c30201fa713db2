"""
Unit tests for offset persistence and timestamp conversion.
"""
import pytest
import threading
from datetime import datetime, timezone, timedelta
from pathlib import Path

from mongo_pipeline.ingestion.offsets import (
    FileOffsetStore, parse_offset_value, to_epoch_millis, from_epoch_millis, INITIAL_TS
)
from mongo_pipeline.interfaces.base import source_partition


class TestEpochMillis:
    """Conversions between datetimes and epoch milliseconds."""

    def test_naive_datetime_is_utc(self):
        assert to_epoch_millis(datetime(1970, 1, 1, 0, 0, 1)) == 1000

    def test_aware_datetime(self):
        value = datetime(1970, 1, 1, 1, 0, 0, tzinfo=timezone(timedelta(hours=1)))

        assert to_epoch_millis(value) == 0

    def test_round_trip_keeps_milliseconds(self):
        millis = 1_700_000_000_123

        assert to_epoch_millis(from_epoch_millis(millis)) == millis
        assert from_epoch_millis(millis).tzinfo is None

    def test_sub_millisecond_is_truncated(self):
        value = datetime(2024, 1, 1, 0, 0, 0, 999_999)

        assert to_epoch_millis(value) % 1000 == 999


class TestParseOffsetValue:
    """Offset values read back from storage."""

    def test_absent_offset(self):
        assert parse_offset_value(None) == INITIAL_TS
        assert parse_offset_value({}) == INITIAL_TS
        assert parse_offset_value({'lastProcessedTs': None}) == INITIAL_TS

    def test_integer_offset(self):
        assert parse_offset_value({'lastProcessedTs': 1234}) == 1234

    def test_numeric_string_offset(self):
        assert parse_offset_value({'lastProcessedTs': ' 987 '}) == 987

    def test_integral_float_offset(self):
        assert parse_offset_value({'lastProcessedTs': 55.0}) == 55

    @pytest.mark.parametrize('raw', ['yesterday', 1.5, [1], True])
    def test_unparseable_offset_falls_back_to_zero(self, raw):
        assert parse_offset_value({'lastProcessedTs': raw}) == INITIAL_TS


class TestFileOffsetStore:
    """Test cases for FileOffsetStore."""

    @pytest.fixture
    def partition(self):
        return source_partition('testdb', 'misure')

    def test_initialization(self, tmp_path):
        store_path = tmp_path / 'offsets'
        store = FileOffsetStore(str(store_path))

        assert store.store_path == Path(store_path)
        assert store.store_path.exists()

    def test_read_missing_partition(self, tmp_path, partition):
        store = FileOffsetStore(str(tmp_path))

        assert store.read(partition) is None

    def test_commit_and_read(self, tmp_path, partition):
        store = FileOffsetStore(str(tmp_path))

        store.commit(partition, {'lastProcessedTs': 1_700_000_000_000})

        assert store.read(partition) == {'lastProcessedTs': 1_700_000_000_000}

    def test_commit_overwrites(self, tmp_path, partition):
        store = FileOffsetStore(str(tmp_path))

        store.commit(partition, {'lastProcessedTs': 1})
        store.commit(partition, {'lastProcessedTs': 2})

        assert store.read(partition) == {'lastProcessedTs': 2}
        assert not list(tmp_path.glob('*.tmp'))

    def test_partitions_are_isolated(self, tmp_path):
        store = FileOffsetStore(str(tmp_path))

        store.commit(source_partition('db', 'a'), {'lastProcessedTs': 1})
        store.commit(source_partition('db', 'b'), {'lastProcessedTs': 2})

        assert store.read(source_partition('db', 'a')) == {'lastProcessedTs': 1}
        assert store.get_all_offsets() == {
            'db.a': {'lastProcessedTs': 1},
            'db.b': {'lastProcessedTs': 2},
        }

    def test_unsafe_collection_names(self, tmp_path):
        """Collection names with separators still map to a single file."""
        store = FileOffsetStore(str(tmp_path))
        partition = source_partition('db', 'misure/dettaglio')

        store.commit(partition, {'lastProcessedTs': 3})

        assert store.read(partition) == {'lastProcessedTs': 3}
        assert len(list(tmp_path.iterdir())) == 1

    def test_corrupt_file_reads_as_absent(self, tmp_path, partition):
        store = FileOffsetStore(str(tmp_path))
        store.commit(partition, {'lastProcessedTs': 3})
        next(tmp_path.glob('*.offset.json')).write_text('{not json')

        assert store.read(partition) is None

    def test_concurrent_commits(self, tmp_path):
        """Thread-safe commits to different partitions."""
        store = FileOffsetStore(str(tmp_path))

        def commit(index):
            store.commit(source_partition('db', f'coll{index}'), {'lastProcessedTs': index})

        threads = [threading.Thread(target=commit, args=(i,)) for i in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        for i in range(5):
            assert store.read(source_partition('db', f'coll{i}')) == {'lastProcessedTs': i}
