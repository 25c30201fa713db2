"""
Unit tests for the incremental extractor.
"""
import json
import pytest
from datetime import datetime
from unittest.mock import Mock

from bson import ObjectId

from mongo_pipeline.config.settings import ExtractorConfig, MissingTimeFieldPolicy, OutputFormat
from mongo_pipeline.ingestion.extractor import (
    IncrementalExtractor, build_window_filter, parse_base_filter, parse_pipeline
)
from mongo_pipeline.ingestion.offsets import to_epoch_millis, from_epoch_millis
from mongo_pipeline.interfaces.base import DocumentStore
from mongo_pipeline.storage.mongo_store import MongoDocumentStore


TIME_FIELD = 'lastUpdateTime'


def make_config(**overrides) -> ExtractorConfig:
    props = {
        'connection.uri': 'mongodb://localhost:27017',
        'database': 'testdb',
        'collection': 'misure',
        'topic': 'test-topic',
        'time.field': TIME_FIELD,
        'poll.interval.ms': 10_000,
    }
    props.update(overrides)
    return ExtractorConfig.from_properties(props)


@pytest.fixture
def stop_event():
    event = Mock()
    event.is_set.return_value = False
    event.wait.return_value = False
    return event


@pytest.fixture
def mock_store():
    store = Mock(spec=DocumentStore)
    store.find.return_value = []
    store.aggregate.return_value = []
    return store


@pytest.fixture
def collection(mongo_client):
    return mongo_client['testdb']['misure']


@pytest.fixture
def mongo_store(collection):
    return MongoDocumentStore(collection)


class TestFilterParsing:
    """Parsing of base filters and pipelines."""

    def test_empty_filter(self):
        assert parse_base_filter('{}') == {}
        assert parse_base_filter('  ') == {}
        assert parse_base_filter(None) == {}

    def test_extended_json_filter(self):
        parsed = parse_base_filter('{"created": {"$gte": {"$date": "2024-01-01T00:00:00Z"}}}')

        assert isinstance(parsed['created']['$gte'], datetime)

    @pytest.mark.parametrize('raw', ['{deleted: ', '[]', '"text"'])
    def test_malformed_filter_raises(self, raw):
        with pytest.raises(ValueError):
            parse_base_filter(raw)

    def test_pipeline(self):
        stages = parse_pipeline('[{"$match": {"a": 1}}, {"$project": {"a": 1}}]')

        assert stages == [{'$match': {'a': 1}}, {'$project': {'a': 1}}]
        assert parse_pipeline('[]') == []

    @pytest.mark.parametrize('raw', ['[{"$match": ', '{"$match": {}}', '[1, 2]'])
    def test_malformed_pipeline_raises(self, raw):
        with pytest.raises(ValueError):
            parse_pipeline(raw)

    def test_window_filter_without_base(self, at):
        window = build_window_filter({}, TIME_FIELD, at(-10), at())

        assert window == {TIME_FIELD: {'$gt': at(-10), '$lte': at()}}

    def test_window_filter_with_base(self, at):
        window = build_window_filter({'deleted': False}, TIME_FIELD, at(-10), at())

        assert window == {'$and': [{'deleted': False}, {TIME_FIELD: {'$gt': at(-10), '$lte': at()}}]}


class TestIncrementalExtractorQueries:
    """Query construction against a mocked store."""

    def test_first_run_window(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        query = mock_store.find.call_args[0][0]
        assert query == {TIME_FIELD: {'$gt': datetime(1970, 1, 1), '$lte': from_epoch_millis(clock.now_ms)}}
        assert mock_store.find.call_args[1]['sort'] == [(TIME_FIELD, 1)]
        mock_store.aggregate.assert_not_called()

    def test_window_starts_at_watermark(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, last_processed_ts=clock.now_ms - 5000,
                                         stop_event=stop_event, clock=clock)

        extractor.poll()

        query = mock_store.find.call_args[0][0]
        assert query[TIME_FIELD]['$gt'] == from_epoch_millis(clock.now_ms - 5000)

    def test_malformed_base_filter_matches_everything(self, mock_store, clock, stop_event):
        config = make_config(**{'base.filter': '{"deleted": '})
        extractor = IncrementalExtractor(config, mock_store, stop_event=stop_event, clock=clock)

        assert extractor.poll() == []

        query = mock_store.find.call_args[0][0]
        assert list(query.keys()) == [TIME_FIELD]

    def test_pipeline_gets_time_match_appended(self, mock_store, clock, stop_event):
        config = make_config(pipeline='[{"$project": {"a": 1, "lastUpdateTime": 1}}]',
                             **{'base.filter': '{"deleted": false}'})
        extractor = IncrementalExtractor(config, mock_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        pipeline = mock_store.aggregate.call_args[0][0]
        assert pipeline[0] == {'$project': {'a': 1, 'lastUpdateTime': 1}}
        assert pipeline[-1] == {'$match': {'$and': [
            {'deleted': False},
            {TIME_FIELD: {'$gt': datetime(1970, 1, 1), '$lte': from_epoch_millis(clock.now_ms)}},
        ]}}
        mock_store.find.assert_not_called()

    def test_structured_filter_and_pipeline_are_applied(self, mock_store, clock, stop_event):
        """Filters and pipelines given as mappings/lists (YAML-native) are not dropped."""
        config = make_config(pipeline=[{'$project': {'a': 1, TIME_FIELD: 1}}],
                             **{'base.filter': {'deleted': False}})
        extractor = IncrementalExtractor(config, mock_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        pipeline = mock_store.aggregate.call_args[0][0]
        assert pipeline[0] == {'$project': {'a': 1, TIME_FIELD: 1}}
        assert pipeline[-1]['$match']['$and'][0] == {'deleted': False}

    def test_malformed_pipeline_falls_back_to_find(self, mock_store, clock, stop_event):
        config = make_config(pipeline='[{"$project": ')
        extractor = IncrementalExtractor(config, mock_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        mock_store.find.assert_called_once()
        mock_store.aggregate.assert_not_called()

    def test_store_errors_propagate(self, mock_store, clock, stop_event):
        mock_store.find.side_effect = ConnectionError("store unreachable")
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        with pytest.raises(ConnectionError):
            extractor.poll()
        assert extractor.last_processed_ts == 0


class TestSelfPacing:
    """Poll interval enforcement."""

    def test_first_poll_does_not_wait(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        stop_event.wait.assert_not_called()

    def test_waits_for_remaining_interval(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)
        extractor.poll()
        clock.advance(2_000)

        extractor.poll()

        stop_event.wait.assert_called_once_with(8.0)
        assert mock_store.find.call_count == 2

    def test_no_wait_when_interval_elapsed(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)
        extractor.poll()
        clock.advance(15_000)

        extractor.poll()

        stop_event.wait.assert_not_called()

    def test_shutdown_interrupts_wait(self, mock_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)
        extractor.poll()
        stop_event.wait.return_value = True

        assert extractor.poll() == []
        assert mock_store.find.call_count == 1

    def test_shutdown_before_poll(self, mock_store, clock, stop_event):
        stop_event.is_set.return_value = True
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        assert extractor.poll() == []
        mock_store.find.assert_not_called()


class TestRecordShaping:
    """Record keys, values and offsets."""

    def test_json_records(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_many([
            {'_id': 'a', TIME_FIELD: at(-1000), 'value': 1},
            {'_id': 'b', TIME_FIELD: at(), 'value': 2},
        ])
        extractor = IncrementalExtractor(make_config(), mongo_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert [r.key for r in records] == ['a', 'b']
        assert [r.offset for r in records] == [
            {'lastProcessedTs': clock.now_ms - 1000},
            {'lastProcessedTs': clock.now_ms},
        ]
        for record in records:
            assert record.topic == 'test-topic'
            assert record.partition == {'db': 'testdb', 'collection': 'misure'}
            assert isinstance(record.value, str)
        assert json.loads(records[1].value)['value'] == 2

    def test_envelope_records(self, mongo_store, collection, clock, stop_event, at):
        oid = ObjectId()
        collection.insert_one({'_id': oid, TIME_FIELD: at(), 'value': 1})
        config = make_config(**{'output.format': 'structured-envelope'})
        extractor = IncrementalExtractor(config, mongo_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert len(records) == 1
        envelope = records[0].value
        assert set(envelope) == {'_id', 'payload', 'timestamp'}
        assert envelope['_id'] == str(oid)
        assert envelope['timestamp'] == clock.now_ms
        assert json.loads(envelope['payload'])['value'] == 1
        assert records[0].offset == {'lastProcessedTs': clock.now_ms}
        assert config.output_format == OutputFormat.ENVELOPE

    def test_dotted_key_field(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_one({'_id': 'a', TIME_FIELD: at(), 'customer': {'id': 'C-1'}})
        config = make_config(**{'key.field': 'customer.id'})
        extractor = IncrementalExtractor(config, mongo_store, stop_event=stop_event, clock=clock)

        assert extractor.poll()[0].key == 'C-1'

    def test_unresolvable_key_falls_back_to_identifier(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_one({'_id': 'a', TIME_FIELD: at()})
        config = make_config(**{'key.field': 'customer.id'})
        extractor = IncrementalExtractor(config, mongo_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert records[0].key == 'a'

    def test_pipeline_projection(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_many([
            {'_id': 'a', TIME_FIELD: at(-10), 'ref': 'RID-0607842', 'kind': 'x'},
            {'_id': 'b', TIME_FIELD: at(-5), 'ref': 'RID-1490570', 'kind': 'y'},
        ])
        config = make_config(
            pipeline='[{"$match": {"kind": "y"}}, {"$project": {"ref": 1, "lastUpdateTime": 1}}]',
            **{'key.field': 'ref'}
        )
        extractor = IncrementalExtractor(config, mongo_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert len(records) == 1
        assert records[0].key == 'RID-1490570'
        assert 'kind' not in json.loads(records[0].value)


class TestWatermark:
    """Watermark advancement and re-delivery."""

    def test_watermark_advances_to_batch_max(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_many([
            {'_id': 'a', TIME_FIELD: at(-300)},
            {'_id': 'b', TIME_FIELD: at(-100)},
        ])
        extractor = IncrementalExtractor(make_config(), mongo_store, stop_event=stop_event, clock=clock)

        extractor.poll()

        assert extractor.last_processed_ts == clock.now_ms - 100

    def test_empty_poll_keeps_watermark(self, mongo_store, clock, stop_event):
        extractor = IncrementalExtractor(make_config(), mongo_store, last_processed_ts=42,
                                         stop_event=stop_event, clock=clock)

        assert extractor.poll() == []
        assert extractor.last_processed_ts == 42

    def test_no_redelivery_below_watermark(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_one({'_id': 'a', TIME_FIELD: at(-500)})
        extractor = IncrementalExtractor(make_config(), mongo_store, stop_event=stop_event, clock=clock)
        assert len(extractor.poll()) == 1

        clock.advance(20_000)
        collection.insert_one({'_id': 'b', TIME_FIELD: at(1_000)})
        records = extractor.poll()

        assert [r.key for r in records] == ['b']
        assert extractor.last_processed_ts == clock.now_ms - 19_000

    def test_future_documents_wait_for_their_window(self, mongo_store, collection, clock, stop_event, at):
        """Documents stamped after the poll start are picked up by a later poll."""
        collection.insert_one({'_id': 'future', TIME_FIELD: at(5_000)})
        extractor = IncrementalExtractor(make_config(), mongo_store, stop_event=stop_event, clock=clock)

        assert extractor.poll() == []

        clock.advance(10_000)
        assert [r.key for r in extractor.poll()] == ['future']

    def test_watermark_is_monotonic(self, mock_store, clock, stop_event, at):
        """Out-of-window documents returned by the store never move the watermark back."""
        mock_store.find.return_value = [{'_id': 'old', TIME_FIELD: at(-50_000)}]
        extractor = IncrementalExtractor(make_config(), mock_store, last_processed_ts=clock.now_ms,
                                         stop_event=stop_event, clock=clock)

        extractor.poll()

        assert extractor.last_processed_ts == clock.now_ms

    def test_poll_stats(self, mongo_store, collection, clock, stop_event, at):
        collection.insert_one({'_id': 'a', TIME_FIELD: at()})
        extractor = IncrementalExtractor(make_config(), mongo_store, stop_event=stop_event, clock=clock)

        extractor.poll()
        stats = extractor.get_poll_stats()

        assert stats['record_count'] == 1
        assert stats['last_processed_ts'] == clock.now_ms
        assert stats['window_end'] == clock.now_ms


class TestMissingTimeFieldPolicy:
    """Documents without a usable time field, under both policies."""

    @pytest.fixture
    def documents(self, at):
        return [
            {'_id': 'no-time', 'foo': 'bar'},
            {'_id': 'bad-time', TIME_FIELD: '2024-01-01'},
            {'_id': 'ok', TIME_FIELD: at(-100)},
        ]

    def test_skip_policy(self, mock_store, documents, clock, stop_event):
        mock_store.find.return_value = documents
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert [r.key for r in records] == ['ok']
        assert extractor.last_processed_ts == clock.now_ms - 100
        assert extractor.get_poll_stats()['skipped_count'] == 2

    def test_emit_zero_policy(self, mock_store, documents, clock, stop_event):
        mock_store.find.return_value = documents
        config = make_config(**{'missing.time.field.policy': 'emit_zero'})
        extractor = IncrementalExtractor(config, mock_store, stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert [r.key for r in records] == ['no-time', 'bad-time', 'ok']
        assert [r.offset['lastProcessedTs'] for r in records] == [0, 0, clock.now_ms - 100]
        assert extractor.last_processed_ts == clock.now_ms - 100
        assert config.missing_time_field_policy == MissingTimeFieldPolicy.EMIT_ZERO

    def test_emit_zero_alone_keeps_watermark(self, mock_store, clock, stop_event):
        mock_store.find.return_value = [{'_id': 'no-time'}]
        config = make_config(**{'missing.time.field.policy': 'emit_zero'})
        extractor = IncrementalExtractor(config, mock_store, last_processed_ts=7,
                                         stop_event=stop_event, clock=clock)

        records = extractor.poll()

        assert len(records) == 1
        assert records[0].offset == {'lastProcessedTs': 0}
        assert extractor.last_processed_ts == 7

    def test_skip_policy_is_consistent_across_polls(self, mock_store, clock, stop_event):
        mock_store.find.return_value = [{'_id': 'no-time'}]
        extractor = IncrementalExtractor(make_config(), mock_store, stop_event=stop_event, clock=clock)

        assert extractor.poll() == []
        clock.advance(60_000)
        assert extractor.poll() == []
        assert extractor.last_processed_ts == 0
