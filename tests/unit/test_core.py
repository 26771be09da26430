# tests/unit/test_core.py

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import NoCredentialsError

from conftest import RecordingSink, array_stream, reading_dict
from hvac_loader.cancellation import CancellationToken
from hvac_loader.clients import S3Client
from hvac_loader.config import PipelineSettings
from hvac_loader.core import IngestionOutcome, IngestionService
from hvac_loader.exceptions import (
    IngestionCancelledError,
    MalformedEnvelopeError,
    S3ObjectNotFoundError,
    S3TimeoutError,
    SinkError,
    TransportError,
)


class FailingStream(io.BytesIO):
    """BytesIO that raises a transport error once *fail_after* bytes were served."""

    def __init__(self, data: bytes, fail_after: int):
        super().__init__(data)
        self._fail_after = fail_after

    def read(self, size=-1):
        if self.tell() >= self._fail_after:
            raise S3TimeoutError("GetObject.Body.read", error_code="S3_READ_TIMEOUT")
        return super().read(size)


@pytest.fixture
def mock_source() -> MagicMock:
    return MagicMock()


def make_service(source, sink, **settings) -> IngestionService:
    return IngestionService(source, sink, PipelineSettings(**settings))


# --- Happy paths ---


def test_two_months_are_flushed_as_two_batches(mock_source, recording_sink):
    """Two readings in different months end up as one final batch each."""
    # ARRANGE
    mock_source.open_object_stream.return_value = array_stream(
        [reading_dict("2024-01-15T00:00:00Z"), reading_dict("2024-02-01T00:00:00Z")]
    )
    service = make_service(mock_source, recording_sink)

    # ACT
    outcome = service.ingest("raw-bucket", "2024/readings.json")

    # ASSERT
    mock_source.open_object_stream.assert_called_once_with("raw-bucket", "2024/readings.json")
    assert outcome.succeeded
    assert outcome.processed_count == 2
    assert outcome.skipped_count == 0
    assert recording_sink.partitions == {"hvac_readings_2024_01", "hvac_readings_2024_02"}
    assert recording_sink.batch_sizes == [1, 1]
    assert outcome.partitions == ["hvac_readings_2024_01", "hvac_readings_2024_02"]
    assert outcome.records_inserted == 2


def test_empty_array_succeeds_without_inserts(mock_source, recording_sink):
    mock_source.open_object_stream.return_value = io.BytesIO(b"[]")

    outcome = make_service(mock_source, recording_sink).ingest("b", "k")

    assert outcome.succeeded
    assert outcome.processed_count == 0
    assert recording_sink.calls == []


def test_large_partition_is_split_at_threshold(mock_source, recording_sink):
    elements = [reading_dict("2024-03-05T00:00:00Z", deviceId=f"dev-{i}") for i in range(2500)]
    mock_source.open_object_stream.return_value = array_stream(elements)

    outcome = make_service(mock_source, recording_sink, batch_size=1000).ingest("b", "k")

    assert outcome.succeeded
    assert outcome.processed_count == 2500
    assert sorted(recording_sink.batch_sizes) == [500, 1000, 1000]
    assert outcome.batches_dispatched == 3
    inserted = [r.device_id for _, records in recording_sink.calls for r in records]
    assert sorted(inserted) == sorted(f"dev-{i}" for i in range(2500))


def test_custom_partition_prefix(mock_source, recording_sink):
    mock_source.open_object_stream.return_value = array_stream([reading_dict()])

    make_service(mock_source, recording_sink, partition_prefix="site_a").ingest("b", "k")

    assert recording_sink.partitions == {"site_a_2024_01"}


def test_stream_is_closed_after_ingestion(mock_source, recording_sink):
    stream = array_stream([reading_dict()])
    mock_source.open_object_stream.return_value = stream

    make_service(mock_source, recording_sink).ingest("b", "k")

    assert stream.closed


# --- Skipped records ---


def test_invalid_element_is_skipped_and_counted(mock_source, recording_sink):
    raw = (
        b"["
        + array_stream([reading_dict(deviceId="a")]).getvalue()[1:-1]
        + b',{"timestamp":"yesterday"},'
        + array_stream([reading_dict(deviceId="b")]).getvalue()[1:-1]
        + b"]"
    )
    mock_source.open_object_stream.return_value = io.BytesIO(raw)

    outcome = make_service(mock_source, recording_sink).ingest("b", "k")

    assert outcome.succeeded
    assert outcome.processed_count == 2
    assert outcome.skipped_count == 1
    assert recording_sink.batch_sizes == [2]


# --- Envelope failures ---


def test_missing_open_bracket_fails_before_any_dispatch(mock_source, recording_sink):
    mock_source.open_object_stream.return_value = io.BytesIO(b'{"timestamp": "x"}')

    outcome = make_service(mock_source, recording_sink).ingest("b", "k")

    assert isinstance(outcome.error, MalformedEnvelopeError)
    assert recording_sink.calls == []
    assert outcome.processed_count == 0


def test_truncated_array_dispatches_then_fails(mock_source, recording_sink):
    """Everything before the truncation is still inserted."""
    raw = array_stream([reading_dict(deviceId="a"), reading_dict(deviceId="b")]).getvalue()[:-1]
    mock_source.open_object_stream.return_value = io.BytesIO(raw)

    outcome = make_service(mock_source, recording_sink).ingest("b", "k")

    assert not outcome.succeeded
    assert isinstance(outcome.error, MalformedEnvelopeError)
    assert outcome.processed_count == 2
    assert recording_sink.batch_sizes == [2]
    with pytest.raises(MalformedEnvelopeError):
        outcome.raise_for_error()


# --- Sink failures ---


def test_sink_failure_fails_the_outcome(mock_source):
    sink = RecordingSink(fail_partitions={"hvac_readings_2024_02"})
    mock_source.open_object_stream.return_value = array_stream(
        [reading_dict("2024-01-15T00:00:00Z"), reading_dict("2024-02-01T00:00:00Z")]
    )

    outcome = make_service(mock_source, sink).ingest("b", "k")

    assert isinstance(outcome.error, SinkError)
    assert outcome.error.partition_id == "hvac_readings_2024_02"
    # The other partition is attempted regardless.
    assert sink.partitions == {"hvac_readings_2024_01", "hvac_readings_2024_02"}
    assert outcome.batches_failed == 1
    assert outcome.records_inserted == 1


def test_sink_error_takes_priority_over_envelope_error(mock_source):
    sink = RecordingSink(fail_partitions={"hvac_readings_2024_01"})
    raw = array_stream([reading_dict()]).getvalue()[:-1]
    mock_source.open_object_stream.return_value = io.BytesIO(raw)

    outcome = make_service(mock_source, sink).ingest("b", "k")

    assert isinstance(outcome.error, SinkError)


# --- Transport and cancellation ---


def test_open_failure_is_reported_without_dispatch(mock_source, recording_sink):
    mock_source.open_object_stream.side_effect = S3ObjectNotFoundError("b", "missing.json")

    outcome = make_service(mock_source, recording_sink).ingest("b", "missing.json")

    assert isinstance(outcome.error, S3ObjectNotFoundError)
    assert outcome.to_dict()["error"]["error_code"] == "S3_OBJECT_NOT_FOUND"
    assert recording_sink.calls == []


def test_botocore_failure_on_open_becomes_a_failed_outcome(recording_sink):
    boto_s3 = MagicMock()
    boto_s3.get_object.side_effect = NoCredentialsError()

    outcome = make_service(S3Client(boto_s3), recording_sink).ingest("b", "k")

    assert isinstance(outcome.error, TransportError)
    assert outcome.error.error_code == "S3_CLIENT_FAILURE"
    assert not outcome.succeeded
    assert recording_sink.calls == []


def test_read_failure_mid_stream_drains_and_reports(mock_source, recording_sink):
    elements = [reading_dict(deviceId=f"dev-{i}") for i in range(100)]
    raw = array_stream(elements).getvalue()
    mock_source.open_object_stream.return_value = FailingStream(raw, fail_after=len(raw) // 2)

    outcome = make_service(
        mock_source, recording_sink, batch_size=10, read_chunk_size_bytes=512
    ).ingest("b", "k")

    assert isinstance(outcome.error, S3TimeoutError)
    assert outcome.error.error_code == "S3_READ_TIMEOUT"
    # Full batches dispatched before the failure were inserted; the tail was discarded.
    assert all(size == 10 for size in recording_sink.batch_sizes)
    assert sum(recording_sink.batch_sizes) <= outcome.processed_count < 100
    assert outcome.batches_dispatched == len(recording_sink.calls)


def test_cancelled_token_stops_ingestion(mock_source, recording_sink):
    mock_source.open_object_stream.return_value = array_stream([reading_dict()])
    token = CancellationToken()
    token.cancel("deadline")

    outcome = make_service(mock_source, recording_sink).ingest("b", "k", token=token)

    assert isinstance(outcome.error, IngestionCancelledError)
    assert recording_sink.calls == []


def test_deadline_trips_during_ingestion(mock_source, recording_sink):
    elements = [reading_dict(deviceId=f"dev-{i}") for i in range(50)]
    mock_source.open_object_stream.return_value = array_stream(elements)
    remaining = iter([60_000, 60_000, 60_000])
    token = CancellationToken(deadline_exceeded=lambda: next(remaining, 0) < 10_000)

    outcome = make_service(mock_source, recording_sink, read_chunk_size_bytes=256).ingest(
        "b", "k", token=token
    )

    assert isinstance(outcome.error, IngestionCancelledError)
    assert outcome.processed_count < 50
    assert recording_sink.calls == []


# --- IngestionOutcome ---


def test_outcome_to_dict_on_success():
    outcome = IngestionOutcome(bucket="b", key="k", processed_count=3, partitions=["p"])
    payload = outcome.to_dict()
    assert payload["succeeded"] is True
    assert payload["error"] is None
    assert payload["processed_count"] == 3
    outcome.raise_for_error()
