# src/hvac_loader/core.py

"""
Core ingestion logic for the HVAC Loader service.

`IngestionService.ingest` loads one source object end to end:

1.  Open the object as a stream.
2.  Check that it starts with ``[``.
3.  Decode elements one at a time, routing each reading to its monthly
    partition buffer; full buffers are dispatched to the sink right away.
4.  Flush the remaining partial buffers.
5.  Wait for every dispatched batch to finish.
6.  Check that the array was closed with ``]``.
7.  Report a single outcome: success, the first batch failure, or the
    stream/envelope failure.

Batches already inserted stay inserted whatever the final outcome is (a
truncated file still loads everything before the truncation). Callers that
need all-or-nothing semantics must re-drive the whole object.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import closing
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional, Protocol

from .batching import PartitionAccumulator, PartitionBatch
from .cancellation import CancellationToken
from .config import PipelineSettings
from .decoder import SkippedRecord, StreamingArrayDecoder
from .dispatcher import BatchDispatcher, ErrorSlot, StorageSink
from .exceptions import (
    HvacLoaderError,
    IngestionCancelledError,
    MalformedEnvelopeError,
    TransportError,
    get_error_context,
)

logger = logging.getLogger(__name__)


class ObjectSource(Protocol):
    def open_object_stream(self, bucket: str, key: str) -> BinaryIO: ...


@dataclass
class IngestionOutcome:
    """Terminal result of ingesting one source object."""

    bucket: str
    key: str
    processed_count: int = 0
    skipped_count: int = 0
    batches_dispatched: int = 0
    batches_failed: int = 0
    records_inserted: int = 0
    partitions: list[str] = field(default_factory=list)
    error: Optional[HvacLoaderError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict[str, Any]:
        return {
            "bucket": self.bucket,
            "key": self.key,
            "succeeded": self.succeeded,
            "processed_count": self.processed_count,
            "skipped_count": self.skipped_count,
            "batches_dispatched": self.batches_dispatched,
            "batches_failed": self.batches_failed,
            "records_inserted": self.records_inserted,
            "partitions": list(self.partitions),
            "error": get_error_context(self.error) if self.error else None,
        }


class IngestionService:
    """Streams JSON arrays of readings from an object store into a sink."""

    def __init__(
        self,
        source: ObjectSource,
        sink: StorageSink,
        settings: Optional[PipelineSettings] = None,
    ):
        self._source = source
        self._sink = sink
        self._settings = settings or PipelineSettings()

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    def ingest(
        self, bucket: str, key: str, token: Optional[CancellationToken] = None
    ) -> IngestionOutcome:
        token = token or CancellationToken()
        outcome = IngestionOutcome(bucket=bucket, key=key)
        log_extra = {"bucket": bucket, "key": key}
        logger.info("Starting ingestion", extra=log_extra)

        try:
            stream = self._source.open_object_stream(bucket, key)
        except TransportError as e:
            logger.error(f"Could not open source object: {e}", extra=log_extra)
            outcome.error = e
            return outcome

        with closing(stream):
            stream_error = self._run_pipeline(stream, token, outcome)

        dispatch_error = outcome.error
        outcome.error = dispatch_error or stream_error

        if outcome.succeeded:
            logger.info(
                "Ingestion completed",
                extra={**log_extra, **self._summary(outcome)},
            )
        else:
            logger.error(
                f"Ingestion failed: {outcome.error}",
                extra={
                    **log_extra,
                    **self._summary(outcome),
                    "error_type": type(outcome.error).__name__,
                    "error_code": outcome.error.error_code,
                },
            )
        return outcome

    def _run_pipeline(
        self,
        stream: BinaryIO,
        token: CancellationToken,
        outcome: IngestionOutcome,
    ) -> Optional[HvacLoaderError]:
        """
        Drive decoding, accumulation and dispatch for one open stream. The
        first dispatch error (if any) is stored on *outcome*; a stream or
        envelope failure is returned.
        """
        settings = self._settings
        decoder = StreamingArrayDecoder(
            stream, chunk_size=settings.read_chunk_size_bytes, token=token
        )

        try:
            decoder.open_envelope()
        except (MalformedEnvelopeError, TransportError, IngestionCancelledError) as e:
            return e

        stream_error: Optional[HvacLoaderError] = None
        with ThreadPoolExecutor(
            max_workers=settings.max_concurrent_batches,
            thread_name_prefix="batch-dispatch",
        ) as executor:
            dispatcher = BatchDispatcher(
                self._sink,
                executor,
                error_slot=ErrorSlot(settings.error_slot_capacity),
                token=token,
            )
            partitions: set[str] = set()

            def dispatch(batch: PartitionBatch) -> None:
                partitions.add(batch.partition_id)
                dispatcher.dispatch(batch)

            accumulator = PartitionAccumulator(
                dispatch,
                batch_size=settings.batch_size,
                partition_prefix=settings.partition_prefix,
            )

            try:
                for item in decoder.records():
                    if isinstance(item, SkippedRecord):
                        outcome.skipped_count += 1
                        logger.warning(
                            "Skipping malformed array element",
                            extra={"element_index": item.index, "reason": item.reason},
                        )
                        continue
                    outcome.processed_count += 1
                    accumulator.append(item)
                accumulator.flush()
            except (TransportError, IngestionCancelledError) as e:
                stream_error = e
                logger.warning(
                    f"Stream aborted, discarding {accumulator.pending_count} buffered records: {e}",
                    extra={"pending_partitions": accumulator.pending_partitions},
                )
            finally:
                dispatcher.drain()

            outcome.batches_dispatched = dispatcher.batches_dispatched
            outcome.batches_failed = dispatcher.batches_failed
            outcome.records_inserted = dispatcher.records_inserted
            outcome.partitions = sorted(partitions)
            outcome.error = dispatcher.first_error
            if dispatcher.errors_dropped:
                logger.warning(
                    "Some batch errors were not retained",
                    extra={"errors_dropped": dispatcher.errors_dropped},
                )

        if stream_error is not None:
            return stream_error

        try:
            decoder.close_envelope()
        except MalformedEnvelopeError as e:
            return e
        return None

    @staticmethod
    def _summary(outcome: IngestionOutcome) -> dict[str, Any]:
        return {
            "processed_count": outcome.processed_count,
            "skipped_count": outcome.skipped_count,
            "batches_dispatched": outcome.batches_dispatched,
            "batches_failed": outcome.batches_failed,
            "partitions": outcome.partitions,
        }
