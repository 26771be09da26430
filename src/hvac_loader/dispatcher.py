# src/hvac_loader/dispatcher.py

"""
Fire-and-forget dispatch of partition batches to a storage sink.

Each batch becomes one task on a thread pool. The producer never waits for a
task: it only bumps an in-flight counter, which every task decrements when it
finishes, whatever the outcome. Failures are offered to a small fixed-size
error slot; once the slot is full further errors are logged and dropped, so a
run with many failing batches cannot grow memory without bound.
"""

import logging
import threading
from concurrent.futures import Executor
from typing import Optional, Protocol, Sequence

from .batching import PartitionBatch
from .cancellation import CancellationToken
from .exceptions import HvacLoaderError, IngestionCancelledError, SinkError
from .schemas import SensorReading

logger = logging.getLogger(__name__)


class StorageSink(Protocol):
    """Anything that can durably insert a batch of readings into a partition."""

    def insert(self, partition_id: str, records: Sequence[SensorReading]) -> None: ...


class InFlightCounter:
    """Counts submitted-but-unfinished tasks; `wait_for_zero` is the drain point."""

    def __init__(self) -> None:
        self._count = 0
        self._condition = threading.Condition()

    @property
    def count(self) -> int:
        with self._condition:
            return self._count

    def increment(self) -> None:
        with self._condition:
            self._count += 1

    def decrement(self) -> None:
        with self._condition:
            if self._count == 0:
                raise RuntimeError("In-flight counter decremented below zero.")
            self._count -= 1
            if self._count == 0:
                self._condition.notify_all()

    def wait_for_zero(self, timeout: Optional[float] = None) -> bool:
        with self._condition:
            return self._condition.wait_for(lambda: self._count == 0, timeout=timeout)


class ErrorSlot:
    """Bounded, thread-safe holder for the first few dispatch errors."""

    def __init__(self, capacity: int = 1):
        if capacity <= 0:
            raise ValueError("capacity must be a positive integer.")
        self._capacity = capacity
        self._errors: list[HvacLoaderError] = []
        self._dropped = 0
        self._lock = threading.Lock()

    def offer(self, error: HvacLoaderError) -> bool:
        """Keep *error* if there is room; returns whether it was retained."""
        with self._lock:
            if len(self._errors) < self._capacity:
                self._errors.append(error)
                return True
            self._dropped += 1
            return False

    def first(self) -> Optional[HvacLoaderError]:
        """The earliest retained error."""
        with self._lock:
            return self._errors[0] if self._errors else None

    @property
    def retained(self) -> int:
        with self._lock:
            return len(self._errors)

    @property
    def dropped(self) -> int:
        with self._lock:
            return self._dropped


class BatchDispatcher:
    """Submits batches to the sink on *executor* and tracks their completion."""

    def __init__(
        self,
        sink: StorageSink,
        executor: Executor,
        error_slot: Optional[ErrorSlot] = None,
        token: Optional[CancellationToken] = None,
    ):
        self._sink = sink
        self._executor = executor
        self._errors = error_slot or ErrorSlot()
        self._token = token or CancellationToken()
        self._in_flight = InFlightCounter()
        self._stats_lock = threading.Lock()
        self.batches_dispatched = 0
        self.batches_inserted = 0
        self.batches_failed = 0
        self.records_inserted = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight.count

    @property
    def first_error(self) -> Optional[HvacLoaderError]:
        return self._errors.first()

    @property
    def errors_dropped(self) -> int:
        return self._errors.dropped

    def dispatch(self, batch: PartitionBatch) -> None:
        """Hand *batch* to a worker and return immediately."""
        self._in_flight.increment()
        try:
            self._executor.submit(self._insert, batch)
        except Exception:
            self._in_flight.decrement()
            raise
        with self._stats_lock:
            self.batches_dispatched += 1

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Block until every dispatched batch has finished."""
        drained = self._in_flight.wait_for_zero(timeout=timeout)
        if not drained:
            logger.warning(
                "Timed out waiting for in-flight batches.",
                extra={"in_flight": self._in_flight.count},
            )
        return drained

    def _insert(self, batch: PartitionBatch) -> None:
        extra = {
            "partition_id": batch.partition_id,
            "batch_size": len(batch),
            "final": batch.final,
        }
        try:
            if self._token.cancelled:
                raise IngestionCancelledError(
                    self._token.reason or "cancelled",
                    context={"partition_id": batch.partition_id},
                )
            logger.debug("Inserting batch.", extra=extra)
            self._sink.insert(batch.partition_id, batch.records)
        except HvacLoaderError as e:
            self._record_failure(e, extra)
        except Exception as e:
            self._record_failure(
                SinkError(
                    batch.partition_id,
                    f"unexpected {type(e).__name__}: {e}",
                    error_code="SINK_UNEXPECTED_ERROR",
                ),
                extra,
            )
        else:
            with self._stats_lock:
                self.batches_inserted += 1
                self.records_inserted += len(batch)
            logger.info("Batch inserted.", extra=extra)
        finally:
            self._in_flight.decrement()

    def _record_failure(self, error: HvacLoaderError, extra: dict) -> None:
        with self._stats_lock:
            self.batches_failed += 1
        retained = self._errors.offer(error)
        logger.error(
            f"Batch insert failed: {error}",
            extra={
                **extra,
                "error_type": type(error).__name__,
                "error_code": error.error_code,
                "error_retained": retained,
            },
        )
