# src/hvac_loader/batching.py

"""
Monthly partitioning and batch accumulation for decoded readings.

Readings are routed to a per-partition buffer keyed by calendar month. A
buffer that reaches the batch threshold is detached and handed to the
dispatch callback straight away; whatever is left is handed over by
`flush()` once the source is exhausted.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from .schemas import SensorReading

logger = logging.getLogger(__name__)

DEFAULT_PARTITION_PREFIX = "hvac_readings"
DEFAULT_BATCH_SIZE = 1000


def partition_id_for(timestamp: datetime, prefix: str = DEFAULT_PARTITION_PREFIX) -> str:
    """
    Monthly partition identifier, e.g. ``hvac_readings_2024_07``.

    Uses the calendar year and month in whatever zone the timestamp already
    carries; no conversion to UTC is made.
    """
    return f"{prefix}_{timestamp.year:04d}_{timestamp.month:02d}"


@dataclass(frozen=True, slots=True)
class PartitionBatch:
    """An ordered, non-empty group of readings bound for one partition."""

    partition_id: str
    records: tuple[SensorReading, ...]
    final: bool = False

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("A PartitionBatch must contain at least one record.")

    def __len__(self) -> int:
        return len(self.records)


class PartitionAccumulator:
    """Routes readings into per-partition buffers and emits bounded batches."""

    def __init__(
        self,
        dispatch: Callable[[PartitionBatch], None],
        batch_size: int = DEFAULT_BATCH_SIZE,
        partition_prefix: str = DEFAULT_PARTITION_PREFIX,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be a positive integer.")
        self._dispatch = dispatch
        self._batch_size = batch_size
        self._prefix = partition_prefix
        self._buffers: dict[str, list[SensorReading]] = {}

    @property
    def pending_count(self) -> int:
        """Readings buffered but not yet handed to the dispatcher."""
        return sum(len(buffer) for buffer in self._buffers.values())

    @property
    def pending_partitions(self) -> list[str]:
        return list(self._buffers)

    def append(self, record: SensorReading) -> PartitionBatch | None:
        """
        Buffer *record*; returns the batch that was dispatched if this record
        filled its partition's buffer, else None.
        """
        partition_id = partition_id_for(record.timestamp, self._prefix)
        buffer = self._buffers.setdefault(partition_id, [])
        buffer.append(record)
        if len(buffer) < self._batch_size:
            return None

        del self._buffers[partition_id]
        batch = PartitionBatch(partition_id=partition_id, records=tuple(buffer))
        logger.debug(
            "Partition buffer full, dispatching batch.",
            extra={"partition_id": partition_id, "batch_size": len(batch)},
        )
        self._dispatch(batch)
        return batch

    def flush(self) -> list[PartitionBatch]:
        """Dispatch every remaining non-empty buffer as a final batch."""
        buffers, self._buffers = self._buffers, {}
        batches = [
            PartitionBatch(partition_id=partition_id, records=tuple(buffer), final=True)
            for partition_id, buffer in buffers.items()
            if buffer
        ]
        for batch in batches:
            logger.debug(
                "Dispatching final batch.",
                extra={"partition_id": batch.partition_id, "batch_size": len(batch)},
            )
            self._dispatch(batch)
        return batches
