# src/hvac_loader/sinks.py

"""
Storage sinks for partition batches.

`DynamoDBSink` is the document store: one table, with the monthly partition
id as hash key and a per-reading key as range key. `WriteBackSink` wraps any
other sink and, once the run is over, publishes every partition it saw as a
pretty-printed JSON array in S3.

Both are called concurrently from the dispatcher's worker threads. boto3
clients are thread safe; boto3 resources are not, so only clients are used.
"""

import decimal
import logging
import random
import threading
import time
from typing import TYPE_CHECKING, Any, Sequence

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError, EndpointConnectionError, ReadTimeoutError

from .clients import S3Client
from .dispatcher import StorageSink
from .exceptions import SinkError, TransportError
from .schemas import SensorReading, render_partition_document

if TYPE_CHECKING:
    from mypy_boto3_dynamodb.client import DynamoDBClient as DynamoDBClientType

logger = logging.getLogger(__name__)

# Hard limit of the BatchWriteItem API.
MAX_BATCH_WRITE_ITEMS = 25


class DynamoDBSink:
    """Inserts readings into a single DynamoDB table via BatchWriteItem."""

    def __init__(
        self,
        dynamodb_client: "DynamoDBClientType",
        table_name: str,
        max_unprocessed_attempts: int = 3,
        backoff_base_seconds: float = 0.05,
        backoff_max_seconds: float = 2.0,
    ):
        if max_unprocessed_attempts <= 0:
            raise ValueError("max_unprocessed_attempts must be a positive integer.")
        self._client = dynamodb_client
        self._table_name = table_name
        self._max_attempts = max_unprocessed_attempts
        self._backoff_base = backoff_base_seconds
        self._backoff_max = backoff_max_seconds
        self._serializer = TypeSerializer()

    @property
    def table_name(self) -> str:
        return self._table_name

    def insert(self, partition_id: str, records: Sequence[SensorReading]) -> None:
        requests = self._build_requests(partition_id, records)
        for start in range(0, len(requests), MAX_BATCH_WRITE_ITEMS):
            self._write_chunk(partition_id, requests[start : start + MAX_BATCH_WRITE_ITEMS])
        logger.debug(
            "Batch written to DynamoDB",
            extra={
                "table": self._table_name,
                "partition_id": partition_id,
                "items": len(requests),
            },
        )

    def _build_requests(
        self, partition_id: str, records: Sequence[SensorReading]
    ) -> list[dict[str, Any]]:
        # BatchWriteItem rejects a request that names the same key twice.
        # Identical readings share a key, so keep only the last of each.
        by_key: dict[str, dict[str, Any]] = {}
        for record in records:
            item = record.to_item(partition_id)
            by_key[item["reading_key"]] = {
                "PutRequest": {
                    "Item": {
                        name: self._serialize_attribute(item["reading_key"], name, value)
                        for name, value in item.items()
                    }
                }
            }
        return list(by_key.values())

    def _serialize_attribute(self, reading_key: str, name: str, value: Any) -> dict[str, Any]:
        try:
            return self._serializer.serialize(value)
        except decimal.DecimalException:
            # Outside the DynamoDB number range (roughly 1E-130 to 1E+126, 38
            # digits). Stored as its decimal string so the reading is kept.
            logger.warning(
                "Number out of DynamoDB range, storing it as a string",
                extra={"reading_key": reading_key, "attribute": name, "value": str(value)},
            )
            return {"S": str(value)}

    def _backoff_delay(self, attempt: int) -> float:
        """Full-jitter exponential backoff for the given (1-based) attempt."""
        ceiling = min(self._backoff_max, self._backoff_base * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)

    def _write_chunk(self, partition_id: str, chunk: list[dict[str, Any]]) -> None:
        pending = chunk
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = self._client.batch_write_item(
                    RequestItems={self._table_name: pending}
                )
            except ClientError as e:
                error = e.response.get("Error", {})
                raise SinkError(
                    partition_id,
                    error.get("Message", str(e)),
                    context={
                        "table": self._table_name,
                        "aws_error_code": error.get("Code"),
                    },
                ) from e
            except (ReadTimeoutError, EndpointConnectionError) as e:
                raise SinkError(
                    partition_id,
                    f"connection problem: {e}",
                    error_code="SINK_CONNECTION_ERROR",
                    context={"table": self._table_name},
                ) from e

            pending = response.get("UnprocessedItems", {}).get(self._table_name, [])
            if not pending:
                return
            logger.warning(
                "DynamoDB left items unprocessed",
                extra={
                    "table": self._table_name,
                    "partition_id": partition_id,
                    "unprocessed": len(pending),
                    "attempt": attempt,
                },
            )
            # Unprocessed items mean the table is throttling; back off first.
            if attempt < self._max_attempts:
                time.sleep(self._backoff_delay(attempt))

        raise SinkError(
            partition_id,
            f"{len(pending)} items still unprocessed after {self._max_attempts} attempts",
            error_code="SINK_UNPROCESSED_ITEMS",
            context={"table": self._table_name, "unprocessed": len(pending)},
        )


class WriteBackSink:
    """
    Passes batches through to *sink* and remembers what was inserted, so that
    `publish()` can write ``<prefix>/<partition_id>.json`` for every partition.

    Holds every inserted reading until `publish()` is called, so memory grows
    with the size of the run.
    """

    def __init__(
        self,
        sink: StorageSink,
        s3_client: S3Client,
        bucket: str,
        prefix: str = "output",
    ):
        self._sink = sink
        self._s3_client = s3_client
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._partitions: dict[str, list[SensorReading]] = {}
        self._lock = threading.Lock()

    def insert(self, partition_id: str, records: Sequence[SensorReading]) -> None:
        self._sink.insert(partition_id, records)
        with self._lock:
            self._partitions.setdefault(partition_id, []).extend(records)

    def object_key(self, partition_id: str) -> str:
        return f"{self._prefix}/{partition_id}.json"

    def publish(self) -> list[str]:
        """
        Upload one document per partition; returns the keys written.

        Every partition is attempted. Partitions whose upload failed are kept
        for the next `publish()` and reported in a single `TransportError`
        raised after the others were written.
        """
        with self._lock:
            partitions, self._partitions = self._partitions, {}

        written: list[str] = []
        failed: dict[str, TransportError] = {}
        for partition_id in sorted(partitions):
            key = self.object_key(partition_id)
            try:
                self._s3_client.put_json_object(
                    self._bucket, key, render_partition_document(partitions[partition_id])
                )
            except TransportError as e:
                logger.error(
                    f"Failed to publish partition document: {e}",
                    extra={"bucket": self._bucket, "key": key, "error_code": e.error_code},
                )
                failed[partition_id] = e
                continue
            written.append(key)

        failed_keys = [self.object_key(p) for p in sorted(failed)]
        if failed:
            with self._lock:
                for partition_id in failed:
                    restored = partitions[partition_id] + self._partitions.get(partition_id, [])
                    self._partitions[partition_id] = restored

        logger.info(
            "Published partition documents",
            extra={
                "bucket": self._bucket,
                "keys": written,
                "failed_keys": failed_keys,
            },
        )
        if failed:
            raise TransportError(
                f"{len(failed)} of {len(partitions)} partition documents could not be written",
                error_code="WRITE_BACK_INCOMPLETE",
                context={
                    "bucket": self._bucket,
                    "written_keys": written,
                    "failed_keys": failed_keys,
                },
            )
        return written
