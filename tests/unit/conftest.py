"""
Shared fixtures for unit tests.
"""

from __future__ import annotations

import io
import json
import os
import threading
import uuid
from typing import Any, Callable, Sequence
from unittest.mock import MagicMock

import pytest

# hvac_loader.app reads its configuration and creates boto3 clients at import
# time, so the environment has to be in place before test modules are collected.
os.environ.setdefault("TARGET_TABLE_NAME", "hvac-readings-test")
os.environ.setdefault("SERVICE_NAME", "hvac-loader-test")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "eu-west-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "true")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "HvacLoaderTest")

from hvac_loader.exceptions import SinkError  # noqa: E402
from hvac_loader.schemas import SensorReading  # noqa: E402


def reading_dict(timestamp: str = "2024-01-15T00:00:00Z", **fields: Any) -> dict[str, Any]:
    """A realistic source element, in the source's camelCase field names."""
    element = {
        "timestamp": timestamp,
        "internalTemperature": 21.5,
        "setPointTemperature": 22.0,
        "systemStatus": "COOLING",
        "occupancyStatus": True,
        "powerConsumptionKwh": 3.2,
        "outdoorTemperature": 29.1,
        "outdoorHumidity": 61.0,
        "deviceId": "ahu-01",
    }
    element.update(fields)
    return element


def array_stream(elements: Sequence[Any]) -> io.BytesIO:
    """Newline-free JSON array, exactly as the producer writes it."""
    return io.BytesIO(json.dumps(list(elements), separators=(",", ":")).encode("utf-8"))


class RecordingSink:
    """Thread-safe sink double that remembers every insert."""

    def __init__(self, fail_partitions: set[str] | None = None):
        self.calls: list[tuple[str, tuple[SensorReading, ...]]] = []
        self._fail_partitions = fail_partitions or set()
        self._lock = threading.Lock()

    def insert(self, partition_id: str, records: Sequence[SensorReading]) -> None:
        with self._lock:
            self.calls.append((partition_id, tuple(records)))
        if partition_id in self._fail_partitions:
            raise SinkError(partition_id, "simulated outage")

    @property
    def batch_sizes(self) -> list[int]:
        return [len(records) for _, records in self.calls]

    @property
    def partitions(self) -> set[str]:
        return {partition_id for partition_id, _ in self.calls}


@pytest.fixture
def make_reading() -> Callable[..., SensorReading]:
    """Factory for SensorReading models."""

    def _make(timestamp: str = "2024-01-15T00:00:00Z", **fields: Any) -> SensorReading:
        return SensorReading.model_validate_json(json.dumps(reading_dict(timestamp, **fields)))

    return _make


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def lambda_context() -> MagicMock:
    """A stand-in for the LambdaContext object with plenty of time left."""
    context = MagicMock()
    context.function_name = "hvac-loader-test"
    context.function_version = "$LATEST"
    context.memory_limit_in_mb = 512
    context.invoked_function_arn = "arn:aws:lambda:eu-west-1:000000000000:function:hvac-loader-test"
    context.aws_request_id = "req-" + uuid.uuid4().hex
    context.get_remaining_time_in_millis.return_value = 300_000
    return context
