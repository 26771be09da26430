# In src/hvac_loader/schemas.py

import hashlib
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, NamedTuple
from urllib.parse import unquote_plus

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel


# --- Sensor readings ---


class SensorReading(BaseModel):
    """
    One HVAC sensor reading decoded from the source array.

    Only structure is validated: implausible values (negative pressure,
    humidity above 100%) are accepted as-is. Missing optional fields take the
    zero value of their type and unknown fields are ignored.

    Validation is strict, so every field must carry its own JSON type: a
    quoted number, a ``1`` for a boolean or an epoch number for the
    timestamp makes the element invalid.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        strict=True,
        frozen=True,
        extra="ignore",
        allow_inf_nan=False,
    )

    timestamp: datetime

    # Measurements
    internal_temperature: float = 0.0
    set_point_temperature: float = 0.0
    outdoor_temperature: float = 0.0
    outdoor_humidity: float = 0.0
    supply_air_pressure: float = 0.0
    return_air_pressure: float = 0.0
    power_consumption_kwh: float = 0.0
    co2_ppm: float = 0.0

    # Status and metadata
    system_status: str = ""
    fault_code: str = ""
    device_id: str = ""
    asset_id: str = ""
    building: str = ""
    floor: str = ""
    zone: str = ""
    occupancy_status: bool = False

    def content_digest(self) -> str:
        """Short, stable digest of the reading's full content."""
        return hashlib.sha256(self.model_dump_json().encode("utf-8")).hexdigest()[:16]

    def reading_key(self) -> str:
        return f"{self.timestamp.isoformat()}#{self.device_id}#{self.content_digest()}"

    def to_item(self, partition_id: str) -> dict[str, Any]:
        """
        Plain document for the storage sink. Floats become Decimal, which is
        what boto3's DynamoDB serializer requires.
        """
        item = json.loads(self.model_dump_json(), parse_float=Decimal)
        item["partition_id"] = partition_id
        item["reading_key"] = self.reading_key()
        return item


_READINGS_ADAPTER = TypeAdapter(list[SensorReading])


def render_partition_document(records: list[SensorReading]) -> bytes:
    """Pretty-printed JSON array of *records*, using the source field names."""
    return _READINGS_ADAPTER.dump_json(records, indent=2, by_alias=True)


# --- Invocation events ---


class ObjectLocation(NamedTuple):
    bucket: str
    key: str

    def __str__(self) -> str:
        return f"s3://{self.bucket}/{self.key}"


class S3BucketModel(BaseModel):
    name: str = Field(..., min_length=1)


class S3ObjectModel(BaseModel):
    key: str = Field(..., min_length=1)
    size: int | None = None
    version_id: str | None = Field(None, alias="versionId")

    # S3 event notifications carry URL-encoded keys ("+" for spaces).
    @field_validator("key")
    @classmethod
    def decode_object_key(cls, value: str) -> str:
        decoded = unquote_plus(value)
        if not decoded:
            raise ValueError("Object key decodes to an empty string.")
        return decoded


class S3DataModel(BaseModel):
    bucket: S3BucketModel
    object: S3ObjectModel


class S3EventNotificationRecord(BaseModel):
    """
    Pydantic model for runtime parsing and validation of an S3 event record.
    """

    s3: S3DataModel
    event_name: str | None = Field(None, alias="eventName")

    @property
    def location(self) -> ObjectLocation:
        return ObjectLocation(self.s3.bucket.name, self.s3.object.key)


class S3EventNotification(BaseModel):
    """The body of an S3 event notification, delivered directly or via SQS."""

    records: list[S3EventNotificationRecord] = Field(default_factory=list, alias="Records")
