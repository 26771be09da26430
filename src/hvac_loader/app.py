"""
The Lambda Adapter for the HVAC Loader service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer, Metrics).
2.  Parsing S3 event notifications, delivered either directly by S3 or wrapped
    in SQS messages.
3.  Running the ingestion pipeline for every referenced object. A failing
    object is logged and never stops the remaining ones.
4.  Publishing the optional per-partition write-back documents.
5.  Reporting failed objects back to SQS as partial batch failures, so that
    only their messages are re-driven.
"""

from typing import Any, cast

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch.types import (
    PartialItemFailures,
    PartialItemFailureResponse,
)
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.client import Config as BotocoreConfig

from .cancellation import CancellationToken
from .clients import S3Client
from .config import get_config
from .core import IngestionOutcome, IngestionService
from .exceptions import TransportError, get_error_context, is_retryable_error
from .schemas import ObjectLocation, S3EventNotification
from .sinks import DynamoDBSink, WriteBackSink

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="HvacLoader",
    service=CONFIG.service_name,
)

# Every dispatch worker may hold a connection at the same time.
_boto_config = BotocoreConfig(max_pool_connections=max(10, CONFIG.max_concurrent_batches))

s3_client = S3Client(s3_client=boto3.client("s3", config=_boto_config))
dynamodb_sink = DynamoDBSink(
    dynamodb_client=boto3.client("dynamodb", config=_boto_config),
    table_name=CONFIG.target_table,
)


def build_partial_failure_response(
    failed_message_ids: set[str],
) -> PartialItemFailureResponse:
    """
    Given a set of SQS message IDs, return the structure that the
    Lambda partial batch response API expects.
    """
    failures = [
        cast(PartialItemFailures, {"itemIdentifier": mid})
        for mid in sorted(failed_message_ids)
    ]
    return cast(PartialItemFailureResponse, {"batchItemFailures": failures})


def _collect_targets(
    records: list[dict[str, Any]],
) -> tuple[list[tuple[ObjectLocation, str | None]], set[str]]:
    """
    Turn the raw event records into (object, sqs message id) pairs. SQS
    messages that cannot be parsed are returned as failed message IDs.
    """
    targets: list[tuple[ObjectLocation, str | None]] = []
    failed_message_ids: set[str] = set()

    for record in records:
        message_id: str | None = None
        try:
            if record.get("eventSource") == "aws:sqs":
                message_id = record["messageId"]
                notification = S3EventNotification.model_validate_json(record["body"])
            else:
                notification = S3EventNotification.model_validate({"Records": [record]})
        except (KeyError, pydantic.ValidationError) as e:
            logger.warning(
                "Failed to parse event record.",
                extra={"messageId": message_id, "error": str(e)},
            )
            metrics.add_metric(name="InvalidEventRecords", unit=MetricUnit.Count, value=1)
            if message_id:
                failed_message_ids.add(message_id)
            continue

        if not notification.records:
            # e.g. the s3:TestEvent sent when a notification is configured
            logger.info("Event record carries no S3 objects.", extra={"messageId": message_id})
            continue

        for s3_record in notification.records:
            targets.append((s3_record.location, message_id))

    return targets, failed_message_ids


def _build_service() -> tuple[IngestionService, WriteBackSink | None]:
    write_back = None
    sink = dynamodb_sink
    if CONFIG.write_back_enabled:
        write_back = WriteBackSink(
            dynamodb_sink,
            s3_client,
            bucket=cast(str, CONFIG.write_back_bucket),
            prefix=CONFIG.write_back_prefix,
        )
        sink = write_back
    return IngestionService(s3_client, sink, CONFIG.pipeline_settings), write_back


def _record_outcome_metrics(outcome: IngestionOutcome) -> None:
    metrics.add_metric(name="ProcessedRecords", unit=MetricUnit.Count, value=outcome.processed_count)
    metrics.add_metric(name="SkippedRecords", unit=MetricUnit.Count, value=outcome.skipped_count)
    metrics.add_metric(name="BatchesDispatched", unit=MetricUnit.Count, value=outcome.batches_dispatched)
    if outcome.batches_failed:
        metrics.add_metric(name="FailedBatches", unit=MetricUnit.Count, value=outcome.batches_failed)
    metrics.add_metric(
        name="IngestedObjects" if outcome.succeeded else "FailedObjects",
        unit=MetricUnit.Count,
        value=1,
    )


@tracer.capture_method
def _ingest_object(
    service: IngestionService, location: ObjectLocation, context: LambdaContext
) -> IngestionOutcome | None:
    token = CancellationToken.from_lambda_context(context, CONFIG.timeout_guard_threshold_ms)
    try:
        outcome = service.ingest(location.bucket, location.key, token=token)
    except Exception as e:
        metrics.add_metric(name="UnexpectedObjectErrors", unit=MetricUnit.Count, value=1)
        logger.exception(
            "Unexpected error ingesting object.",
            extra={"object": str(location), "error_type": type(e).__name__},
        )
        return None

    _record_outcome_metrics(outcome)
    if not outcome.succeeded:
        error_details = get_error_context(outcome.error)
        logger.error(
            "Object ingestion failed",
            extra={
                "object": str(location),
                "error_type": error_details["error_type"],
                "error_code": error_details.get("error_code"),
                "retryable": is_retryable_error(outcome.error),
                "processed_count": outcome.processed_count,
            },
        )
    return outcome


def _publish_write_back(write_back: WriteBackSink) -> None:
    try:
        written = write_back.publish()
    except TransportError as e:
        metrics.add_metric(name="WriteBackErrors", unit=MetricUnit.Count, value=1)
        logger.error(
            f"Write-back publication failed: {e}",
            extra={"error_code": e.error_code, "failed_keys": e.context.get("failed_keys")},
        )
        written = e.context.get("written_keys", [])
        if written:
            metrics.add_metric(name="WriteBackObjects", unit=MetricUnit.Count, value=len(written))
        return
    metrics.add_metric(name="WriteBackObjects", unit=MetricUnit.Count, value=len(written))


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """Main Lambda handler for S3 and SQS-wrapped S3 events."""
    metrics.add_dimension("environment", CONFIG.environment)

    records: list[dict[str, Any]] = event.get("Records", [])
    if not records:
        logger.warning("Event did not contain any records. Exiting gracefully.")
        return {"batchItemFailures": []}

    from_sqs = any(record.get("eventSource") == "aws:sqs" for record in records)
    targets, failed_message_ids = _collect_targets(records)

    logger.info(
        "Starting ingestion batch",
        extra={
            "event_records": len(records),
            "objects": [str(location) for location, _ in targets],
            "request_id": context.aws_request_id,
        },
    )

    service, write_back = _build_service()
    summaries: list[dict[str, Any]] = []
    for location, message_id in targets:
        outcome = _ingest_object(service, location, context)
        if outcome is None or not outcome.succeeded:
            if message_id:
                failed_message_ids.add(message_id)
        summaries.append(
            outcome.to_dict()
            if outcome is not None
            else {"bucket": location.bucket, "key": location.key, "succeeded": False}
        )

    if write_back is not None:
        _publish_write_back(write_back)

    failed_objects = sum(1 for summary in summaries if not summary["succeeded"])
    logger.info(
        "Ingestion batch finished",
        extra={"objects": len(summaries), "failed_objects": failed_objects},
    )

    if from_sqs:
        return build_partial_failure_response(failed_message_ids)
    return {"objects": summaries}
