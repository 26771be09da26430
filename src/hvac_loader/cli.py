#!/usr/bin/env python

# src/hvac_loader/cli.py

"""
Command line entry point: ingest one or more objects from a bucket.

    hvac-loader my-bucket raw/2024-07.json raw/2024-08.json --table hvac-readings

Every object is ingested independently; a failure is reported and the next
object is still processed. The exit code is 1 if any object failed.
"""

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

import boto3
from botocore.client import Config as BotocoreConfig
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .clients import S3Client
from .config import PipelineSettings
from .core import IngestionOutcome, IngestionService
from .exceptions import ConfigurationError, HvacLoaderError, TransportError
from .sinks import DynamoDBSink, WriteBackSink

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hvac-loader",
        description="Stream JSON arrays of HVAC readings from S3 into DynamoDB, partitioned by month.",
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("bucket", help="S3 bucket holding the source objects.")
    parser.add_argument("keys", nargs="+", help="One or more object keys to ingest.")
    parser.add_argument(
        "--table",
        default=os.getenv("TARGET_TABLE_NAME"),
        help="DynamoDB table for the readings (default: $TARGET_TABLE_NAME).",
    )
    parser.add_argument("--partition-prefix", default="hvac_readings", help="Partition id prefix.")
    parser.add_argument("--batch-size", type=int, default=1000, help="Records per batch.")
    parser.add_argument(
        "--concurrency", type=int, default=8, help="Batches inserted in parallel."
    )
    parser.add_argument(
        "--chunk-size-kb", type=int, default=64, help="Stream read size in KiB."
    )
    parser.add_argument(
        "--write-back-bucket",
        help="Also write output/<partition_id>.json documents to this bucket.",
    )
    parser.add_argument("--write-back-prefix", default="output", help="Key prefix for write-back.")
    parser.add_argument("--region", help="AWS region override.")
    parser.add_argument(
        "--endpoint-url", help="Endpoint override, e.g. for LocalStack or DynamoDB Local."
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser


def load_settings(args: argparse.Namespace) -> PipelineSettings:
    """Builds pipeline settings from CLI arguments."""
    if not args.table:
        raise ConfigurationError("A DynamoDB table is required: pass --table or set TARGET_TABLE_NAME.")
    return PipelineSettings(
        partition_prefix=args.partition_prefix,
        batch_size=args.batch_size,
        max_concurrent_batches=args.concurrency,
        read_chunk_size_bytes=args.chunk_size_kb * 1024,
    )


def ingest_key(service: IngestionService, bucket: str, key: str) -> IngestionOutcome:
    """Ingest one object; an unexpected error fails this object only."""
    try:
        return service.ingest(bucket, key)
    except Exception as e:
        logger.exception(f"Unexpected error ingesting s3://{bucket}/{key}")
        return IngestionOutcome(
            bucket=bucket,
            key=key,
            error=HvacLoaderError(
                f"unexpected {type(e).__name__}: {e}", error_code="UNEXPECTED_ERROR"
            ),
        )


def render_outcomes(console: Console, outcomes: list[IngestionOutcome]) -> None:
    table = Table(title="Ingestion Summary")
    table.add_column("Object", style="cyan")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Batches", justify="right")
    table.add_column("Partitions")
    table.add_column("Error", style="red")

    for outcome in outcomes:
        status = "[green]OK[/green]" if outcome.succeeded else "[bold red]FAILED[/bold red]"
        table.add_row(
            f"s3://{outcome.bucket}/{outcome.key}",
            status,
            str(outcome.processed_count),
            str(outcome.skipped_count),
            f"{outcome.batches_dispatched - outcome.batches_failed}/{outcome.batches_dispatched}",
            ", ".join(outcome.partitions),
            str(outcome.error) if outcome.error else "",
        )
    console.print(table)


def main(argv: Optional[Sequence[str]] = None, console: Optional[Console] = None) -> int:
    """Main entry point for the command line loader."""
    parser = build_parser()
    args = parser.parse_args(argv)
    console = console or Console()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    try:
        settings = load_settings(args)
    except ConfigurationError as e:
        console.print(f"[bold red]Configuration Error:[/bold red] {e.message}")
        return 2

    session = boto3.Session(region_name=args.region)
    boto_config = BotocoreConfig(max_pool_connections=max(10, settings.max_concurrent_batches))
    s3_client = S3Client(
        s3_client=session.client("s3", endpoint_url=args.endpoint_url, config=boto_config)
    )
    sink = DynamoDBSink(
        dynamodb_client=session.client(
            "dynamodb", endpoint_url=args.endpoint_url, config=boto_config
        ),
        table_name=args.table,
    )
    write_back = None
    if args.write_back_bucket:
        write_back = WriteBackSink(
            sink, s3_client, bucket=args.write_back_bucket, prefix=args.write_back_prefix
        )

    service = IngestionService(s3_client, write_back or sink, settings)

    outcomes = [ingest_key(service, args.bucket, key) for key in args.keys]
    exit_code = 0 if all(outcome.succeeded for outcome in outcomes) else 1

    if write_back is not None:
        try:
            written = write_back.publish()
            console.print(f"Wrote {len(written)} partition document(s) to s3://{args.write_back_bucket}")
        except TransportError as e:
            console.print(f"[bold red]Write-back failed:[/bold red] {e}")
            exit_code = 1

    render_outcomes(console, outcomes)
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
