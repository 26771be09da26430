# src/hvac_loader/clients.py

"""
Client wrapper for the object store (S3).

`S3Client` opens source objects as streams and writes the optional
per-partition output documents. Every boto3/botocore failure is mapped onto
the service's `TransportError` family, so the ingestion core never has to
know about botocore.
"""

import logging
from typing import BinaryIO, TYPE_CHECKING, cast

from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotocoreConnectionError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .exceptions import (
    S3AccessDeniedError,
    S3ConnectionError,
    S3ObjectNotFoundError,
    S3ThrottlingError,
    S3TimeoutError,
    TransportError,
)

if TYPE_CHECKING:
    from mypy_boto3_s3.client import S3Client as S3ClientType

logger = logging.getLogger(__name__)

_THROTTLING_CODES = {"Throttling", "ThrottlingException", "RequestLimitExceeded", "SlowDown"}
_TIMEOUT_CODES = {"RequestTimeout", "RequestTimeoutException"}
_NOT_FOUND_CODES = {"NoSuchKey", "NoSuchBucket", "404"}
_ACCESS_DENIED_CODES = {"AccessDenied", "403"}


def _map_client_error(
    e: ClientError, bucket: str, key: str, operation: str
) -> TransportError:
    """Translate a botocore ClientError into our exception types."""
    error_code = e.response.get("Error", {}).get("Code", "Unknown")
    error_message = e.response.get("Error", {}).get("Message", str(e))
    context = {
        "bucket": bucket,
        "key": key,
        "aws_error_code": error_code,
        "aws_error_message": error_message,
    }

    if error_code in _NOT_FOUND_CODES:
        return S3ObjectNotFoundError(bucket=bucket, key=key, context=context)
    if error_code in _ACCESS_DENIED_CODES:
        return S3AccessDeniedError(bucket=bucket, key=key, context=context)
    if error_code in _THROTTLING_CODES:
        return S3ThrottlingError(operation, context=context)
    if error_code in _TIMEOUT_CODES:
        return S3TimeoutError(operation, context=context)
    return TransportError(
        f"S3 client error during {operation}: {error_message}",
        error_code="S3_CLIENT_ERROR",
        context=context,
    )


def _map_botocore_error(
    e: BotoCoreError, bucket: str, key: str, operation: str
) -> TransportError:
    """Translate any other botocore failure (credentials, connect timeouts, ...)."""
    context = {"bucket": bucket, "key": key, "botocore_error": type(e).__name__}
    if isinstance(e, BotocoreConnectionError):
        return S3ConnectionError(
            f"Could not connect to S3 during {operation}: {e}", context=context
        )
    return TransportError(
        f"S3 client failure during {operation}: {e}",
        error_code="S3_CLIENT_FAILURE",
        context=context,
    )


class S3ObjectStream:
    """
    Read-only view of an S3 object body that raises TransportError subclasses
    instead of botocore/urllib3 exceptions when the connection misbehaves.
    """

    def __init__(self, body: BinaryIO, bucket: str, key: str):
        self._body = body
        self._bucket = bucket
        self._key = key

    def read(self, size: int = -1) -> bytes:
        try:
            return self._body.read(size)
        except ReadTimeoutError as e:
            raise S3TimeoutError(
                "read object body",
                error_code="S3_READ_TIMEOUT",
                context={"bucket": self._bucket, "key": self._key, "timeout_error": str(e)},
            ) from e
        except (BotoCoreError, OSError) as e:
            raise S3ConnectionError(
                f"Failed while reading s3://{self._bucket}/{self._key}: {e}",
                error_code="S3_READ_ERROR",
                context={"bucket": self._bucket, "key": self._key},
            ) from e

    def close(self) -> None:
        self._body.close()


class S3Client:
    """
    A wrapper for S3 client operations, focused on streaming data.
    """

    def __init__(self, s3_client: "S3ClientType"):
        """
        Initializes the S3Client.

        Args:
            s3_client: A typed boto3 S3 client.
        """
        self._client = s3_client

    def open_object_stream(self, bucket: str, key: str) -> S3ObjectStream:
        """
        Opens an S3 object's body as a file-like stream. The caller owns the
        stream and must close it.
        """
        logger.debug("Opening object stream", extra={"bucket": bucket, "key": key})
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as e:
            raise _map_client_error(e, bucket, key, "get_object") from e
        except ReadTimeoutError as e:
            raise S3TimeoutError(
                "get_object",
                error_code="S3_READ_TIMEOUT",
                context={"bucket": bucket, "key": key, "timeout_error": str(e)},
            ) from e
        except EndpointConnectionError as e:
            raise S3TimeoutError(
                "get_object",
                error_code="S3_CONNECTION_ERROR",
                context={"bucket": bucket, "key": key, "connection_error": str(e)},
            ) from e
        except BotoCoreError as e:
            raise _map_botocore_error(e, bucket, key, "get_object") from e

        logger.info(
            "Object stream opened",
            extra={
                "bucket": bucket,
                "key": key,
                "content_length": response.get("ContentLength"),
            },
        )
        return S3ObjectStream(cast(BinaryIO, response["Body"]), bucket, key)

    def put_json_object(self, bucket: str, key: str, body: bytes) -> None:
        """Uploads an in-memory JSON document."""
        logger.info(
            "Uploading JSON object",
            extra={"bucket": bucket, "key": key, "size_bytes": len(body)},
        )
        try:
            self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=body,
                ContentType="application/json",
            )
        except ClientError as e:
            raise _map_client_error(e, bucket, key, "put_object") from e
        except (ReadTimeoutError, EndpointConnectionError) as e:
            raise S3TimeoutError(
                "put_object",
                error_code="S3_UPLOAD_CONNECTION_ERROR",
                context={"bucket": bucket, "key": key, "connection_error": str(e)},
            ) from e
        except BotoCoreError as e:
            raise _map_botocore_error(e, bucket, key, "put_object") from e
