import logging
import os
from dataclasses import dataclass
from functools import lru_cache

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """
    Explicit settings for one ingestion pipeline.

    Built by the invocation layer and handed to the orchestrator; the
    pipeline itself never reads the environment.
    """

    partition_prefix: str = "hvac_readings"
    batch_size: int = 1000
    max_concurrent_batches: int = 8
    error_slot_capacity: int = 5
    read_chunk_size_bytes: int = 64 * 1024

    def __post_init__(self) -> None:
        if not self.partition_prefix:
            raise ConfigurationError("partition_prefix must not be empty.")
        for name in (
            "batch_size",
            "max_concurrent_batches",
            "error_slot_capacity",
            "read_chunk_size_bytes",
        ):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be a positive integer.")


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Application configuration loaded from environment variables."""

    # --- Required Variables ---
    target_table: str
    service_name: str
    environment: str

    # --- Optional Variables with Defaults ---
    log_level: str
    partition_prefix: str
    batch_size: int
    max_concurrent_batches: int
    error_slot_capacity: int
    read_chunk_size_kb: int
    timeout_guard_threshold_seconds: int
    write_back_bucket: str | None
    write_back_prefix: str

    # --- Derived Properties ---
    @property
    def read_chunk_size_bytes(self) -> int:
        return self.read_chunk_size_kb * 1024

    @property
    def timeout_guard_threshold_ms(self) -> int:
        return self.timeout_guard_threshold_seconds * 1000

    @property
    def write_back_enabled(self) -> bool:
        return bool(self.write_back_bucket)

    @property
    def pipeline_settings(self) -> PipelineSettings:
        return PipelineSettings(
            partition_prefix=self.partition_prefix,
            batch_size=self.batch_size,
            max_concurrent_batches=self.max_concurrent_batches,
            error_slot_capacity=self.error_slot_capacity,
            read_chunk_size_bytes=self.read_chunk_size_bytes,
        )

    @classmethod
    def load_from_env(cls) -> "AppConfig":
        """
        Loads configuration from environment variables, performing validation and type casting.
        Fails fast with a ConfigurationError if anything is invalid.
        """
        try:
            # --- Handle required string variables ---
            target_table = os.environ["TARGET_TABLE_NAME"]
            service_name = os.environ["SERVICE_NAME"]
            environment = os.environ["ENVIRONMENT"]

            # --- Handle optional and numeric variables with validation ---
            partition_prefix = os.getenv("PARTITION_PREFIX", "hvac_readings").strip()
            if not partition_prefix:
                raise ValueError("PARTITION_PREFIX must not be empty.")

            batch_size = int(os.getenv("BATCH_SIZE", "1000"))
            if batch_size <= 0:
                raise ValueError("BATCH_SIZE must be a positive integer.")

            max_concurrent_batches = int(os.getenv("MAX_CONCURRENT_BATCHES", "8"))
            if max_concurrent_batches <= 0:
                raise ValueError("MAX_CONCURRENT_BATCHES must be a positive integer.")

            error_slot_capacity = int(os.getenv("ERROR_SLOT_CAPACITY", "5"))
            if error_slot_capacity <= 0:
                raise ValueError("ERROR_SLOT_CAPACITY must be a positive integer.")

            read_chunk_size_kb = int(os.getenv("READ_CHUNK_SIZE_KB", "64"))
            if read_chunk_size_kb <= 0:
                raise ValueError("READ_CHUNK_SIZE_KB must be a positive integer.")

            timeout_guard_threshold_seconds = int(
                os.getenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "10")
            )
            if timeout_guard_threshold_seconds < 0:
                raise ValueError(
                    "TIMEOUT_GUARD_THRESHOLD_SECONDS must be a non-negative integer."
                )

            # --- Handle special-case variables like log level ---
            log_level = os.getenv("LOG_LEVEL", "INFO").upper()
            allowed_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
            if log_level not in allowed_log_levels:
                raise ValueError(
                    f"LOG_LEVEL must be one of {allowed_log_levels}, not '{log_level}'"
                )

            # --- Optional write-back to S3 ---
            write_back_bucket = os.getenv("WRITE_BACK_BUCKET_NAME") or None
            write_back_prefix = os.getenv("WRITE_BACK_PREFIX", "output").strip("/")
            if not write_back_prefix:
                raise ValueError("WRITE_BACK_PREFIX must not be empty.")

        except KeyError as e:
            raise ConfigurationError(
                f"Missing required environment variable: {e.args[0]}"
            ) from e
        except (ValueError, TypeError) as e:
            raise ConfigurationError(
                f"Invalid value for an environment variable: {e}"
            ) from e

        return cls(
            target_table=target_table,
            service_name=service_name,
            environment=environment,
            log_level=log_level,
            partition_prefix=partition_prefix,
            batch_size=batch_size,
            max_concurrent_batches=max_concurrent_batches,
            error_slot_capacity=error_slot_capacity,
            read_chunk_size_kb=read_chunk_size_kb,
            timeout_guard_threshold_seconds=timeout_guard_threshold_seconds,
            write_back_bucket=write_back_bucket,
            write_back_prefix=write_back_prefix,
        )


# --- Singleton Factory Function (Lazy-loaded and Cached) ---
@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """
    Loads the application configuration from environment variables.
    The result is cached using lru_cache, so the environment is only read once
    on the first call. This avoids import-time side effects.
    """
    logger.info("Loading application configuration from environment...")
    return AppConfig.load_from_env()
