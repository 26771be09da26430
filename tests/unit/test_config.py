# tests/unit/test_config.py

import pytest

from hvac_loader.config import ConfigurationError, PipelineSettings, get_config

OPTIONAL_VARS = (
    "LOG_LEVEL",
    "PARTITION_PREFIX",
    "BATCH_SIZE",
    "MAX_CONCURRENT_BATCHES",
    "ERROR_SLOT_CAPACITY",
    "READ_CHUNK_SIZE_KB",
    "TIMEOUT_GUARD_THRESHOLD_SECONDS",
    "WRITE_BACK_BUCKET_NAME",
    "WRITE_BACK_PREFIX",
)


@pytest.fixture(autouse=True)
def clear_config_cache():
    """
    Clears the lru_cache of get_config around each test so every test sees a
    configuration built from its own monkeypatched environment.
    """
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def required_env(monkeypatch):
    monkeypatch.setenv("TARGET_TABLE_NAME", "test-table")
    monkeypatch.setenv("SERVICE_NAME", "test-service")
    monkeypatch.setenv("ENVIRONMENT", "test")
    for name in OPTIONAL_VARS:
        monkeypatch.delenv(name, raising=False)


def test_get_config_happy_path(required_env, monkeypatch):
    """Tests that configuration loads correctly when all env vars are set."""
    # ARRANGE
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("PARTITION_PREFIX", "site_a")
    monkeypatch.setenv("BATCH_SIZE", "250")
    monkeypatch.setenv("MAX_CONCURRENT_BATCHES", "4")
    monkeypatch.setenv("ERROR_SLOT_CAPACITY", "3")
    monkeypatch.setenv("READ_CHUNK_SIZE_KB", "16")
    monkeypatch.setenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "5")
    monkeypatch.setenv("WRITE_BACK_BUCKET_NAME", "out-bucket")
    monkeypatch.setenv("WRITE_BACK_PREFIX", "/exports/")

    # ACT
    config = get_config()

    # ASSERT
    assert config.target_table == "test-table"
    assert config.service_name == "test-service"
    assert config.environment == "test"
    assert config.log_level == "DEBUG"
    assert config.partition_prefix == "site_a"
    assert config.batch_size == 250
    assert config.max_concurrent_batches == 4
    assert config.error_slot_capacity == 3
    assert config.read_chunk_size_bytes == 16 * 1024
    assert config.timeout_guard_threshold_ms == 5 * 1000
    assert config.write_back_enabled is True
    assert config.write_back_bucket == "out-bucket"
    assert config.write_back_prefix == "exports"


def test_get_config_uses_defaults(required_env):
    """Tests that optional variables fall back to their default values."""
    config = get_config()

    assert config.log_level == "INFO"
    assert config.partition_prefix == "hvac_readings"
    assert config.batch_size == 1000
    assert config.max_concurrent_batches == 8
    assert config.error_slot_capacity == 5
    assert config.read_chunk_size_kb == 64
    assert config.timeout_guard_threshold_seconds == 10
    assert config.write_back_bucket is None
    assert config.write_back_enabled is False
    assert config.write_back_prefix == "output"


def test_pipeline_settings_are_derived_from_config(required_env, monkeypatch):
    monkeypatch.setenv("BATCH_SIZE", "10")
    settings = get_config().pipeline_settings

    assert settings == PipelineSettings(batch_size=10)


def test_get_config_missing_required_env_var(monkeypatch):
    """Tests that ConfigurationError is raised when required env vars are missing."""
    monkeypatch.delenv("TARGET_TABLE_NAME", raising=False)

    with pytest.raises(ConfigurationError) as exc_info:
        get_config()
    assert "TARGET_TABLE_NAME" in str(exc_info.value)


@pytest.mark.parametrize(
    "name, value",
    [
        ("BATCH_SIZE", "not-a-number"),
        ("BATCH_SIZE", "0"),
        ("MAX_CONCURRENT_BATCHES", "-1"),
        ("ERROR_SLOT_CAPACITY", "0"),
        ("READ_CHUNK_SIZE_KB", "0"),
        ("TIMEOUT_GUARD_THRESHOLD_SECONDS", "-5"),
        ("LOG_LEVEL", "LOUD"),
        ("PARTITION_PREFIX", "   "),
        ("WRITE_BACK_PREFIX", "/"),
    ],
)
def test_get_config_invalid_values(required_env, monkeypatch, name, value):
    """Tests that ConfigurationError is raised for invalid values."""
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        get_config()


def test_zero_timeout_guard_is_allowed(required_env, monkeypatch):
    monkeypatch.setenv("TIMEOUT_GUARD_THRESHOLD_SECONDS", "0")
    assert get_config().timeout_guard_threshold_ms == 0


def test_get_config_caching(required_env):
    """Tests that get_config returns the same instance when called multiple times."""
    assert get_config() is get_config()


# --- PipelineSettings ---


def test_pipeline_settings_defaults():
    settings = PipelineSettings()
    assert settings.partition_prefix == "hvac_readings"
    assert settings.batch_size == 1000
    assert settings.error_slot_capacity == 5


@pytest.mark.parametrize(
    "overrides",
    [
        {"partition_prefix": ""},
        {"batch_size": 0},
        {"max_concurrent_batches": 0},
        {"error_slot_capacity": -1},
        {"read_chunk_size_bytes": 0},
    ],
)
def test_pipeline_settings_rejects_invalid_values(overrides):
    with pytest.raises(ConfigurationError):
        PipelineSettings(**overrides)
