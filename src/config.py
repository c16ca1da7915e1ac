"""Configuration loading and validation module.

This module handles all YAML configuration loading and provides a typed
Config dataclass consumed by all other modules.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import yaml

STATE_STORE_BACKENDS = ("influxdb", "sqlite")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


@dataclass
class InfluxDbConfig:
    """InfluxDB connection configuration."""
    url: str
    token: str
    organization: str
    bucket: str = ""
    timeout_ms: int = 10000


@dataclass
class DatabaseConfig:
    """State database configuration."""
    path: str


@dataclass
class SchedulerConfig:
    """Poll scheduler configuration."""
    pool_size: int = 3
    lease_min_hold_seconds: int = 5
    lease_max_hold_seconds: int = 60
    timezone: str = "UTC"


@dataclass
class StateStoreConfig:
    """Where device property values are stored."""
    backend: str = "influxdb"


@dataclass
class SensorDefinition:
    """One configured device, passed to the device factory as-is."""
    id: str
    type: str
    display_name: str
    parameters: Dict[str, str] = field(default_factory=dict)
    custom_identifiers: Dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Root configuration dataclass."""
    influxdb: InfluxDbConfig
    database: DatabaseConfig
    scheduler: SchedulerConfig
    sensors: List[SensorDefinition]
    state_store: StateStoreConfig = field(default_factory=StateStoreConfig)


def _get_nested(data: dict, path: str, required: bool = True, default: Any = None) -> Any:
    """Get a nested value from a dictionary using dot notation.

    Args:
        data: The dictionary to search
        path: Dot-separated path to the value (e.g., "influxdb.url")
        required: If True, raises ConfigError when value is missing
        default: Default value if not required and missing

    Returns:
        The value at the path, or default if not required and missing

    Raises:
        ConfigError: If required value is missing
    """
    keys = path.split(".")
    current = data

    for key in keys:
        if not isinstance(current, dict):
            if required:
                raise ConfigError(f"Configuration path '{path}' is not a valid nested structure")
            return default
        if key not in current:
            if required:
                raise ConfigError(f"Missing required configuration field: {path}")
            return default
        current = current[key]

    return current


def _validate_type(value: Any, expected_type: type, field_name: str) -> None:
    """Validate that a value is of the expected type.

    Args:
        value: The value to validate
        expected_type: The expected type
        field_name: Name of the field for error messages

    Raises:
        ConfigError: If value is not of the expected type
    """
    if expected_type is list:
        if not isinstance(value, list):
            raise ConfigError(
                f"Field '{field_name}' must be a list, got {type(value).__name__}"
            )
    elif expected_type is int:
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigError(
                f"Field '{field_name}' must be an integer, got {type(value).__name__}"
            )
    elif expected_type is str:
        if not isinstance(value, str):
            raise ConfigError(
                f"Field '{field_name}' must be a string, got {type(value).__name__}"
            )
    else:
        if not isinstance(value, expected_type):
            raise ConfigError(
                f"Field '{field_name}' must be of type {expected_type.__name__}, got {type(value).__name__}"
            )


def _string_map(value: Any, field_name: str) -> Dict[str, str]:
    """Validate a flat mapping of scalars and return it with string values.

    Parameters are kept as strings, the form they are persisted in; numbers
    and booleans written unquoted in YAML are converted.
    """
    _validate_type(value, dict, field_name)
    result = {}
    for key, item in value.items():
        if isinstance(item, (dict, list)) or item is None:
            raise ConfigError(
                f"Field '{field_name}.{key}' must be a scalar value"
            )
        if isinstance(item, bool):
            item = "true" if item else "false"
        result[str(key)] = str(item)
    return result


def _load_sensor(data: Any, index: int) -> SensorDefinition:
    """Validate and build one sensor definition."""
    prefix = f"sensors[{index}]"
    _validate_type(data, dict, prefix)

    sensor_id = _get_nested(data, "id")
    _validate_type(sensor_id, str, f"{prefix}.id")
    if not sensor_id:
        raise ConfigError(f"{prefix}.id must not be empty")

    sensor_type = _get_nested(data, "type")
    _validate_type(sensor_type, str, f"{prefix}.type")

    display_name = _get_nested(data, "display_name", required=False, default=sensor_id)
    _validate_type(display_name, str, f"{prefix}.display_name")

    parameters = _string_map(
        _get_nested(data, "parameters", required=False, default={}),
        f"{prefix}.parameters",
    )
    custom_identifiers = _string_map(
        _get_nested(data, "custom_identifiers", required=False, default={}),
        f"{prefix}.custom_identifiers",
    )

    return SensorDefinition(
        id=sensor_id,
        type=sensor_type,
        display_name=display_name,
        parameters=parameters,
        custom_identifiers=custom_identifiers,
    )


def load_config(path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        path: Path to the YAML configuration file

    Returns:
        Config: Validated configuration object

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a YAML dictionary")

    # State store configuration
    state_store_data = _get_nested(data, "state_store", required=False, default={})
    backend = _get_nested(state_store_data, "backend", required=False, default="influxdb")
    _validate_type(backend, str, "state_store.backend")
    if backend not in STATE_STORE_BACKENDS:
        raise ConfigError(
            f"state_store.backend must be one of {', '.join(STATE_STORE_BACKENDS)}, got {backend!r}"
        )

    # InfluxDB configuration
    influx_data = _get_nested(data, "influxdb")

    url = _get_nested(influx_data, "url")
    _validate_type(url, str, "influxdb.url")

    token = _get_nested(influx_data, "token")
    _validate_type(token, str, "influxdb.token")

    organization = _get_nested(influx_data, "organization")
    _validate_type(organization, str, "influxdb.organization")

    # Only the influxdb state store needs a bucket
    bucket = _get_nested(influx_data, "bucket", required=(backend == "influxdb"), default="")
    _validate_type(bucket, str, "influxdb.bucket")
    if backend == "influxdb" and not bucket:
        raise ConfigError("influxdb.bucket must not be empty")

    timeout_ms = _get_nested(influx_data, "timeout_ms", required=False, default=10000)
    _validate_type(timeout_ms, int, "influxdb.timeout_ms")
    if timeout_ms <= 0:
        raise ConfigError("influxdb.timeout_ms must be > 0")

    influxdb = InfluxDbConfig(
        url=url,
        token=token,
        organization=organization,
        bucket=bucket,
        timeout_ms=timeout_ms,
    )

    # Database configuration
    database_data = _get_nested(data, "database")
    database_path = _get_nested(database_data, "path")
    _validate_type(database_path, str, "database.path")

    database = DatabaseConfig(path=database_path)

    # Scheduler configuration
    scheduler_data = _get_nested(data, "scheduler", required=False, default={})

    pool_size = _get_nested(scheduler_data, "pool_size", required=False, default=3)
    _validate_type(pool_size, int, "scheduler.pool_size")

    lease_min_hold_seconds = _get_nested(
        scheduler_data, "lease_min_hold_seconds", required=False, default=5
    )
    _validate_type(lease_min_hold_seconds, int, "scheduler.lease_min_hold_seconds")

    lease_max_hold_seconds = _get_nested(
        scheduler_data, "lease_max_hold_seconds", required=False, default=60
    )
    _validate_type(lease_max_hold_seconds, int, "scheduler.lease_max_hold_seconds")

    timezone = _get_nested(scheduler_data, "timezone", required=False, default="UTC")
    _validate_type(timezone, str, "scheduler.timezone")
    try:
        ZoneInfo(timezone)
    except (ValueError, ZoneInfoNotFoundError):
        raise ConfigError(f"scheduler.timezone {timezone!r} is not a known time zone")

    # Range validation for scheduler config fields
    if pool_size < 1:
        raise ConfigError("scheduler.pool_size must be >= 1")
    if lease_min_hold_seconds < 0:
        raise ConfigError("scheduler.lease_min_hold_seconds must be >= 0")
    if lease_max_hold_seconds <= lease_min_hold_seconds:
        raise ConfigError(
            "scheduler.lease_max_hold_seconds must be > lease_min_hold_seconds"
        )

    scheduler = SchedulerConfig(
        pool_size=pool_size,
        lease_min_hold_seconds=lease_min_hold_seconds,
        lease_max_hold_seconds=lease_max_hold_seconds,
        timezone=timezone,
    )

    # Sensor definitions
    sensors_data = _get_nested(data, "sensors", required=False, default=[])
    _validate_type(sensors_data, list, "sensors")

    sensors = [_load_sensor(item, i) for i, item in enumerate(sensors_data)]

    seen = set()
    for sensor in sensors:
        key = (sensor.type, sensor.id)
        if key in seen:
            raise ConfigError(f"Duplicate sensor id {sensor.id!r} for type {sensor.type!r}")
        seen.add(key)

    return Config(
        influxdb=influxdb,
        database=database,
        scheduler=scheduler,
        sensors=sensors,
        state_store=StateStoreConfig(backend=backend),
    )
