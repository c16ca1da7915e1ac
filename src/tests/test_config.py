"""Tests for config.py module."""

import pytest
from pathlib import Path
import config


def create_valid_config(tmp_path: Path) -> Path:
    """Helper to create a valid config file and return its path."""
    config_content = """
influxdb:
  url: "http://localhost:8086"
  token: "secret-token"
  organization: "home"
  bucket: "home-automation"
  timeout_ms: 5000

database:
  path: "/var/lib/power-relay-monitor/state.db"

scheduler:
  pool_size: 4
  lease_min_hold_seconds: 10
  lease_max_hold_seconds: 120
  timezone: "Europe/Zurich"

sensors:
  - id: "washer"
    type: "influxdb2-power-sensor"
    display_name: "Washing machine"
    parameters:
      query: 'from(bucket: "power") |> range(start: -5m)'
      onThreshold: 10
      offThreshold: 2.5
      updateCronExpression: "0 */1 * * * *"
    custom_identifiers:
      room: "laundry"
"""
    config_file = tmp_path / "config.yaml"
    config_file.write_text(config_content)
    return config_file


def write_config(tmp_path: Path, content: str) -> str:
    config_file = tmp_path / "config.yaml"
    config_file.write_text(content)
    return str(config_file)


MINIMAL = """
influxdb:
  url: "http://localhost:8086"
  token: "t"
  organization: "home"
  bucket: "home-automation"
database:
  path: "state.db"
"""


def test_valid_config_loads_successfully(tmp_path):
    """Test that a valid config file loads and all fields are accessible."""
    config_file = create_valid_config(tmp_path)

    cfg = config.load_config(str(config_file))

    assert cfg.influxdb.url == "http://localhost:8086"
    assert cfg.influxdb.token == "secret-token"
    assert cfg.influxdb.organization == "home"
    assert cfg.influxdb.bucket == "home-automation"
    assert cfg.influxdb.timeout_ms == 5000
    assert cfg.database.path == "/var/lib/power-relay-monitor/state.db"
    assert cfg.scheduler.pool_size == 4
    assert cfg.scheduler.lease_min_hold_seconds == 10
    assert cfg.scheduler.lease_max_hold_seconds == 120
    assert cfg.scheduler.timezone == "Europe/Zurich"
    assert cfg.state_store.backend == "influxdb"
    assert len(cfg.sensors) == 1

    sensor = cfg.sensors[0]
    assert sensor.id == "washer"
    assert sensor.type == "influxdb2-power-sensor"
    assert sensor.display_name == "Washing machine"
    assert sensor.custom_identifiers == {"room": "laundry"}


def test_sensor_parameters_are_strings(tmp_path):
    """Unquoted YAML numbers in parameters are kept in string form."""
    cfg = config.load_config(str(create_valid_config(tmp_path)))
    assert cfg.sensors[0].parameters == {
        "query": 'from(bucket: "power") |> range(start: -5m)',
        "onThreshold": "10",
        "offThreshold": "2.5",
        "updateCronExpression": "0 */1 * * * *",
    }


def test_defaults_applied(tmp_path):
    cfg = config.load_config(write_config(tmp_path, MINIMAL))
    assert cfg.influxdb.timeout_ms == 10000
    assert cfg.scheduler.pool_size == 3
    assert cfg.scheduler.lease_min_hold_seconds == 5
    assert cfg.scheduler.lease_max_hold_seconds == 60
    assert cfg.scheduler.timezone == "UTC"
    assert cfg.state_store.backend == "influxdb"
    assert cfg.sensors == []


def test_display_name_defaults_to_id(tmp_path):
    content = MINIMAL + """
sensors:
  - id: "dryer"
    type: "influxdb2-power-sensor"
"""
    cfg = config.load_config(write_config(tmp_path, content))
    assert cfg.sensors[0].display_name == "dryer"
    assert cfg.sensors[0].parameters == {}


def test_missing_required_field_raises_config_error(tmp_path):
    """Test that missing required field raises ConfigError with field name."""
    content = """
influxdb:
  url: "http://localhost:8086"
  organization: "home"
database:
  path: "state.db"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "token" in str(exc_info.value)


def test_missing_database_section_raises(tmp_path):
    content = """
influxdb:
  url: "http://localhost:8086"
  token: "t"
  organization: "home"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "database" in str(exc_info.value)


def test_wrong_type_raises_config_error(tmp_path):
    content = MINIMAL + """
scheduler:
  pool_size: "three"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "scheduler.pool_size" in str(exc_info.value)


def test_pool_size_must_be_positive(tmp_path):
    content = MINIMAL + """
scheduler:
  pool_size: 0
"""
    with pytest.raises(config.ConfigError):
        config.load_config(write_config(tmp_path, content))


def test_max_hold_must_exceed_min_hold(tmp_path):
    content = MINIMAL + """
scheduler:
  lease_min_hold_seconds: 60
  lease_max_hold_seconds: 60
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "lease_max_hold_seconds" in str(exc_info.value)


def test_nested_parameter_value_raises(tmp_path):
    content = MINIMAL + """
sensors:
  - id: "washer"
    type: "influxdb2-power-sensor"
    parameters:
      query: ["not", "a", "string"]
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "sensors[0].parameters.query" in str(exc_info.value)


def test_duplicate_sensor_ids_raise(tmp_path):
    content = MINIMAL + """
sensors:
  - id: "washer"
    type: "influxdb2-power-sensor"
  - id: "washer"
    type: "influxdb2-power-sensor"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "Duplicate" in str(exc_info.value)


def test_file_not_found_raises_config_error(tmp_path):
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(str(tmp_path / "missing.yaml"))
    assert "not found" in str(exc_info.value)


def test_empty_file_raises_config_error(tmp_path):
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, ""))
    assert "empty" in str(exc_info.value)


def test_invalid_yaml_raises_config_error(tmp_path):
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, "influxdb: [unclosed"))
    assert "Invalid YAML" in str(exc_info.value)


def test_non_dict_root_raises_config_error(tmp_path):
    with pytest.raises(config.ConfigError):
        config.load_config(write_config(tmp_path, "- a\n- b\n"))


def test_missing_bucket_raises_for_influxdb_backend(tmp_path):
    content = """
influxdb:
  url: "http://localhost:8086"
  token: "t"
  organization: "home"
database:
  path: "state.db"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "influxdb.bucket" in str(exc_info.value)


def test_sqlite_backend_does_not_need_bucket(tmp_path):
    content = """
influxdb:
  url: "http://localhost:8086"
  token: "t"
  organization: "home"
database:
  path: "state.db"
state_store:
  backend: "sqlite"
"""
    cfg = config.load_config(write_config(tmp_path, content))
    assert cfg.state_store.backend == "sqlite"
    assert cfg.influxdb.bucket == ""


def test_unknown_state_store_backend_raises(tmp_path):
    content = MINIMAL + """
state_store:
  backend: "redis"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "state_store.backend" in str(exc_info.value)


def test_unknown_timezone_raises(tmp_path):
    content = MINIMAL + """
scheduler:
  timezone: "Mars/Olympus_Mons"
"""
    with pytest.raises(config.ConfigError) as exc_info:
        config.load_config(write_config(tmp_path, content))
    assert "scheduler.timezone" in str(exc_info.value)
