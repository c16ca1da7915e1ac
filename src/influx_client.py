"""InfluxDB client abstraction module.

All influxdb-client library usage is isolated here. No other module
imports from influxdb_client.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, List, Optional

from influxdb_client import InfluxDBClient, Point, WritePrecision
from influxdb_client.client.write_api import SYNCHRONOUS

from config import Config
from models import (
    DevicePropertyId,
    PropertyValue,
    Sample,
    ValueType,
    ValueWithTimestamp,
)
from state_store import ValueCastError, cast_value, encode_value

logger = logging.getLogger(__name__)

VALUE_FIELD_NAME = "value"


class SampleSourceError(Exception):
    """Raised when samples cannot be read from the backend.

    Distinguishes a failed read from a successful read that returned no data.
    """
    pass


def build_client(config: Config) -> InfluxDBClient:
    """Construct and return a configured InfluxDBClient.

    Args:
        config: Configuration object containing InfluxDB connection settings

    Returns:
        InfluxDBClient: Configured client
    """
    return InfluxDBClient(
        url=config.influxdb.url,
        token=config.influxdb.token,
        org=config.influxdb.organization,
        timeout=config.influxdb.timeout_ms,
    )


def ping(client: InfluxDBClient) -> bool:
    """Check that the InfluxDB server is reachable.

    Args:
        client: Configured InfluxDBClient instance

    Returns:
        True if the server answered. False on error.
    """
    try:
        return bool(client.ping())
    except Exception as e:
        logger.warning(f"InfluxDB ping failed: {e}")
        return False


def _record_to_sample(record: Any) -> Sample:
    """Convert a FluxRecord to a Sample.

    Raises:
        SampleSourceError: If the record has no time or a non-numeric value
    """
    timestamp = record.get_time()
    if timestamp is None:
        raise SampleSourceError("record without _time")
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)

    raw = record.get_value()
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise SampleSourceError(f"record value {raw!r} is not numeric")
    value = float(raw)
    if math.isnan(value):
        raise SampleSourceError("record value is NaN")

    return Sample(timestamp=timestamp.astimezone(timezone.utc), value=value)


class InfluxSampleSource:
    """Reads power samples with a Flux query.

    Only the first result table is used; its records are returned in the
    order the server sent them, which is chronological for a ranged query.
    """

    def __init__(self, query_api: Any) -> None:
        """Initialize the sample source.

        Args:
            query_api: influxdb_client QueryApi (client.query_api())
        """
        self._query_api = query_api

    def query(self, flux_query: str) -> List[Sample]:
        """Run a Flux query and return its samples.

        Args:
            flux_query: Flux query producing _time/_value records

        Returns:
            List of samples ordered oldest first, possibly empty

        Raises:
            SampleSourceError: If the query fails or returns malformed records
        """
        try:
            tables = self._query_api.query(flux_query)
        except Exception as e:
            raise SampleSourceError(f"query failed: {e}") from e

        if not tables:
            return []

        return [_record_to_sample(record) for record in tables[0].records]


def _flux_string(value: str) -> str:
    """Quote a value as a Flux string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("${", "\\${")
    return f'"{escaped}"'


def _flux_value_predicate(value: Any) -> str:
    """Build the filter expression matching _value against a Python value.

    Numbers are compared as floats, so 100 matches a stored 100.0.
    """
    value_kind, raw = encode_value(value)
    if value_kind == "bool":
        return f"r._value == {'true' if raw else 'false'}"
    if value_kind in ("int", "float"):
        return f"float(v: r._value) == float(v: {_flux_string(repr(float(raw)))})"
    return f"r._value == {_flux_string(raw)}"


class InfluxStateStore:
    """Device property value series stored as InfluxDB points.

    Every value is one point: the measurement is the value-type name, the
    tags are devicePropertyId, deviceId, deviceType, unit and displayName,
    the single field is "value" and the time has millisecond precision.
    """

    def __init__(
        self, write_api: Any, query_api: Any, bucket: str, organization: str
    ) -> None:
        """Initialize the state store.

        Args:
            write_api: Synchronous influxdb_client WriteApi
            query_api: influxdb_client QueryApi
            bucket: Bucket holding the property series
            organization: Organization owning the bucket
        """
        self._write_api = write_api
        self._query_api = query_api
        self._bucket = bucket
        self._organization = organization

    def _series_query(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        value_predicate: Optional[str] = None,
    ) -> str:
        lines = [
            f"from(bucket: {_flux_string(self._bucket)})",
            "  |> range(start: 0)",
            f"  |> filter(fn: (r) => r.devicePropertyId == {_flux_string(property_id.id)})",
            f"  |> filter(fn: (r) => r.deviceId == {_flux_string(property_id.device_id.id)})",
            f"  |> filter(fn: (r) => r.deviceType == {_flux_string(property_id.device_id.type)})",
            f"  |> filter(fn: (r) => r._measurement == {_flux_string(value_type.type_name)})",
            f"  |> filter(fn: (r) => r._field == {_flux_string(VALUE_FIELD_NAME)})",
        ]
        if value_predicate is not None:
            lines.append(f"  |> filter(fn: (r) => {value_predicate})")
        lines.append("  |> last()")
        return "\n".join(lines)

    def _last_record(self, flux_query: str) -> Optional[Any]:
        """Run a query ending in last() and return the newest record.

        A series whose displayName or unit tag changed comes back as several
        tables, each with its own last record.
        """
        tables = self._query_api.query(flux_query, org=self._organization)
        records = [
            record
            for table in tables or []
            for record in table.records
            if record.get_time() is not None
        ]
        if not records:
            return None
        return max(records, key=lambda record: record.get_time())

    def find_latest(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        target_type: type,
    ) -> Optional[ValueWithTimestamp]:
        """Get the latest value of a property, coerced to target_type.

        A stored value that cannot be coerced is logged and reported as
        absent.

        Args:
            property_id: Property to read
            value_type: Value-type tag the property was written with
            target_type: Requested Python type of the value

        Returns:
            ValueWithTimestamp or None if there is no (usable) value
        """
        record = self._last_record(self._series_query(property_id, value_type))
        if record is None:
            return None

        try:
            value = cast_value(record.get_value(), target_type)
        except ValueCastError as e:
            logger.error(
                f"Could not read {value_type.type_name} of "
                f"{property_id.device_id.id}/{property_id.id}: {e}"
            )
            return None

        return ValueWithTimestamp(value=value, timestamp=_as_utc(record.get_time()))

    def last_time_value_matched(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        value: Any,
    ) -> Optional[datetime]:
        """Get the last time a property held the given value.

        Returns:
            UTC datetime or None if the value never occurred
        """
        record = self._last_record(
            self._series_query(property_id, value_type, _flux_value_predicate(value))
        )
        if record is None:
            return None
        return _as_utc(record.get_time())

    def write(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        display_name: str,
        value: Any,
        timestamp: datetime,
    ) -> None:
        """Append a value to a property series."""
        self.write_all(
            [PropertyValue(property_id, value_type, display_name, value, timestamp)]
        )

    def write_all(self, values: List[PropertyValue]) -> None:
        """Write several values in a single request.

        A failed request raises and stores none of the values.

        Args:
            values: Values to append
        """
        points = [_to_point(item) for item in values]
        self._write_api.write(
            bucket=self._bucket,
            org=self._organization,
            record=points,
            write_precision=WritePrecision.MS,
        )

    def close(self) -> None:
        self._write_api.close()


def _as_utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _to_point(item: PropertyValue) -> Point:
    _, raw = encode_value(item.value)
    return (
        Point(item.value_type.type_name)
        .tag("devicePropertyId", item.property_id.id)
        .tag("deviceId", item.property_id.device_id.id)
        .tag("deviceType", item.property_id.device_id.type)
        .tag("unit", item.value_type.unit)
        .tag("displayName", item.display_name)
        .field(VALUE_FIELD_NAME, raw)
        .time(item.timestamp, WritePrecision.MS)
    )


def build_state_store(client: InfluxDBClient, config: Config) -> InfluxStateStore:
    """Construct the InfluxDB state store for the configured bucket.

    Writes are synchronous so a failed write raises in the polling thread.
    """
    return InfluxStateStore(
        client.write_api(write_options=SYNCHRONOUS),
        client.query_api(),
        config.influxdb.bucket,
        config.influxdb.organization,
    )
