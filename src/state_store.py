"""State store module for device property values.

Provides "latest value of property P", "last time property P matched value V"
and append-only writes on top of the SQLite database module.

Stored values are a tagged variant over bool, int, float and str. The variant
tag is persisted next to the value and read-back coercion to a requested type
goes through cast_value(), which either converts explicitly or raises
ValueCastError.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, List, Optional, Tuple

import database
from models import DevicePropertyId, PropertyValue, ValueType, ValueWithTimestamp

logger = logging.getLogger(__name__)

_TRUE_STRINGS = {"true"}
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ValueCastError(Exception):
    """Raised when a stored value cannot be coerced to the requested type."""
    pass


def to_epoch_millis(timestamp: datetime) -> int:
    """Convert a datetime to epoch milliseconds. Naive datetimes are taken as UTC."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (timestamp - _EPOCH) // timedelta(milliseconds=1)


def from_epoch_millis(millis: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return _EPOCH + timedelta(milliseconds=millis)


def encode_value(value: Any) -> Tuple[str, Any]:
    """Map a Python value to its (value_kind, raw) storage form.

    Args:
        value: bool, int, float, str or Enum member

    Returns:
        Tuple of (value_kind, raw value)
    """
    # bool first: bool is a subclass of int
    if isinstance(value, bool):
        return ("bool", value)
    if isinstance(value, int):
        return ("int", value)
    if isinstance(value, float):
        return ("float", value)
    if isinstance(value, str):
        return ("str", value)
    if isinstance(value, Enum):
        return ("str", value.name)
    return ("str", str(value))


def decode_value(value_kind: str, raw: Any) -> Any:
    """Restore the Python value from its storage form.

    Raises:
        ValueCastError: If the value kind is unknown
    """
    if value_kind == "bool":
        return bool(raw)
    if value_kind == "int":
        return int(raw)
    if value_kind == "float":
        return float(raw)
    if value_kind == "str":
        return str(raw)
    raise ValueCastError(f"unknown stored value kind {value_kind!r}")


def cast_value(value: Any, target_type: type) -> Any:
    """Coerce a decoded stored value to target_type.

    Supported conversions:
        same type           -> unchanged
        int/float -> int, float, str, bool (bool is value > 0)
        bool      -> str
        str       -> bool ("true" case-insensitive), Enum (by member name)

    Args:
        value: Decoded stored value
        target_type: One of bool, int, float, str or an Enum subclass

    Returns:
        The converted value

    Raises:
        ValueCastError: If the conversion is not supported
    """
    if type(value) is target_type:
        return value

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if target_type is int:
            return int(value)
        if target_type is float:
            return float(value)
        if target_type is str:
            return str(value)
        if target_type is bool:
            return value > 0
    elif isinstance(value, bool):
        if target_type is str:
            return "true" if value else "false"
    elif isinstance(value, str):
        if target_type is bool:
            return value.lower() in _TRUE_STRINGS
        if isinstance(target_type, type) and issubclass(target_type, Enum):
            try:
                return target_type[value]
            except KeyError:
                raise ValueCastError(
                    f"{value!r} is not a member of {target_type.__name__}"
                )

    raise ValueCastError(
        f"cast from {type(value).__name__} to "
        f"{getattr(target_type, '__name__', target_type)} is not supported"
    )


class StateStore:
    """Read/write access to device property value series.

    Each operation opens its own connection, so a single StateStore can be
    shared by all worker threads.
    """

    def __init__(self, db_path: str) -> None:
        """Initialize the state store.

        Args:
            db_path: Path to the SQLite database file
        """
        self._db_path = db_path

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
        conn = database.get_connection(self._db_path)
        try:
            row = database.get_latest_property_value(
                conn,
                value_type.type_name,
                property_id.id,
                property_id.device_id.id,
                property_id.device_id.type,
            )
        finally:
            conn.close()

        if row is None:
            return None

        value_kind, raw, recorded_at = row
        try:
            value = cast_value(decode_value(value_kind, raw), target_type)
        except ValueCastError as e:
            logger.error(
                f"Could not read {value_type.type_name} of "
                f"{property_id.device_id.id}/{property_id.id}: {e}"
            )
            return None

        return ValueWithTimestamp(value=value, timestamp=from_epoch_millis(recorded_at))

    def last_time_value_matched(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        value: Any,
    ) -> Optional[datetime]:
        """Get the last time a property held the given value.

        Args:
            property_id: Property to read
            value_type: Value-type tag the property was written with
            value: Value to match

        Returns:
            UTC datetime or None if the value never occurred
        """
        value_kind, raw = encode_value(value)
        conn = database.get_connection(self._db_path)
        try:
            recorded_at = database.get_last_matching_time(
                conn,
                value_type.type_name,
                property_id.id,
                property_id.device_id.id,
                property_id.device_id.type,
                value_kind,
                raw,
            )
        finally:
            conn.close()

        if recorded_at is None:
            return None
        return from_epoch_millis(recorded_at)

    def write(
        self,
        property_id: DevicePropertyId,
        value_type: ValueType,
        display_name: str,
        value: Any,
        timestamp: datetime,
    ) -> None:
        """Append a value to a property series.

        Args:
            property_id: Property to write
            value_type: Value-type tag (measurement name and unit)
            display_name: Display name of the device
            value: bool, int, float, str or Enum member
            timestamp: Time the value applies to, stored at millisecond precision
        """
        self.write_all(
            [PropertyValue(property_id, value_type, display_name, value, timestamp)]
        )

    def write_all(self, values: List[PropertyValue]) -> None:
        """Append several values in one transaction.

        Either every value is stored or, if any insert fails, none is.

        Args:
            values: Values to append
        """
        conn = database.get_connection(self._db_path)
        try:
            for item in values:
                value_kind, raw = encode_value(item.value)
                database.insert_property_value(
                    conn,
                    item.value_type.type_name,
                    item.property_id.id,
                    item.property_id.device_id.id,
                    item.property_id.device_id.type,
                    item.value_type.unit,
                    item.display_name,
                    value_kind,
                    raw,
                    to_epoch_millis(item.timestamp),
                )
            database.commit_batch(conn)
        finally:
            # Closing without commit discards a partial batch
            conn.close()
