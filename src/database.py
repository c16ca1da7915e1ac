"""Database module for SQLite operations.

All SQL operations are isolated here. No other module writes SQL.

Timestamps are stored as integer epoch milliseconds.
"""

import sqlite3
from typing import Any, Dict, List, Optional, Tuple


def init_db(path: str) -> sqlite3.Connection:
    """Initialize database with tables and PRAGMAs.

    Args:
        path: Path to the SQLite database file

    Returns:
        sqlite3.Connection: Database connection with row factory set
    """
    conn = _create_connection(path)

    # "value" has no declared type so bools, ints, floats and strings keep
    # their storage class; value_kind records which variant was written
    conn.execute("""
        CREATE TABLE IF NOT EXISTS device_property_values (
            measurement TEXT NOT NULL,
            device_property_id TEXT NOT NULL,
            device_id TEXT NOT NULL,
            device_type TEXT NOT NULL,
            unit TEXT NOT NULL,
            display_name TEXT NOT NULL,
            value_kind TEXT NOT NULL,
            value,
            recorded_at INTEGER NOT NULL
        )
    """)

    conn.execute("""
        CREATE INDEX IF NOT EXISTS idx_property_values_series
        ON device_property_values
            (measurement, device_property_id, device_id, device_type, recorded_at)
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            lock_until INTEGER NOT NULL,
            locked_at INTEGER NOT NULL,
            locked_by TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE IF NOT EXISTS devices (
            device_type TEXT NOT NULL,
            device_id TEXT NOT NULL,
            display_name TEXT NOT NULL,
            parameters TEXT NOT NULL,
            custom_identifiers TEXT NOT NULL,
            PRIMARY KEY (device_type, device_id)
        )
    """)

    conn.commit()
    return conn


def _create_connection(path: str) -> sqlite3.Connection:
    """Create a new database connection with proper settings.

    Args:
        path: Path to the SQLite database file

    Returns:
        sqlite3.Connection: Database connection with row factory and PRAGMAs set
    """
    conn = sqlite3.connect(path, check_same_thread=False, timeout=30.0)
    conn.row_factory = sqlite3.Row

    # Set required PRAGMAs
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.commit()

    return conn


def get_connection(path: str) -> sqlite3.Connection:
    """Get a new database connection.

    Callers open a short-lived connection per operation so that worker
    threads never share a connection.

    Args:
        path: Path to the SQLite database file

    Returns:
        sqlite3.Connection: New database connection with row factory and PRAGMAs set
    """
    return _create_connection(path)


def insert_property_value(
    conn: sqlite3.Connection,
    measurement: str,
    device_property_id: str,
    device_id: str,
    device_type: str,
    unit: str,
    display_name: str,
    value_kind: str,
    value: Any,
    recorded_at: int,
) -> None:
    """Append a property value record. Existing records are never modified.

    Args:
        conn: Database connection
        measurement: Value-type name (e.g. "power", "relayState")
        device_property_id: Property name within the device (e.g. "relay")
        device_id: Device ID
        device_type: Device type tag
        unit: Unit of the value, empty string if unitless
        display_name: Display name of the device at write time
        value_kind: Variant tag of the value ("bool", "int", "float", "str")
        value: The raw value
        recorded_at: Epoch milliseconds
    """
    conn.execute(
        """INSERT INTO device_property_values
           (measurement, device_property_id, device_id, device_type, unit,
            display_name, value_kind, value, recorded_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            measurement,
            device_property_id,
            device_id,
            device_type,
            unit,
            display_name,
            value_kind,
            value,
            recorded_at,
        ),
    )


def get_latest_property_value(
    conn: sqlite3.Connection,
    measurement: str,
    device_property_id: str,
    device_id: str,
    device_type: str,
) -> Optional[Tuple[str, Any, int]]:
    """Get the most recent value of a property series.

    Args:
        conn: Database connection
        measurement: Value-type name
        device_property_id: Property name within the device
        device_id: Device ID
        device_type: Device type tag

    Returns:
        Tuple of (value_kind, value, recorded_at) or None if the series is empty
    """
    cursor = conn.execute(
        """SELECT value_kind, value, recorded_at FROM device_property_values
           WHERE measurement = ? AND device_property_id = ?
           AND device_id = ? AND device_type = ?
           ORDER BY recorded_at DESC, rowid DESC LIMIT 1""",
        (measurement, device_property_id, device_id, device_type),
    )
    row = cursor.fetchone()
    if row is None:
        return None
    return (row[0], row[1], row[2])


NUMERIC_VALUE_KINDS = ("int", "float")


def get_last_matching_time(
    conn: sqlite3.Connection,
    measurement: str,
    device_property_id: str,
    device_id: str,
    device_type: str,
    value_kind: str,
    value: Any,
) -> Optional[int]:
    """Get the most recent time a property series held the given value.

    Numbers match regardless of whether they were written as int or float,
    so 100 matches a stored 100.0.

    Args:
        conn: Database connection
        measurement: Value-type name
        device_property_id: Property name within the device
        device_id: Device ID
        device_type: Device type tag
        value_kind: Variant tag of the value to match
        value: The raw value to match

    Returns:
        Epoch milliseconds or None if the value never occurred
    """
    if value_kind in NUMERIC_VALUE_KINDS:
        value_kinds = NUMERIC_VALUE_KINDS
    else:
        value_kinds = (value_kind,)
    placeholders = ", ".join("?" for _ in value_kinds)

    # INTEGER and REAL storage classes compare numerically in SQLite
    cursor = conn.execute(
        f"""SELECT MAX(recorded_at) FROM device_property_values
           WHERE measurement = ? AND device_property_id = ?
           AND device_id = ? AND device_type = ?
           AND value_kind IN ({placeholders}) AND value = ?""",
        (measurement, device_property_id, device_id, device_type, *value_kinds, value),
    )
    result = cursor.fetchone()[0]
    return result if result is not None else None


def try_acquire_lease(
    conn: sqlite3.Connection,
    name: str,
    locked_at: int,
    lock_until: int,
    locked_by: str,
) -> bool:
    """Atomically acquire a lease if it is free or expired.

    A single upsert either inserts the lease row or takes over a row whose
    lock_until has passed. Commits immediately.

    Args:
        conn: Database connection
        name: Lease key
        locked_at: Epoch milliseconds of acquisition
        lock_until: Epoch milliseconds at which the lease expires
        locked_by: Name of the holder

    Returns:
        True if the lease was acquired
    """
    cursor = conn.execute(
        """INSERT INTO leases (name, lock_until, locked_at, locked_by)
           VALUES (?, ?, ?, ?)
           ON CONFLICT(name) DO UPDATE SET
               lock_until = excluded.lock_until,
               locked_at = excluded.locked_at,
               locked_by = excluded.locked_by
           WHERE leases.lock_until <= excluded.locked_at""",
        (name, lock_until, locked_at, locked_by),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(
    conn: sqlite3.Connection,
    name: str,
    locked_at: int,
    locked_by: str,
    unlock_at: int,
) -> bool:
    """Shorten a held lease so it expires at unlock_at. Commits immediately.

    Only the row still owned by the given acquisition is touched, so a lease
    that already expired and was taken over is left alone.

    Args:
        conn: Database connection
        name: Lease key
        locked_at: Epoch milliseconds of the acquisition being released
        locked_by: Name of the holder
        unlock_at: Epoch milliseconds at which the lease becomes free

    Returns:
        True if the lease row was updated
    """
    cursor = conn.execute(
        """UPDATE leases SET lock_until = ?
           WHERE name = ? AND locked_at = ? AND locked_by = ?""",
        (unlock_at, name, locked_at, locked_by),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_lease(conn: sqlite3.Connection, name: str) -> Optional[Dict[str, Any]]:
    """Get the lease row for a key.

    Args:
        conn: Database connection
        name: Lease key

    Returns:
        Dict with lock_until, locked_at and locked_by, or None if never acquired
    """
    cursor = conn.execute(
        "SELECT lock_until, locked_at, locked_by FROM leases WHERE name = ?",
        (name,),
    )
    row = cursor.fetchone()
    if row is None:
        return None
    return {
        "lock_until": row[0],
        "locked_at": row[1],
        "locked_by": row[2],
    }


def upsert_device(
    conn: sqlite3.Connection,
    device_type: str,
    device_id: str,
    display_name: str,
    parameters: str,
    custom_identifiers: str,
) -> None:
    """Insert or update a device definition using INSERT OR REPLACE semantics.

    Args:
        conn: Database connection
        device_type: Device type tag
        device_id: Device ID
        display_name: Display name
        parameters: JSON-encoded parameter mapping
        custom_identifiers: JSON-encoded custom identifier mapping
    """
    conn.execute(
        """INSERT OR REPLACE INTO devices
           (device_type, device_id, display_name, parameters, custom_identifiers)
           VALUES (?, ?, ?, ?, ?)""",
        (device_type, device_id, display_name, parameters, custom_identifiers),
    )


def get_devices_by_type(
    conn: sqlite3.Connection, device_type: str
) -> List[Dict[str, Any]]:
    """Load all device definitions of a type.

    Args:
        conn: Database connection
        device_type: Device type tag

    Returns:
        List of dicts with device_id, display_name, parameters and
        custom_identifiers (the last two JSON-encoded)
    """
    cursor = conn.execute(
        """SELECT device_id, display_name, parameters, custom_identifiers
           FROM devices WHERE device_type = ? ORDER BY device_id""",
        (device_type,),
    )
    return [
        {
            "device_id": row[0],
            "display_name": row[1],
            "parameters": row[2],
            "custom_identifiers": row[3],
        }
        for row in cursor.fetchall()
    ]


def commit_batch(conn: sqlite3.Connection) -> None:
    """Commit all pending writes in a single transaction.

    Args:
        conn: Database connection
    """
    conn.commit()
