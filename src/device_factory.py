"""Device factory module.

Maps device-type tags to builder functions, persists created devices and
hands them to the poll scheduler. A device type this factory does not know
is reported as unsupported (None) rather than raised, so a host can try
other factories.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set

import database
import power_sensor
from power_sensor import PowerSensor
from scheduler import validate_cron_expression

logger = logging.getLogger(__name__)


def _parse_threshold(parameters: Dict[str, str], name: str) -> float:
    raw = parameters.get(name)
    if raw is None:
        raise ValueError(f"missing parameter {name!r}")
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"parameter {name!r} must be a number, got {raw!r}")


class DeviceFactory:
    """Creates, persists and schedules devices by type tag."""

    def __init__(
        self, db_path: str, sample_source: Any, state_store: Any, scheduler: Any
    ) -> None:
        """Initialize the factory.

        Args:
            db_path: Path to the SQLite database holding device definitions
            sample_source: Sample source handed to created sensors
            state_store: StateStore handed to created sensors
            scheduler: PollScheduler created sensors are registered with
        """
        self._db_path = db_path
        self._sample_source = sample_source
        self._state_store = state_store
        self._scheduler = scheduler
        self._builders: Dict[str, Callable[..., Any]] = {
            power_sensor.POWER_SENSOR_TYPE: self._build_power_sensor,
        }

    def supported_device_types(self) -> Set[str]:
        return set(self._builders)

    def supports_device_type(self, device_type: str) -> bool:
        return device_type in self._builders

    def create_device(
        self,
        device_type: str,
        device_id: str,
        display_name: str,
        parameters: Dict[str, str],
        custom_identifiers: Optional[Dict[str, str]] = None,
    ) -> Optional[Any]:
        """Create a device, persist its definition and schedule it.

        Args:
            device_type: Device type tag
            device_id: Device ID
            display_name: Human readable name
            parameters: Type-specific parameters (string values)
            custom_identifiers: Free-form identifier key/value pairs

        Returns:
            The device, or None if the type is not supported

        Raises:
            ValueError: If the parameters are invalid for the type
        """
        builder = self._builders.get(device_type)
        if builder is None:
            logger.debug(f"Device type {device_type!r} is not supported")
            return None

        device = builder(device_id, display_name, parameters, custom_identifiers or {})
        self._persist(device)
        self._scheduler.register(device)
        return device

    def schedule_persisted_devices(self) -> List[Any]:
        """Schedule every persisted device of a supported type.

        Devices already scheduled (e.g. created from configuration during
        this startup) are not scheduled twice. Definitions that can no
        longer be built are logged and skipped.

        Returns:
            The devices built from the database
        """
        devices = []
        conn = database.get_connection(self._db_path)
        try:
            rows = {
                device_type: database.get_devices_by_type(conn, device_type)
                for device_type in self._builders
            }
        finally:
            conn.close()

        for device_type, definitions in rows.items():
            builder = self._builders[device_type]
            for definition in definitions:
                try:
                    device = builder(
                        definition["device_id"],
                        definition["display_name"],
                        json.loads(definition["parameters"]),
                        json.loads(definition["custom_identifiers"]),
                    )
                except ValueError as e:
                    logger.error(
                        f"Skipping persisted {device_type} {definition['device_id']!r}: {e}"
                    )
                    continue
                self._scheduler.register(device)
                devices.append(device)

        logger.info(f"Loaded {len(devices)} persisted device(s)")
        return devices

    def _persist(self, device: Any) -> None:
        conn = database.get_connection(self._db_path)
        try:
            database.upsert_device(
                conn,
                device.type,
                device.id,
                device.display_name,
                json.dumps(device.parameters, sort_keys=True),
                json.dumps(device.custom_identifiers, sort_keys=True),
            )
            database.commit_batch(conn)
        finally:
            conn.close()

    def _build_power_sensor(
        self,
        device_id: str,
        display_name: str,
        parameters: Dict[str, str],
        custom_identifiers: Dict[str, str],
    ) -> PowerSensor:
        query = parameters.get(power_sensor.QUERY_PARAMETER)
        if not query:
            raise ValueError(f"missing parameter {power_sensor.QUERY_PARAMETER!r}")

        on_threshold = _parse_threshold(parameters, power_sensor.ON_THRESHOLD_PARAMETER)
        off_threshold = _parse_threshold(parameters, power_sensor.OFF_THRESHOLD_PARAMETER)
        if on_threshold < off_threshold:
            logger.warning(
                f"{device_id}: onThreshold {on_threshold} is below "
                f"offThreshold {off_threshold}"
            )

        cron_expression = parameters.get(power_sensor.UPDATE_CRON_EXPRESSION_PARAMETER)
        if not cron_expression:
            raise ValueError(
                f"missing parameter {power_sensor.UPDATE_CRON_EXPRESSION_PARAMETER!r}"
            )
        validate_cron_expression(cron_expression)

        version = parameters.get(power_sensor.VERSION_PARAMETER)
        if version is not None and version != power_sensor.PARAMETER_VERSION:
            logger.warning(
                f"{device_id}: parameter version {version} differs from "
                f"{power_sensor.PARAMETER_VERSION}"
            )

        return PowerSensor(
            sensor_id=device_id,
            display_name=display_name,
            sample_source=self._sample_source,
            state_store=self._state_store,
            query=query,
            on_threshold=on_threshold,
            off_threshold=off_threshold,
            cron_expression=cron_expression,
            custom_identifiers=custom_identifiers,
        )
