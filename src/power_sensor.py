"""Power sensor device module.

A power sensor reads power samples from the time-series backend, derives
the state of the relay it watches with hysteresis thresholds and publishes
both to the state store.
"""

import logging
from typing import Any, Dict, Optional

import hysteresis
from models import DeviceId, DevicePropertyId, PropertyValue, RelayState, ValueType

logger = logging.getLogger(__name__)

POWER_SENSOR_TYPE = "influxdb2-power-sensor"

QUERY_PARAMETER = "query"
ON_THRESHOLD_PARAMETER = "onThreshold"
OFF_THRESHOLD_PARAMETER = "offThreshold"
UPDATE_CRON_EXPRESSION_PARAMETER = "updateCronExpression"
VERSION_PARAMETER = "version"
PARAMETER_VERSION = "1.0.0"


class PowerSensor:
    """Derives relay on/off state from polled power samples.

    check_state() is meant to be invoked through the poll scheduler, which
    holds the sensor's lease for the duration of the call. The sensor itself
    does no locking.
    """

    type = POWER_SENSOR_TYPE

    def __init__(
        self,
        sensor_id: str,
        display_name: str,
        sample_source: Any,
        state_store: Any,
        query: str,
        on_threshold: float,
        off_threshold: float,
        cron_expression: str,
        custom_identifiers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Initialize the power sensor.

        Args:
            sensor_id: Device ID
            display_name: Human readable name, written alongside values
            sample_source: Object with query(query) -> List[Sample]
            state_store: StateStore instance
            query: Backend query returning the power samples of one poll
            on_threshold: Power at or above which the relay is on
            off_threshold: Power at or below which the relay is off
            cron_expression: Poll cadence
            custom_identifiers: Free-form identifier key/value pairs
        """
        self._id = sensor_id
        self._display_name = display_name
        self._sample_source = sample_source
        self._state_store = state_store
        self._query = query
        self._on_threshold = on_threshold
        self._off_threshold = off_threshold
        self._cron_expression = cron_expression
        self._custom_identifiers = dict(custom_identifiers or {})

        device_id = DeviceId(sensor_id, POWER_SENSOR_TYPE)
        self._relay_property_id = DevicePropertyId(device_id, "relay")
        self._power_property_id = DevicePropertyId(device_id, "power")

    @property
    def id(self) -> str:
        return self._id

    @property
    def display_name(self) -> str:
        return self._display_name

    @display_name.setter
    def display_name(self, display_name: str) -> None:
        self._display_name = display_name

    @property
    def custom_identifiers(self) -> Dict[str, str]:
        return dict(self._custom_identifiers)

    @custom_identifiers.setter
    def custom_identifiers(self, custom_identifiers: Dict[str, str]) -> None:
        self._custom_identifiers = dict(custom_identifiers)

    @property
    def cron_expression(self) -> str:
        return self._cron_expression

    @property
    def power_property_id(self) -> DevicePropertyId:
        return self._power_property_id

    @property
    def relay_property_id(self) -> DevicePropertyId:
        return self._relay_property_id

    @property
    def parameters(self) -> Dict[str, str]:
        """Parameters in their persisted string form."""
        return {
            QUERY_PARAMETER: self._query,
            ON_THRESHOLD_PARAMETER: str(self._on_threshold),
            OFF_THRESHOLD_PARAMETER: str(self._off_threshold),
            UPDATE_CRON_EXPRESSION_PARAMETER: self._cron_expression,
            VERSION_PARAMETER: PARAMETER_VERSION,
        }

    def _previous_state(self) -> Optional[RelayState]:
        latest = self._state_store.find_latest(
            self._relay_property_id, ValueType.RELAY_STATE, bool
        )
        if latest is None:
            return None
        return RelayState(is_on=latest.value, effective_at=latest.timestamp)

    def check_state(self) -> None:
        """Poll the backend and publish power and relay state.

        Does nothing when the poll returns no samples. The previous relay
        state is read before anything is written, so a failing read leaves
        the store untouched. Power and relay state are written together or
        not at all.

        Raises:
            SampleSourceError: If the samples cannot be read
        """
        logger.debug(f"Reading power value of {self._display_name}")
        samples = self._sample_source.query(self._query)
        if not samples:
            logger.debug(f"No new values for {self._display_name}")
            return

        previous = self._previous_state()
        result = hysteresis.infer(
            previous, samples, self._on_threshold, self._off_threshold
        )

        self._state_store.write_all([
            PropertyValue(
                self._power_property_id,
                ValueType.POWER,
                self._display_name,
                result.latest_power.value,
                result.latest_power.timestamp,
            ),
            PropertyValue(
                self._relay_property_id,
                ValueType.RELAY_STATE,
                self._display_name,
                result.is_on,
                result.effective_at,
            ),
        ])

        if previous is not None and previous.is_on != result.is_on:
            logger.info(
                f"{self._display_name} state change to "
                f"{'on' if result.is_on else 'off'} at {result.effective_at.isoformat()}"
            )
