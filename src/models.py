"""Shared data types for samples, relay state and device properties.

Plain immutable dataclasses consumed by every other module.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Sample:
    """One time-stamped numeric reading from the time-series backend."""
    timestamp: datetime
    value: float


@dataclass(frozen=True)
class RelayState:
    """Last known derived state of a relay."""
    is_on: bool
    effective_at: datetime


@dataclass(frozen=True)
class DeviceId:
    """Identity of a device: its id plus its device-type tag."""
    id: str
    type: str


@dataclass(frozen=True)
class DevicePropertyId:
    """Addresses one property series of a device, e.g. "power" or "relay"."""
    device_id: DeviceId
    id: str


class ValueType(Enum):
    """Value-type tags used as measurement names in the state store."""
    POWER = ("power", "W")
    RELAY_STATE = ("relayState", "")

    @property
    def type_name(self) -> str:
        return self.value[0]

    @property
    def unit(self) -> str:
        return self.value[1]


@dataclass(frozen=True)
class ValueWithTimestamp:
    """A value read back from the state store together with its timestamp."""
    value: Any
    timestamp: datetime


@dataclass(frozen=True)
class PropertyValue:
    """One value to append to a property series."""
    property_id: DevicePropertyId
    value_type: ValueType
    display_name: str
    value: Any
    timestamp: datetime
