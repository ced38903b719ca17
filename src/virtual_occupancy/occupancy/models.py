"""Data models for the occupancy module.

This module defines the core data structures used throughout the occupancy system.
Context and transition records are frozen (immutable); learning data is the one
mutable record, owned by a single motion sensor registry.

Licensed under MIT License
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional

from virtual_occupancy.utils import parse_sensor_ids_setting


class OccupancyState(Enum):
    """The externally visible belief about room occupancy.

    EMPTY: Nobody is in the room (initial state)
    OCCUPIED: Motion confirmed somebody is inside
    DOOR_OPEN: At least one door is open
    CHECKING: All doors closed, waiting for motion evidence
    """

    EMPTY = "empty"
    OCCUPIED = "occupied"
    DOOR_OPEN = "door_open"
    CHECKING = "checking"


class EventType(Enum):
    """Events fed into the occupancy state machine.

    Events (from sensors via the orchestrator):
        ANY_DOOR_OPEN: A door opened
        ALL_DOORS_CLOSED: The last open door closed
        MOTION_DETECTED: A motion sensor reported motion
        MOTION_TIMEOUT: A single motion sensor reset (informational, never transitions)

    Internal:
        TIMEOUT: The checking rendezvous completed with no live motion
    """

    ANY_DOOR_OPEN = "any_door_open"
    ALL_DOORS_CLOSED = "all_doors_closed"
    MOTION_DETECTED = "motion_detected"
    MOTION_TIMEOUT = "motion_timeout"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class TriggerContext:
    """What caused a state change. Used for observability only.

    Attributes:
        device_id: Device (or pseudo-device such as "system") behind the change.
        device_name: Human-readable name of that device.
        timeout_seconds: Timeout in effect for the device, if applicable.
    """

    device_id: str
    device_name: str
    timeout_seconds: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "device_id": self.device_id,
            "device_name": self.device_name,
            "timeout_seconds": self.timeout_seconds,
        }


SYSTEM_CONTEXT = TriggerContext(device_id="system", device_name="System")


@dataclass(frozen=True)
class StateTransition:
    """A record of a state change for debugging.

    Attributes:
        previous_state: State before the change.
        new_state: State after the change.
        context: Trigger provenance.
        event_type: Event that caused the change (None when forced).
    """

    previous_state: OccupancyState
    new_state: OccupancyState
    context: TriggerContext
    event_type: Optional[EventType] = None

    @property
    def reason(self) -> str:
        if self.event_type is None:
            return "forced"
        return self.event_type.value


@dataclass(frozen=True)
class DeviceConfig:
    """Input for one checking countdown: a motion sensor and its timeout."""

    id: str
    timeout_ms: int


@dataclass
class TimeoutLearningData:
    """Per motion sensor learning state.

    Attributes:
        last_true_timestamp: Monotonic ms of the pending motion start, if any.
        learned_timeout_ms: Shortest observed motion cycle (None until learned).
    """

    last_true_timestamp: Optional[int] = None
    learned_timeout_ms: Optional[int] = None


@dataclass(frozen=True)
class OccupancySettings:
    """Configuration for one virtual occupancy sensor.

    Attributes:
        motion_timeout: Default motion sensor blind-time in seconds (default: 30).
        auto_learn_timeout: Learn each motion sensor's real blind-time.
        active_on_occupied: Alarm output while occupied.
        active_on_empty: Alarm output while empty.
        active_on_door_open: Alarm output while a door is open.
        active_on_checking: Alarm output while checking.
        door_sensors: Contact sensor device IDs.
        motion_sensors: Motion sensor device IDs.
    """

    motion_timeout: int = 30
    auto_learn_timeout: bool = True
    active_on_occupied: bool = True
    active_on_empty: bool = False
    active_on_door_open: bool = True
    active_on_checking: bool = True
    door_sensors: tuple[str, ...] = field(default_factory=tuple)
    motion_sensors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def motion_timeout_ms(self) -> int:
        return self.motion_timeout * 1000

    def is_active_for(self, state: OccupancyState) -> bool:
        """Alarm output configured for a state."""
        return {
            OccupancyState.OCCUPIED: self.active_on_occupied,
            OccupancyState.EMPTY: self.active_on_empty,
            OccupancyState.DOOR_OPEN: self.active_on_door_open,
            OccupancyState.CHECKING: self.active_on_checking,
        }[state]

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "OccupancySettings":
        """Build settings from a config dict.

        Unknown keys (such as "version") are ignored; missing keys use defaults.

        Raises:
            ValueError: If a value has the wrong type or is out of range.
        """
        values: Dict[str, Any] = {}

        if "motion_timeout" in config:
            timeout = config["motion_timeout"]
            if isinstance(timeout, bool) or not isinstance(timeout, (int, float)):
                raise ValueError(f"motion_timeout must be a number, got {timeout!r}")
            if isinstance(timeout, float) and not timeout.is_integer():
                raise ValueError(f"motion_timeout must be whole seconds, got {timeout}")
            if timeout < 1:
                raise ValueError(f"motion_timeout must be at least 1 second, got {timeout}")
            values["motion_timeout"] = int(timeout)

        for name in (
            "auto_learn_timeout",
            "active_on_occupied",
            "active_on_empty",
            "active_on_door_open",
            "active_on_checking",
        ):
            if name in config:
                if not isinstance(config[name], bool):
                    raise ValueError(f"{name} must be a boolean, got {config[name]!r}")
                values[name] = config[name]

        for name in ("door_sensors", "motion_sensors"):
            if name in config:
                values[name] = _parse_ids(name, config[name])

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            result[f.name] = list(value) if isinstance(value, tuple) else value
        return result


def _parse_ids(name: str, value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(parse_sensor_ids_setting(value))
    if isinstance(value, (list, tuple)):
        if not all(isinstance(v, str) for v in value):
            raise ValueError(f"{name} must contain device ID strings, got {value!r}")
        return tuple(dict.fromkeys(v.strip() for v in value if v.strip()))
    raise ValueError(f"{name} must be a list or comma-separated string, got {value!r}")
