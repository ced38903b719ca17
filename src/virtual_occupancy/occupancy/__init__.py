"""
Occupancy module for virtual-occupancy.

Infers whether a room is occupied from door and motion sensors.

Features:
- 4 states: EMPTY, OCCUPIED, DOOR_OPEN, CHECKING
- Doors open/close drive the room into CHECKING
- CHECKING resolves only after every motion sensor's timeout elapsed
- Configurable alarm output per state
"""

from .models import (
    EventType,
    OccupancySettings,
    OccupancyState,
    StateTransition,
    TriggerContext,
    DeviceConfig,
    TimeoutLearningData,
)
from .engine import OccupancyEngine
from .module import VirtualOccupancySensor

__all__ = [
    "VirtualOccupancySensor",
    "OccupancyEngine",
    "EventType",
    "OccupancySettings",
    "OccupancyState",
    "StateTransition",
    "TriggerContext",
    "DeviceConfig",
    "TimeoutLearningData",
]
