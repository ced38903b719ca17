"""
virtual-occupancy: Door/motion occupancy inference for a single room.

A virtual occupancy sensor combines door contact sensors and motion sensors:
- A room only becomes empty after the doors closed and every motion sensor
  had the chance to report
- Motion sensor blind-times are learned and persisted per sensor
- State changes are published on a synchronous Event Bus
- Platform access goes through an injected PlatformAdapter
"""

# occupancy must be imported first: core.storage and the sensor registries
# depend on occupancy.models.
from virtual_occupancy.occupancy import (
    EventType,
    OccupancyEngine,
    OccupancySettings,
    OccupancyState,
    StateTransition,
    TriggerContext,
    VirtualOccupancySensor,
)
from virtual_occupancy.core.bus import Event, EventBus, EventFilter
from virtual_occupancy.core.platform import DeviceInfo, MockPlatformAdapter, PlatformAdapter

__version__ = "0.3.0-alpha"

__all__ = [
    "VirtualOccupancySensor",
    "OccupancyEngine",
    "OccupancySettings",
    "OccupancyState",
    "EventType",
    "StateTransition",
    "TriggerContext",
    "Event",
    "EventBus",
    "EventFilter",
    "DeviceInfo",
    "PlatformAdapter",
    "MockPlatformAdapter",
]
