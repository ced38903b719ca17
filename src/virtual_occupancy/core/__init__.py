"""
Core components of virtual-occupancy.

This package contains:
- bus: Event Bus implementation
- platform: PlatformAdapter boundary and an in-memory mock
- tasks: detached background tasks
- storage: versioned persistence for learned timeouts
"""

from virtual_occupancy.core.bus import Event, EventBus, EventFilter
from virtual_occupancy.core.platform import DeviceInfo, MockPlatformAdapter, PlatformAdapter

__all__ = [
    "Event",
    "EventBus",
    "EventFilter",
    "DeviceInfo",
    "PlatformAdapter",
    "MockPlatformAdapter",
]
