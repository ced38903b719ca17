"""
Platform adapter interface for virtual occupancy sensors.

The adapter provides an abstraction layer between the occupancy core and
the host platform (Homey, Home Assistant, etc.). The integration layer provides
a concrete implementation and passes it explicitly to every registry.

Design Principle:
    The adapter is intentionally minimal. Zone lookups, capability discovery
    and pairing belong in the integration layer. The core only needs to
    resolve a device, listen to one capability, schedule timers, read a
    monotonic clock and persist a few small values.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

CapabilityCallback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class TimerHandle(Protocol):
    """Anything that can cancel a scheduled callback (e.g. asyncio.TimerHandle)."""

    def cancel(self) -> None: ...


@dataclass
class DeviceInfo:
    """
    A resolved platform device.

    Attributes:
        id: Stable device ID
        name: Human-readable name
        capabilities: Capability ID -> current value
    """

    id: str
    name: str
    capabilities: Dict[str, Any] = field(default_factory=dict)

    def has_capability(self, capability_id: str) -> bool:
        return capability_id in self.capabilities

    def get_value(self, capability_id: str) -> Any:
        return self.capabilities.get(capability_id)


class PlatformAdapter(ABC):
    """
    Abstract interface for platform operations.

    The host platform provides a concrete implementation that translates
    these calls to platform-specific operations.

    This interface is intentionally minimal:
    - async_get_device: Resolve a device by ID
    - subscribe: Listen to value changes of one capability
    - call_later / monotonic: Timers and a monotonic clock
    - get_store_value / async_set_store_value / async_unset_store_value: Persistence
    """

    @abstractmethod
    async def async_get_device(self, device_id: str) -> Optional[DeviceInfo]:
        """
        Resolve a device.

        Args:
            device_id: Device to resolve

        Returns:
            The device, or None if it doesn't exist
        """
        pass

    @abstractmethod
    def subscribe(
        self,
        device_id: str,
        capability_id: str,
        callback: CapabilityCallback,
    ) -> Unsubscribe:
        """
        Listen to value changes of a device capability.

        Args:
            device_id: Device to listen to
            capability_id: Capability to listen to (e.g., "alarm_motion")
            callback: Called with the new raw value on every change

        Returns:
            Callable that tears the listener down
        """
        pass

    @abstractmethod
    def get_store_value(self, key: str) -> Any:
        """
        Read a persisted value.

        Returns:
            The stored value, or None if the key is absent
        """
        pass

    @abstractmethod
    async def async_set_store_value(self, key: str, value: Any) -> None:
        """Persist a value under a key."""
        pass

    @abstractmethod
    async def async_unset_store_value(self, key: str) -> None:
        """Remove a persisted key (absent keys are fine)."""
        pass

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """
        Schedule a callback after a delay.

        Default implementation uses the running asyncio event loop.

        Args:
            delay: Delay in seconds
            callback: Zero-argument callable

        Returns:
            Handle whose cancel() prevents the callback from running
        """
        return asyncio.get_running_loop().call_later(delay, callback)

    def monotonic(self) -> float:
        """
        Get a monotonic timestamp in seconds.

        Returns:
            Seconds from an arbitrary, never-decreasing origin
        """
        return time.monotonic()


class _MockTimer:
    """Timer scheduled on the MockPlatformAdapter's manual clock."""

    def __init__(self, due: float, seq: int, callback: Callable[[], None]) -> None:
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class MockPlatformAdapter(PlatformAdapter):
    """
    Mock adapter for testing.

    Keeps devices, subscriptions and the store in memory and runs timers on
    a manual clock that only moves when advance() is called.

    Example:
        platform = MockPlatformAdapter()
        platform.add_device("door1", "Front Door", {"alarm_contact": False})
        platform.set_capability_value("door1", "alarm_contact", True)
        platform.advance(30)
    """

    def __init__(self) -> None:
        self._devices: Dict[str, DeviceInfo] = {}
        self._subscribers: Dict[tuple[str, str], List[CapabilityCallback]] = {}
        self._store: Dict[str, Any] = {}
        self._timers: List[_MockTimer] = []
        self._timer_seq = 0
        self._now = 0.0
        self.store_writes: List[tuple[str, Any]] = []
        self.fail_store_reads = False
        self.fail_store_writes = False
        self.unresolvable_ids: set[str] = set()

    # Test helpers

    def add_device(
        self,
        device_id: str,
        name: Optional[str] = None,
        capabilities: Optional[Dict[str, Any]] = None,
    ) -> DeviceInfo:
        """Register a device for testing."""
        device = DeviceInfo(id=device_id, name=name or device_id, capabilities=dict(capabilities or {}))
        self._devices[device_id] = device
        return device

    def remove_device(self, device_id: str) -> None:
        """Forget a device (later resolutions return None)."""
        self._devices.pop(device_id, None)

    def set_capability_value(self, device_id: str, capability_id: str, value: Any) -> None:
        """Set a capability value and notify listeners."""
        device = self._devices.get(device_id)
        if device is not None:
            device.capabilities[capability_id] = value
        for callback in list(self._subscribers.get((device_id, capability_id), [])):
            callback(value)

    def subscriber_count(self, device_id: str, capability_id: str) -> int:
        """Number of live listeners for a device capability."""
        return len(self._subscribers.get((device_id, capability_id), []))

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in due-time order."""
        target = self._now + seconds
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(timer)
            self._now = timer.due
            timer.callback()
        self._now = target
        self._timers = [t for t in self._timers if not t.cancelled]

    @property
    def pending_timers(self) -> int:
        """Number of scheduled, not yet fired or cancelled timers."""
        return len([t for t in self._timers if not t.cancelled])

    @property
    def store(self) -> Dict[str, Any]:
        """Direct access to the in-memory store."""
        return self._store

    # PlatformAdapter implementation

    async def async_get_device(self, device_id: str) -> Optional[DeviceInfo]:
        if device_id in self.unresolvable_ids:
            raise RuntimeError(f"Device lookup failed for {device_id}")
        return self._devices.get(device_id)

    def subscribe(
        self,
        device_id: str,
        capability_id: str,
        callback: CapabilityCallback,
    ) -> Unsubscribe:
        callbacks = self._subscribers.setdefault((device_id, capability_id), [])
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def get_store_value(self, key: str) -> Any:
        if self.fail_store_reads:
            raise OSError(f"Store read failed for '{key}'")
        return self._store.get(key)

    async def async_set_store_value(self, key: str, value: Any) -> None:
        if self.fail_store_writes:
            raise OSError(f"Store write failed for '{key}'")
        self._store[key] = value
        self.store_writes.append((key, value))

    async def async_unset_store_value(self, key: str) -> None:
        if self.fail_store_writes:
            raise OSError(f"Store write failed for '{key}'")
        self._store.pop(key, None)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        self._timer_seq += 1
        timer = _MockTimer(self._now + delay, self._timer_seq, callback)
        self._timers.append(timer)
        return timer

    def monotonic(self) -> float:
        return self._now
