"""
Boolean sensor registries.

A registry keeps live subscriptions to a configurable set of devices for one
boolean capability, caches each device's last value and forwards every change
to a handler.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from virtual_occupancy.core.platform import PlatformAdapter, Unsubscribe
from virtual_occupancy.core.tasks import drain, spawn
from virtual_occupancy.occupancy.models import TriggerContext

logger = logging.getLogger(__name__)

CAPABILITY_CONTACT = "alarm_contact"
CAPABILITY_MOTION = "alarm_motion"

DeviceEventHandler = Callable[[str, bool], None]


class BooleanSensorRegistry:
    """
    Registry for one boolean capability across a set of devices.

    Subscriptions are set up as background tasks, so the registry must be
    created while an event loop is running. Each device is resolved, checked
    for the capability, subscribed and then seeded with its current value.
    Failures only skip that device.
    """

    def __init__(
        self,
        platform: PlatformAdapter,
        device_ids: Iterable[str],
        capability_id: str,
        on_device_event: DeviceEventHandler,
    ) -> None:
        """
        Initialize the registry and start subscribing.

        Args:
            platform: Platform adapter used to resolve and subscribe
            device_ids: Devices to monitor
            capability_id: Boolean capability (e.g., "alarm_contact")
            on_device_event: Called with (device_id, value) for every valid value
        """
        self._platform = platform
        self._capability_id = capability_id
        self._on_device_event = on_device_event
        self._device_ids: List[str] = list(dict.fromkeys(device_ids))
        self._listeners: Dict[str, Unsubscribe] = {}
        self._states: Dict[str, bool] = {}
        self._names: Dict[str, str] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

        for device_id in self._device_ids:
            logger.debug(f"Adding listener for device {device_id}")
            spawn(
                self._async_add_listener(device_id),
                f"register listener for {device_id}",
                self._tasks,
            )

    @property
    def capability_id(self) -> str:
        return self._capability_id

    def get_device_ids(self) -> List[str]:
        """Currently configured device IDs (in configuration order)."""
        return list(self._device_ids)

    def is_registered(self, device_id: str) -> bool:
        return device_id in self._device_ids

    def is_listening(self, device_id: str) -> bool:
        """True if a live subscription exists for the device."""
        return device_id in self._listeners

    def get_device_name(self, device_id: str) -> str:
        """Resolved device name, falling back to the ID."""
        return self._names.get(device_id, device_id)

    def get_state(self, device_id: str) -> Optional[bool]:
        """Last known value (None if never seen)."""
        return self._states.get(device_id)

    def get_capability_states(self) -> List[bool]:
        """Known values of all devices that have reported one."""
        return list(self._states.values())

    def build_context(self, device_id: str) -> TriggerContext:
        """Trigger provenance for an event from this registry."""
        return TriggerContext(device_id=device_id, device_name=self.get_device_name(device_id))

    # Aggregate queries

    def is_any_state_true(self) -> bool:
        return any(value is True for value in self._states.values())

    def is_all_state_true(self) -> bool:
        return all(value is True for value in self._states.values())

    def is_any_state_false(self) -> bool:
        return any(value is False for value in self._states.values())

    def is_all_state_false(self) -> bool:
        return all(value is False for value in self._states.values())

    # Lifecycle

    async def async_update_device_ids(self, device_ids: Iterable[str]) -> None:
        """
        Reconcile subscriptions with a new set of device IDs.

        Removed devices are unsubscribed and forgotten; added devices go
        through the same resolve/verify/subscribe/seed sequence as on creation.
        """
        new_ids = list(dict.fromkeys(device_ids))
        removed = [i for i in self._device_ids if i not in new_ids]
        added = [i for i in new_ids if i not in self._device_ids]

        self._device_ids = new_ids

        for device_id in removed:
            logger.info(f"Removing listener for device {device_id}")
            self._remove_listener(device_id)

        for device_id in added:
            logger.info(f"Adding listener for device {device_id}")
            await self._async_add_listener(device_id)

    async def async_wait_pending(self) -> None:
        """Wait for in-flight subscription tasks."""
        await drain(self._tasks)

    def destroy(self) -> None:
        """Unsubscribe everything."""
        for device_id in list(self._listeners):
            logger.debug(f"Removing listener for device {device_id}")
            self._remove_listener(device_id)
        self._states.clear()
        self._names.clear()
        # In-flight subscription tasks see the empty ID list and bail out.
        self._device_ids = []

    # Internals

    async def _async_add_listener(self, device_id: str) -> None:
        try:
            device = await self._platform.async_get_device(device_id)
        except Exception:
            logger.error(f"Failed to register listener for {device_id}", exc_info=True)
            return

        if device_id not in self._device_ids:
            logger.debug(f"Device {device_id} was removed while resolving, skipping")
            return

        if device is None:
            logger.warning(f"Could not find device instance for {device_id}")
            return

        if not device.has_capability(self._capability_id):
            logger.warning(
                f"Device {device.name} ({device_id}) does not have capability {self._capability_id}"
            )
            return

        # Re-adding a device replaces any previous subscription.
        self._remove_listener(device_id, forget=False)

        try:
            unsubscribe = self._platform.subscribe(
                device_id,
                self._capability_id,
                lambda value: self._handle_device_event(device_id, value),
            )
        except Exception:
            logger.error(f"Failed to subscribe to {device_id}", exc_info=True)
            return

        self._listeners[device_id] = unsubscribe
        self._names[device_id] = device.name
        logger.info(f"Start listening to {device.name} ({self._capability_id})")

        self._handle_device_event(device_id, device.get_value(self._capability_id), initial=True)

    def _remove_listener(self, device_id: str, forget: bool = True) -> None:
        unsubscribe = self._listeners.pop(device_id, None)
        if unsubscribe is not None:
            try:
                unsubscribe()
            except Exception:
                logger.error(f"Failed to unsubscribe from {device_id}", exc_info=True)
            logger.debug(f"Stopped listening to {device_id}")
        if forget:
            self._states.pop(device_id, None)
            self._names.pop(device_id, None)

    def _handle_device_event(self, device_id: str, value: Any, initial: bool = False) -> None:
        if device_id not in self._listeners:
            logger.debug(f"Ignoring value from unmonitored device {device_id}")
            return

        if value is None:
            logger.debug(f"Received null value for device {device_id}, skipping")
            return

        if not isinstance(value, bool):
            logger.error(
                f"Received value of incorrect type for device {device_id}: "
                f"expected bool, got {type(value).__name__}"
            )
            return

        self._states[device_id] = value
        self._on_value(device_id, value, initial)

        try:
            self._on_device_event(device_id, value)
        except Exception:
            logger.error(f"Error handling capability event for device {device_id}", exc_info=True)

    def _on_value(self, device_id: str, value: bool, initial: bool) -> None:
        """
        Hook for subclasses, called after the cache update and before the handler.

        initial is True for the value read right after subscribing.
        """


class ContactSensorRegistry(BooleanSensorRegistry):
    """Registry for door/window contact sensors."""

    def __init__(
        self,
        platform: PlatformAdapter,
        device_ids: Iterable[str],
        on_device_event: DeviceEventHandler,
    ) -> None:
        super().__init__(platform, device_ids, CAPABILITY_CONTACT, on_device_event)
