"""
Motion sensor registry with per-sensor timeout learning.

A motion sensor keeps reporting motion for an internal blind-time after its
last detection. That value cannot be queried, so it is learned by timing each
true -> false cycle and keeping the shortest one: a long cycle only means
something kept retriggering the sensor, a short one cannot be shorter than
the hardware timeout.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from virtual_occupancy.core.platform import PlatformAdapter
from virtual_occupancy.core.storage import TimeoutStore
from virtual_occupancy.core.tasks import spawn
from virtual_occupancy.occupancy.models import DeviceConfig, TimeoutLearningData, TriggerContext

from .registry import CAPABILITY_MOTION, BooleanSensorRegistry, DeviceEventHandler

logger = logging.getLogger(__name__)

MIN_LEARNED_TIMEOUT_MS = 1000


class MotionSensorRegistry(BooleanSensorRegistry):
    """
    Registry for motion sensors that learns each sensor's blind-time.

    Learned timeouts are persisted through a TimeoutStore and restored on
    creation. Entries for devices that are not configured are dropped.
    """

    def __init__(
        self,
        platform: PlatformAdapter,
        device_ids: Iterable[str],
        on_device_event: DeviceEventHandler,
        timeout_store: TimeoutStore,
        default_timeout_ms: int,
        enable_learning: bool = True,
        min_learned_timeout_ms: int = MIN_LEARNED_TIMEOUT_MS,
    ) -> None:
        """
        Initialize the registry, restore learned timeouts and start subscribing.

        Args:
            platform: Platform adapter
            device_ids: Motion sensors to monitor
            on_device_event: Called with (device_id, value) for every valid value
            timeout_store: Persistence for learned timeouts
            default_timeout_ms: Timeout used for sensors without a learned value
            enable_learning: Measure motion cycles
            min_learned_timeout_ms: Floor for learned values
        """
        self._timeout_store = timeout_store
        self._default_timeout_ms = default_timeout_ms
        self._enable_learning = enable_learning
        self._min_learned_timeout_ms = min_learned_timeout_ms
        self._timeout_learning: Dict[str, TimeoutLearningData] = {}
        # Saves write a snapshot of _timeout_learning taken under this lock,
        # so the newest in-memory state is always written last.
        self._save_lock = asyncio.Lock()

        super().__init__(platform, device_ids, CAPABILITY_MOTION, on_device_event)

        self._restore_learned_timeouts()

    @property
    def default_timeout_ms(self) -> int:
        return self._default_timeout_ms

    @default_timeout_ms.setter
    def default_timeout_ms(self, value: int) -> None:
        self._default_timeout_ms = value

    @property
    def enable_learning(self) -> bool:
        return self._enable_learning

    @enable_learning.setter
    def enable_learning(self, enabled: bool) -> None:
        if not enabled:
            # A measurement window must not survive a disabled period.
            for data in self._timeout_learning.values():
                data.last_true_timestamp = None
        self._enable_learning = enabled

    # Queries

    def get_learned_timeout(self, device_id: str) -> Optional[int]:
        """Learned timeout in ms, or None if never learned."""
        data = self._timeout_learning.get(device_id)
        return data.learned_timeout_ms if data else None

    def get_all_learned_timeouts(self) -> Dict[str, Optional[int]]:
        """Device ID -> learned timeout (None for tracked but unlearned devices)."""
        return {
            device_id: data.learned_timeout_ms
            for device_id, data in self._timeout_learning.items()
        }

    def get_min_learned_timeout(self, default_ms: int) -> int:
        """Smallest learned timeout across all devices, or default_ms if none is lower."""
        minimum = default_ms
        for data in self._timeout_learning.values():
            if data.learned_timeout_ms is not None and data.learned_timeout_ms < minimum:
                minimum = data.learned_timeout_ms
        return minimum

    def get_effective_timeout(self, device_id: str) -> int:
        """Learned timeout if known, else the default."""
        learned = self.get_learned_timeout(device_id)
        return learned if learned is not None else self._default_timeout_ms

    def get_device_configs(self) -> List[DeviceConfig]:
        """One checking config per configured motion sensor."""
        return [
            DeviceConfig(id=device_id, timeout_ms=self.get_effective_timeout(device_id))
            for device_id in self.get_device_ids()
        ]

    def build_context(self, device_id: str) -> TriggerContext:
        return TriggerContext(
            device_id=device_id,
            device_name=self.get_device_name(device_id),
            timeout_seconds=round(self.get_effective_timeout(device_id) / 1000),
        )

    # Mutations

    def remove_device(self, device_id: str) -> None:
        """
        Drop a device's learned timeout from memory and storage.

        Safe to call for devices without learning data.
        """
        if self._timeout_learning.pop(device_id, None) is not None:
            self._schedule_save(f"remove learned timeout for {device_id}")

    async def async_update_device_ids(self, device_ids: Iterable[str]) -> None:
        """Update monitored devices and forget timeouts of removed ones."""
        old_ids = set(self.get_device_ids())
        new_ids = list(dict.fromkeys(device_ids))

        await super().async_update_device_ids(new_ids)

        for device_id in old_ids:
            if device_id not in new_ids:
                logger.info(f"Removing learned timeout data for {device_id}")
                self.remove_device(device_id)

    def destroy(self) -> None:
        super().destroy()
        for data in self._timeout_learning.values():
            data.last_true_timestamp = None

    # Learning

    def _on_value(self, device_id: str, value: bool, initial: bool) -> None:
        # A value read at subscribe time says nothing about when motion began.
        if self._enable_learning and not initial:
            self._track_timeout_learning(device_id, value)

    def _track_timeout_learning(self, device_id: str, value: bool) -> None:
        now_ms = int(self._platform.monotonic() * 1000)

        if value:
            # Only the most recent true -> false gap counts.
            data = self._timeout_learning.setdefault(device_id, TimeoutLearningData())
            data.last_true_timestamp = now_ms
            return

        data = self._timeout_learning.get(device_id)
        if data is None or data.last_true_timestamp is None:
            return

        duration_ms = max(now_ms - data.last_true_timestamp, self._min_learned_timeout_ms)
        data.last_true_timestamp = None

        if data.learned_timeout_ms is None or duration_ms < data.learned_timeout_ms:
            logger.info(
                f"Learned new minimum timeout for {device_id}: {duration_ms} ms "
                f"(was {data.learned_timeout_ms} ms)"
            )
            data.learned_timeout_ms = duration_ms
            self._schedule_save("save learned timeouts")

    # Persistence

    def _schedule_save(self, description: str) -> None:
        spawn(self._async_save_learned_timeouts(), description, self._tasks)

    async def _async_save_learned_timeouts(self) -> None:
        async with self._save_lock:
            await self._timeout_store.async_save(self.get_all_learned_timeouts())

    def _restore_learned_timeouts(self) -> None:
        stored = self._timeout_store.load()
        if not stored:
            return

        configured = set(self.get_device_ids())
        dropped = []
        for device_id, data in list(stored.items()):
            if device_id not in configured:
                logger.info(f"Dropping learned timeout for unconfigured sensor {device_id}")
            elif (data.learned_timeout_ms or 0) < self._min_learned_timeout_ms:
                logger.warning(
                    f"Dropping learned timeout for {device_id}: {data.learned_timeout_ms} ms "
                    f"is below the {self._min_learned_timeout_ms} ms minimum"
                )
            else:
                continue
            del stored[device_id]
            dropped.append(device_id)

        self._timeout_learning.update(stored)
        logger.info(f"Restored learned timeouts for {len(stored)} sensors")

        if dropped:
            self._schedule_save("save pruned learned timeouts")
