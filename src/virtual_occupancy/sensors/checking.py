"""
Checking rendezvous timer.

While a room is "checking", every configured motion sensor gets its own
countdown at its own timeout. The completion callback runs once, when the
last countdown has elapsed. stop() cancels the whole run.

Every start() begins a new run generation; countdown callbacks carry the
generation they were started under, so a callback from a stopped run can
never complete a later one.
"""

import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from virtual_occupancy.core.platform import PlatformAdapter, TimerHandle
from virtual_occupancy.occupancy.models import DeviceConfig

logger = logging.getLogger(__name__)


class CheckingSensor:
    """A single countdown for one motion sensor."""

    def __init__(self, platform: PlatformAdapter, device_id: str, timeout_ms: int) -> None:
        self._platform = platform
        self.device_id = device_id
        self.timeout_ms = timeout_ms
        self._handle: Optional[TimerHandle] = None

    @property
    def is_running(self) -> bool:
        return self._handle is not None

    def start(self, callback: Callable[[], None]) -> None:
        """(Re)start the countdown."""
        self.stop()
        logger.debug(f"Starting checking countdown for {self.device_id}: {self.timeout_ms} ms")

        def _fire() -> None:
            self._handle = None
            callback()

        self._handle = self._platform.call_later(self.timeout_ms / 1000, _fire)

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class CheckingSensorRegistry:
    """
    Rendezvous over per-sensor countdowns.

    on_complete runs exactly once per run, when every configured device's
    countdown has fired. With no devices it runs immediately on start().
    """

    def __init__(
        self,
        platform: PlatformAdapter,
        device_configs: Iterable[DeviceConfig],
        on_complete: Callable[[], None],
    ) -> None:
        self._platform = platform
        self._on_complete = on_complete
        self._sensors: Dict[str, CheckingSensor] = {}
        self._fired: Set[str] = set()
        self._generation = 0
        self._running = False

        for config in device_configs:
            self._add_sensor(config)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def fired_count(self) -> int:
        return len(self._fired)

    def get_device_configs(self) -> List[DeviceConfig]:
        return [DeviceConfig(id=s.device_id, timeout_ms=s.timeout_ms) for s in self._sensors.values()]

    def is_registered(self, device_id: str) -> bool:
        return device_id in self._sensors

    def start(self) -> None:
        """Start a new run: clear fired devices and start every countdown."""
        self._stop_sensors()
        self._generation += 1
        self._fired.clear()
        self._running = True
        generation = self._generation

        logger.info(
            f"Checking started for {len(self._sensors)} sensors "
            f"(longest timeout {self.longest_timeout_ms()} ms)"
        )

        if not self._sensors:
            self._complete(generation)
            return

        for sensor in list(self._sensors.values()):
            self._start_sensor(sensor, generation)

    def stop(self) -> None:
        """Cancel the run without calling on_complete."""
        if self._running:
            logger.info("Checking stopped")
        self._generation += 1
        self._running = False
        self._fired.clear()
        self._stop_sensors()

    def update_devices(self, device_configs: Iterable[DeviceConfig]) -> None:
        """
        Reconcile the device set.

        Removed devices stop holding the barrier, added devices start their
        countdown if a run is active, and changed timeouts apply from the
        next start().
        """
        configs = {c.id: c for c in device_configs}

        for device_id in [i for i in self._sensors if i not in configs]:
            logger.debug(f"Removing checking countdown for {device_id}")
            self._sensors.pop(device_id).stop()
            self._fired.discard(device_id)

        for device_id, config in configs.items():
            sensor = self._sensors.get(device_id)
            if sensor is None:
                logger.debug(f"Adding checking countdown for {device_id}")
                sensor = self._add_sensor(config)
                if self._running:
                    self._start_sensor(sensor, self._generation)
            else:
                sensor.timeout_ms = config.timeout_ms

        if self._running:
            self._check_complete(self._generation)

    def destroy(self) -> None:
        self.stop()
        self._sensors.clear()

    def longest_timeout_ms(self) -> int:
        return max((s.timeout_ms for s in self._sensors.values()), default=0)

    def _add_sensor(self, config: DeviceConfig) -> CheckingSensor:
        sensor = CheckingSensor(self._platform, config.id, config.timeout_ms)
        self._sensors[config.id] = sensor
        return sensor

    def _start_sensor(self, sensor: CheckingSensor, generation: int) -> None:
        device_id = sensor.device_id
        sensor.start(lambda: self._on_sensor_fired(device_id, generation))

    def _stop_sensors(self) -> None:
        for sensor in self._sensors.values():
            sensor.stop()

    def _on_sensor_fired(self, device_id: str, generation: int) -> None:
        if generation != self._generation or not self._running:
            logger.debug(f"Ignoring stale checking countdown for {device_id}")
            return
        if device_id not in self._sensors:
            return

        self._fired.add(device_id)
        logger.info(
            f"Device {device_id} checking countdown elapsed "
            f"({len(self._fired)}/{len(self._sensors)} devices)"
        )
        self._check_complete(generation)

    def _check_complete(self, generation: int) -> None:
        if not self._sensors.keys() <= self._fired:
            return
        self._complete(generation)

    def _complete(self, generation: int) -> None:
        if generation != self._generation or not self._running:
            return

        logger.info("All checking countdowns elapsed, completing")
        self._running = False
        self._fired.clear()
        self._stop_sensors()

        try:
            self._on_complete()
        except Exception:
            logger.error("Error in checking completion callback", exc_info=True)
