"""VirtualOccupancySensor - one room's occupancy inference.

Wires the contact and motion registries into the state machine, runs the
checking rendezvous while the room is being verified and publishes every
state change on the EventBus.

The platform store handed in is assumed to belong to this virtual sensor,
so the learned timeouts live under the default TimeoutStore key.
"""

import logging
from typing import Any, Dict, Optional, Union

from virtual_occupancy.core.bus import Event, EventBus
from virtual_occupancy.core.platform import PlatformAdapter
from virtual_occupancy.core.storage import TimeoutStore
from virtual_occupancy.sensors.checking import CheckingSensorRegistry
from virtual_occupancy.sensors.motion import MIN_LEARNED_TIMEOUT_MS, MotionSensorRegistry
from virtual_occupancy.sensors.registry import ContactSensorRegistry
from virtual_occupancy.utils import parse_sensor_ids_setting

from .engine import OccupancyEngine
from .models import (
    EventType,
    OccupancySettings,
    OccupancyState,
    StateTransition,
    TriggerContext,
)

logger = logging.getLogger(__name__)

FLOW_ACTION_CONTEXT = TriggerContext(device_id="flow_action", device_name="Flow Action")
MANUAL_TRIGGER_CONTEXT = TriggerContext(device_id="manual_trigger", device_name="Manual Trigger")
RESTORE_CONTEXT = TriggerContext(device_id="restore", device_name="Restore")

STATE_VERSION = 1


class VirtualOccupancySensor:
    """
    Door/motion occupancy inference for a single room.

    Lifecycle:
        sensor = VirtualOccupancySensor("living-room", platform, bus)
        await sensor.async_setup({"door_sensors": [...], "motion_sensors": [...]})
        ...
        await sensor.async_teardown()

    Events published on the bus (source "occupancy", sensor_id = this sensor):
        occupancy.changed: every state transition
        occupancy.active_changed: alarm output flipped by a settings update
    """

    CURRENT_CONFIG_VERSION = 1

    def __init__(
        self,
        sensor_id: str,
        platform: PlatformAdapter,
        bus: Optional[EventBus] = None,
        name: Optional[str] = None,
        timeout_store: Optional[TimeoutStore] = None,
        min_learned_timeout_ms: int = MIN_LEARNED_TIMEOUT_MS,
    ) -> None:
        self._id = sensor_id
        self._name = name or sensor_id
        self._platform = platform
        self._bus = bus or EventBus()
        self._timeout_store = timeout_store or TimeoutStore(platform)
        self._min_learned_timeout_ms = min_learned_timeout_ms

        self._settings = OccupancySettings()
        self._engine = OccupancyEngine(self._on_state_change)
        self._previous_state = self._engine.state

        self._contact_registry: Optional[ContactSensorRegistry] = None
        self._motion_registry: Optional[MotionSensorRegistry] = None
        self._checking_registry: Optional[CheckingSensorRegistry] = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def name(self) -> str:
        return self._name

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def engine(self) -> OccupancyEngine:
        return self._engine

    @property
    def settings(self) -> OccupancySettings:
        return self._settings

    @property
    def contact_registry(self) -> Optional[ContactSensorRegistry]:
        return self._contact_registry

    @property
    def motion_registry(self) -> Optional[MotionSensorRegistry]:
        return self._motion_registry

    @property
    def checking_registry(self) -> Optional[CheckingSensorRegistry]:
        """The running rendezvous, only present while checking."""
        return self._checking_registry

    # --- Configuration ---

    def default_config(self) -> Dict:
        """Default configuration for a virtual occupancy sensor."""
        return {
            "version": self.CURRENT_CONFIG_VERSION,
            "motion_timeout": 30,  # seconds, until learned
            "auto_learn_timeout": True,
            "active_on_occupied": True,
            "active_on_empty": False,
            "active_on_door_open": True,
            "active_on_checking": True,
            "door_sensors": [],
            "motion_sensors": [],
        }

    def config_schema(self) -> Dict:
        """JSON schema for UI configuration."""
        return {
            "type": "object",
            "properties": {
                "motion_timeout": {
                    "type": "integer",
                    "title": "Motion Timeout (seconds)",
                    "description": "Motion sensor blind-time used until a real one is learned",
                    "minimum": 1,
                    "default": 30,
                },
                "auto_learn_timeout": {
                    "type": "boolean",
                    "title": "Learn Motion Timeouts",
                    "default": True,
                },
                "active_on_occupied": {
                    "type": "boolean",
                    "title": "Active When Occupied",
                    "default": True,
                },
                "active_on_empty": {
                    "type": "boolean",
                    "title": "Active When Empty",
                    "default": False,
                },
                "active_on_door_open": {
                    "type": "boolean",
                    "title": "Active When Door Open",
                    "default": True,
                },
                "active_on_checking": {
                    "type": "boolean",
                    "title": "Active While Checking",
                    "default": True,
                },
                "door_sensors": {
                    "type": "array",
                    "title": "Door Sensors",
                    "items": {"type": "string"},
                    "default": [],
                },
                "motion_sensors": {
                    "type": "array",
                    "title": "Motion Sensors",
                    "items": {"type": "string"},
                    "default": [],
                },
            },
        }

    def migrate_config(self, config: Dict) -> Dict:
        """
        Migrate configuration to the current version.

        Configs without a version are legacy device settings, where the sensor
        lists were comma-separated strings.
        """
        if config.get("version") == self.CURRENT_CONFIG_VERSION:
            return config

        migrated = dict(config)
        if "version" not in config:
            for key in ("door_sensors", "motion_sensors"):
                if isinstance(migrated.get(key), str):
                    migrated[key] = parse_sensor_ids_setting(migrated[key])
            logger.info(f"Migrated legacy config for {self._id} to version {self.CURRENT_CONFIG_VERSION}")
        else:
            logger.warning(
                f"Unknown config version {config.get('version')!r} for {self._id}, "
                f"treating as version {self.CURRENT_CONFIG_VERSION}"
            )
        migrated["version"] = self.CURRENT_CONFIG_VERSION
        return migrated

    # --- Lifecycle ---

    async def async_setup(self, config: Optional[Dict] = None) -> None:
        """
        Apply settings and subscribe to all configured sensors.

        Raises:
            ValueError: If the config is invalid.
        """
        merged = self.default_config()
        if config:
            merged.update(self.migrate_config(dict(config)))
        settings = OccupancySettings.from_dict(merged)

        restarting = self._contact_registry is not None or self._motion_registry is not None
        if restarting:
            logger.info(f"Setup called again for {self._name}, releasing previous sensors")
            self._stop_checking()
            for registry in (self._contact_registry, self._motion_registry):
                if registry is not None:
                    registry.destroy()
            await self.async_wait_pending()

        self._settings = settings

        logger.info(
            f"Setting up {self._name}: {len(settings.door_sensors)} door sensors, "
            f"{len(settings.motion_sensors)} motion sensors"
        )

        self._contact_registry = ContactSensorRegistry(
            self._platform,
            settings.door_sensors,
            self._handle_contact_event,
        )
        self._motion_registry = MotionSensorRegistry(
            self._platform,
            settings.motion_sensors,
            self._handle_motion_event,
            self._timeout_store,
            settings.motion_timeout_ms,
            enable_learning=settings.auto_learn_timeout,
            min_learned_timeout_ms=self._min_learned_timeout_ms,
        )

        await self.async_wait_pending()

        if restarting and self.state == OccupancyState.CHECKING and self._checking_registry is None:
            self._start_checking()

    async def async_update_settings(self, config: Dict) -> None:
        """
        Apply changed settings to the running sensor.

        Only keys present in config change; others keep their current value.

        Raises:
            ValueError: If the resulting settings are invalid.
        """
        merged = self._settings.to_dict()
        merged.update(self.migrate_config(dict(config)))
        new = OccupancySettings.from_dict(merged)
        old = self._settings

        changed = [key for key in old.to_dict() if getattr(old, key) != getattr(new, key)]
        if not changed:
            logger.debug(f"Settings for {self._id} unchanged")
            return

        logger.info(f"Settings changed for {self._id}: {', '.join(changed)}")
        self._settings = new

        if "door_sensors" in changed and self._contact_registry is not None:
            await self._contact_registry.async_update_device_ids(new.door_sensors)

        if self._motion_registry is not None:
            if "motion_timeout" in changed:
                self._motion_registry.default_timeout_ms = new.motion_timeout_ms
            if "auto_learn_timeout" in changed:
                self._motion_registry.enable_learning = new.auto_learn_timeout
            if "motion_sensors" in changed:
                await self._motion_registry.async_update_device_ids(new.motion_sensors)
            if self._checking_registry is not None and (
                "motion_sensors" in changed or "motion_timeout" in changed
            ):
                self._checking_registry.update_devices(self._motion_registry.get_device_configs())

        # Transitions during the update already reported their output.
        state = self._engine.state
        if old.is_active_for(state) != new.is_active_for(state):
            self._publish_active_changed()

    async def async_wait_pending(self) -> None:
        """Wait for background subscriptions and persistence writes."""
        for registry in (self._contact_registry, self._motion_registry):
            if registry is not None:
                await registry.async_wait_pending()

    async def async_teardown(self) -> None:
        """Stop checking, unsubscribe every sensor and flush pending writes."""
        logger.info(f"Tearing down {self._name}")
        self._stop_checking()
        for registry in (self._contact_registry, self._motion_registry):
            if registry is not None:
                registry.destroy()
        await self.async_wait_pending()

    # --- State queries ---

    @property
    def state(self) -> OccupancyState:
        return self._engine.state

    @property
    def is_occupied(self) -> bool:
        return self._engine.state == OccupancyState.OCCUPIED

    @property
    def is_active(self) -> bool:
        """Alarm output for the current state."""
        return self._settings.is_active_for(self._engine.state)

    def state_is(self, state: Union[OccupancyState, str]) -> bool:
        """True if the current state equals state (enum or string value)."""
        try:
            return self._engine.state == OccupancyState(state)
        except ValueError:
            logger.warning(f"Unknown occupancy state in condition: {state!r}")
            return False

    # --- Direct API ---

    def set_occupancy_state(
        self,
        state: Union[OccupancyState, str],
        context: Optional[TriggerContext] = None,
    ) -> Optional[StateTransition]:
        """Force a state (manual control)."""
        return self._engine.set_occupancy_state(state, context or FLOW_ACTION_CONTEXT)

    def trigger_motion(self) -> Optional[StateTransition]:
        """Feed a manual motion_detected event."""
        return self._engine.register_event(EventType.MOTION_DETECTED, MANUAL_TRIGGER_CONTEXT)

    def reset(self) -> Optional[StateTransition]:
        """Force the room empty."""
        return self.set_occupancy_state(OccupancyState.EMPTY)

    def dump_state(self) -> Dict:
        """Export the occupancy state for persistence."""
        return {"version": STATE_VERSION, "state": self._engine.state.value}

    def restore_state(self, state: Dict) -> None:
        """
        Restore an exported state.

        Call after async_setup(): restoring "checking" starts a rendezvous
        over the configured motion sensors.
        """
        if not state:
            return

        if state.get("version") != STATE_VERSION:
            logger.warning(
                f"Cannot restore state for {self._id}: version {state.get('version')!r} "
                f"(expected {STATE_VERSION})"
            )
            return

        try:
            target = OccupancyState(state.get("state"))
        except ValueError:
            logger.warning(f"Cannot restore unknown state {state.get('state')!r} for {self._id}")
            return

        self._engine.set_occupancy_state(target, RESTORE_CONTEXT)
        logger.info(f"Restored occupancy state for {self._id}: {target.value}")

    # --- Sensor handlers ---

    def _handle_contact_event(self, device_id: str, value: bool) -> None:
        assert self._contact_registry is not None
        context = self._contact_registry.build_context(device_id)

        if value:
            logger.info(f"Door {context.device_name} opened")
            self._engine.register_event(EventType.ANY_DOOR_OPEN, context)
        elif self._contact_registry.is_all_state_false():
            logger.info(f"Door {context.device_name} closed, all doors closed")
            self._engine.register_event(EventType.ALL_DOORS_CLOSED, context)
        else:
            logger.debug(f"Door {context.device_name} closed, other doors still open")

    def _handle_motion_event(self, device_id: str, value: bool) -> None:
        assert self._motion_registry is not None
        context = self._motion_registry.build_context(device_id)

        if value:
            self._engine.register_event(EventType.MOTION_DETECTED, context)
        else:
            # Checking re-reads live motion when its rendezvous completes.
            logger.debug(f"Motion cleared on {context.device_name}")

    # --- State machine callbacks ---

    def _on_state_change(self, state: OccupancyState, context: TriggerContext) -> None:
        previous = self._previous_state
        self._previous_state = state

        if state != OccupancyState.CHECKING:
            self._stop_checking()

        self._emit_occupancy_changed(previous, state, context)

        # Last, so that an immediate completion publishes after this change.
        if state == OccupancyState.CHECKING:
            self._start_checking()

    def _start_checking(self) -> None:
        self._stop_checking()
        configs = self._motion_registry.get_device_configs() if self._motion_registry else []
        registry = CheckingSensorRegistry(self._platform, configs, self._on_checking_timeout)
        self._checking_registry = registry
        registry.start()

    def _stop_checking(self) -> None:
        registry = self._checking_registry
        if registry is not None:
            self._checking_registry = None
            registry.destroy()

    def _on_checking_timeout(self) -> None:
        registry = self._checking_registry
        longest_ms = registry.longest_timeout_ms() if registry is not None else 0
        context = TriggerContext(
            device_id="system",
            device_name="Checking Timeout",
            timeout_seconds=round(longest_ms / 1000),
        )

        if self._motion_registry is not None and self._motion_registry.is_any_state_true():
            logger.info(f"Checking complete for {self._id}: motion still active")
            self._engine.register_event(EventType.MOTION_DETECTED, context)
        else:
            logger.info(f"Checking complete for {self._id}: no motion")
            self._engine.register_event(EventType.TIMEOUT, context)

    # --- Bus events ---

    def _emit_occupancy_changed(
        self,
        previous: OccupancyState,
        state: OccupancyState,
        context: TriggerContext,
    ) -> None:
        payload: Dict[str, Any] = {
            "state": state.value,
            "previous_state": previous.value,
            "occupied": state == OccupancyState.OCCUPIED,
            "active": self._settings.is_active_for(state),
            "trigger": context.as_dict(),
        }
        self._bus.publish(
            Event(
                type="occupancy.changed",
                source="occupancy",
                sensor_id=self._id,
                device_id=context.device_id,
                payload=payload,
            )
        )
        logger.info(f"Occupancy changed: {self._name} {previous.value} → {state.value}")

    def _publish_active_changed(self) -> None:
        state = self._engine.state
        self._bus.publish(
            Event(
                type="occupancy.active_changed",
                source="occupancy",
                sensor_id=self._id,
                payload={"state": state.value, "active": self.is_active},
            )
        )
