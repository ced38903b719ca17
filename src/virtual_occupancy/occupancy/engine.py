"""The Core Logic Engine for Occupancy.

This module contains the pure state machine. It accepts events and forced
states and reports every actual transition to a single callback. It does not
touch devices, timers or storage.

Transition table (omitted combinations are ignored):

    empty      + any_door_open    -> door_open
    empty      + motion_detected  -> occupied
    occupied   + any_door_open    -> door_open
    door_open  + all_doors_closed -> checking
    checking   + any_door_open    -> door_open
    checking   + motion_detected  -> occupied
    checking   + timeout          -> empty

motion_timeout never transitions: whether checking resolves to occupied or
empty is decided by the orchestrator when its rendezvous completes.

Licensed under MIT License
"""

import logging
from typing import Callable, Dict, Optional, Union

from .models import (
    SYSTEM_CONTEXT,
    EventType,
    OccupancyState,
    StateTransition,
    TriggerContext,
)

_LOGGER = logging.getLogger(__name__)

StateChangeCallback = Callable[[OccupancyState, TriggerContext], None]

TRANSITIONS: Dict[OccupancyState, Dict[EventType, OccupancyState]] = {
    OccupancyState.EMPTY: {
        EventType.ANY_DOOR_OPEN: OccupancyState.DOOR_OPEN,
        EventType.MOTION_DETECTED: OccupancyState.OCCUPIED,
    },
    OccupancyState.OCCUPIED: {
        EventType.ANY_DOOR_OPEN: OccupancyState.DOOR_OPEN,
    },
    OccupancyState.DOOR_OPEN: {
        EventType.ALL_DOORS_CLOSED: OccupancyState.CHECKING,
    },
    OccupancyState.CHECKING: {
        EventType.ANY_DOOR_OPEN: OccupancyState.DOOR_OPEN,
        EventType.MOTION_DETECTED: OccupancyState.OCCUPIED,
        EventType.TIMEOUT: OccupancyState.EMPTY,
    },
}


class OccupancyEngine:
    """The functional core of the occupancy system."""

    def __init__(
        self,
        on_state_change: Optional[StateChangeCallback] = None,
        initial_state: OccupancyState = OccupancyState.EMPTY,
    ) -> None:
        """Initialize the engine.

        Args:
            on_state_change: Called with (new_state, context) on every actual transition.
            initial_state: Starting state (default: EMPTY).
        """
        self._state = initial_state
        self._on_state_change = on_state_change
        self.last_transition: Optional[StateTransition] = None

    @property
    def state(self) -> OccupancyState:
        return self._state

    def register_event(
        self,
        event_type: Union[EventType, str],
        context: Optional[TriggerContext] = None,
    ) -> Optional[StateTransition]:
        """Process a single event through the transition table.

        Args:
            event_type: The event (enum or its string value).
            context: Trigger provenance (defaults to the system context).

        Returns:
            The transition, or None if the event was ignored.
        """
        try:
            event = EventType(event_type)
        except ValueError:
            _LOGGER.error(f"Unknown event type: {event_type!r}, ignoring")
            return None

        context = context or SYSTEM_CONTEXT
        _LOGGER.info(
            f"Received event: {event.value} from {context.device_id}. "
            f"Current state: {self._state.value}"
        )

        table = TRANSITIONS.get(self._state)
        if table is None:
            _LOGGER.error(f"Unknown state: {self._state!r}, ignoring {event.value}")
            return None

        new_state = table.get(event)
        if new_state is None:
            _LOGGER.debug(f"  {event.value} ignored in {self._state.value}")
            return None

        return self._transition_to(new_state, context, event)

    def set_occupancy_state(
        self,
        state: Union[OccupancyState, str],
        context: Optional[TriggerContext] = None,
    ) -> Optional[StateTransition]:
        """Force a state, bypassing the transition table.

        Used for manual control and initialization. Forcing the current
        state is still a no-op.

        Args:
            state: Target state (enum or its string value).
            context: Trigger provenance (defaults to the system context).

        Returns:
            The transition, or None if nothing changed.
        """
        try:
            target = OccupancyState(state)
        except ValueError:
            _LOGGER.error(f"Unknown occupancy state: {state!r}, ignoring")
            return None

        return self._transition_to(target, context or SYSTEM_CONTEXT, None)

    def _transition_to(
        self,
        new_state: OccupancyState,
        context: TriggerContext,
        event: Optional[EventType],
    ) -> Optional[StateTransition]:
        if new_state == self._state:
            return None

        transition = StateTransition(
            previous_state=self._state,
            new_state=new_state,
            context=context,
            event_type=event,
        )
        _LOGGER.info(
            f"  {transition.previous_state.value} -> {new_state.value} ({transition.reason})"
        )
        self._state = new_state
        self.last_transition = transition

        if self._on_state_change is not None:
            try:
                self._on_state_change(new_state, context)
            except Exception as e:
                _LOGGER.error(f"Error in state change callback for {new_state.value}: {e}", exc_info=True)

        return transition
