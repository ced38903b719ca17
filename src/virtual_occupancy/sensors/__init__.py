"""
Sensor registries.

- ContactSensorRegistry: door contacts, any/all aggregation
- MotionSensorRegistry: motion sensors with per-sensor timeout learning
- CheckingSensorRegistry: rendezvous over per-sensor countdowns
"""

from .registry import (
    CAPABILITY_CONTACT,
    CAPABILITY_MOTION,
    BooleanSensorRegistry,
    ContactSensorRegistry,
)
from .motion import MIN_LEARNED_TIMEOUT_MS, MotionSensorRegistry
from .checking import CheckingSensor, CheckingSensorRegistry

__all__ = [
    "CAPABILITY_CONTACT",
    "CAPABILITY_MOTION",
    "MIN_LEARNED_TIMEOUT_MS",
    "BooleanSensorRegistry",
    "ContactSensorRegistry",
    "MotionSensorRegistry",
    "CheckingSensor",
    "CheckingSensorRegistry",
]
