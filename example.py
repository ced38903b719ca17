#!/usr/bin/env python3
"""
Quick example demonstrating virtual-occupancy basic usage.

Run with: PYTHONPATH=src python3 example.py
"""

import asyncio

from virtual_occupancy.core.bus import Event, EventBus, EventFilter
from virtual_occupancy.core.platform import MockPlatformAdapter
from virtual_occupancy.occupancy.module import VirtualOccupancySensor
from virtual_occupancy.sensors.registry import CAPABILITY_CONTACT, CAPABILITY_MOTION


def on_occupancy_changed(event: Event) -> None:
    trigger = event.payload["trigger"]
    print(
        f"   → {event.payload['previous_state']} → {event.payload['state']} "
        f"(by {trigger['device_name']}, active={event.payload['active']})"
    )


async def main() -> None:
    print("=" * 60)
    print("virtual-occupancy Example")
    print("=" * 60)

    # 1. Platform and bus
    print("\n1. Creating mock platform and event bus...")
    platform = MockPlatformAdapter()
    bus = EventBus()
    bus.subscribe(on_occupancy_changed, EventFilter(event_type="occupancy.changed"))
    print("   ✓ MockPlatformAdapter and EventBus created")

    # 2. Devices
    print("\n2. Adding devices...")
    platform.add_device("door-hall", "Hall Door", {CAPABILITY_CONTACT: False})
    platform.add_device("motion-sofa", "Sofa Motion", {CAPABILITY_MOTION: False})
    platform.add_device("motion-desk", "Desk Motion", {CAPABILITY_MOTION: False})
    print("   ✓ 1 door sensor, 2 motion sensors")

    # 3. Virtual sensor
    print("\n3. Setting up the living room...")
    room = VirtualOccupancySensor("living-room", platform, bus, name="Living Room")
    await room.async_setup(
        {
            "version": room.CURRENT_CONFIG_VERSION,
            "motion_timeout": 30,
            "door_sensors": ["door-hall"],
            "motion_sensors": ["motion-sofa", "motion-desk"],
        }
    )
    print(f"   ✓ State: {room.state.value}")

    # 4. Somebody walks in
    print("\n4. Somebody walks in and closes the door...")
    platform.set_capability_value("door-hall", CAPABILITY_CONTACT, True)
    platform.set_capability_value("door-hall", CAPABILITY_CONTACT, False)
    platform.advance(5)
    platform.set_capability_value("motion-sofa", CAPABILITY_MOTION, True)
    print(f"   ✓ State: {room.state.value}")

    # 5. The sofa sensor resets, learning its real timeout
    print("\n5. Motion sensor resets after 12 seconds...")
    platform.advance(12)
    platform.set_capability_value("motion-sofa", CAPABILITY_MOTION, False)
    await room.async_wait_pending()
    learned = room.motion_registry.get_learned_timeout("motion-sofa")
    print(f"   ✓ Learned timeout for Sofa Motion: {learned} ms")

    # 6. Everybody leaves
    print("\n6. Everybody leaves...")
    platform.set_capability_value("door-hall", CAPABILITY_CONTACT, True)
    platform.set_capability_value("door-hall", CAPABILITY_CONTACT, False)
    print(f"   ✓ State: {room.state.value}")
    platform.advance(30)
    print(f"   ✓ State after all countdowns: {room.state.value}")

    await room.async_teardown()

    print("\n" + "=" * 60)
    print("Example complete!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
