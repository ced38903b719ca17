"""
Tests for MotionSensorRegistry timeout learning.

Tests verify:
- A true -> false cycle learns its duration
- Only shorter cycles replace the learned value
- The learned value never drops below the floor
- Learned timeouts are persisted, restored and pruned
- Values present at subscribe time are not measured
- Overlapping saves leave the newest state in storage
- Learning can be turned off
"""

import asyncio
import logging

import pytest

from virtual_occupancy.core.platform import MockPlatformAdapter
from virtual_occupancy.core.storage import TIMEOUT_STORE_KEY, TimeoutStore
from virtual_occupancy.occupancy.models import DeviceConfig
from virtual_occupancy.sensors.motion import MIN_LEARNED_TIMEOUT_MS, MotionSensorRegistry
from virtual_occupancy.sensors.registry import CAPABILITY_MOTION

logging.basicConfig(level=logging.DEBUG)

DEFAULT_TIMEOUT_MS = 30000


@pytest.fixture
def platform():
    platform = MockPlatformAdapter()
    platform.add_device("motion-1", "Sofa Motion", {CAPABILITY_MOTION: False})
    platform.add_device("motion-2", "Desk Motion", {CAPABILITY_MOTION: False})
    return platform


async def make_registry(platform, device_ids=("motion-1", "motion-2"), **kwargs):
    registry = MotionSensorRegistry(
        platform,
        device_ids,
        lambda device_id, value: None,
        TimeoutStore(platform),
        DEFAULT_TIMEOUT_MS,
        **kwargs,
    )
    await registry.async_wait_pending()
    return registry


async def motion_cycle(platform, registry, device_id, seconds):
    platform.set_capability_value(device_id, CAPABILITY_MOTION, True)
    platform.advance(seconds)
    platform.set_capability_value(device_id, CAPABILITY_MOTION, False)
    await registry.async_wait_pending()


def stored_timeouts(platform):
    return platform.store[TIMEOUT_STORE_KEY]["data"]


class TestLearning:
    """Measuring motion cycles."""

    @pytest.mark.asyncio
    async def test_first_cycle_is_learned(self, platform):
        registry = await make_registry(platform)

        await motion_cycle(platform, registry, "motion-1", 12)

        assert registry.get_learned_timeout("motion-1") == 12000
        assert registry.get_learned_timeout("motion-2") is None
        assert stored_timeouts(platform) == {"motion-1": 12000}

    @pytest.mark.asyncio
    async def test_only_shorter_cycles_replace(self, platform):
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12)
        writes = len(platform.store_writes)

        await motion_cycle(platform, registry, "motion-1", 40)
        assert registry.get_learned_timeout("motion-1") == 12000
        assert len(platform.store_writes) == writes

        await motion_cycle(platform, registry, "motion-1", 8)
        assert registry.get_learned_timeout("motion-1") == 8000
        assert stored_timeouts(platform) == {"motion-1": 8000}

    @pytest.mark.asyncio
    async def test_floor(self, platform):
        registry = await make_registry(platform)

        await motion_cycle(platform, registry, "motion-1", 0.2)

        assert registry.get_learned_timeout("motion-1") == MIN_LEARNED_TIMEOUT_MS

    @pytest.mark.asyncio
    async def test_custom_floor(self, platform):
        registry = await make_registry(platform, min_learned_timeout_ms=5000)

        await motion_cycle(platform, registry, "motion-1", 2)

        assert registry.get_learned_timeout("motion-1") == 5000

    @pytest.mark.asyncio
    async def test_false_without_true_learns_nothing(self, platform):
        registry = await make_registry(platform)

        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") is None
        assert TIMEOUT_STORE_KEY not in platform.store

    @pytest.mark.asyncio
    async def test_repeated_true_restarts_measurement(self, platform):
        """Only the latest true -> false gap counts."""
        registry = await make_registry(platform)

        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        platform.advance(20)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        platform.advance(5)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") == 5000

    @pytest.mark.asyncio
    async def test_seeded_true_is_not_measured(self, platform):
        """Motion already active at subscribe time started at an unknown moment."""
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        registry = await make_registry(platform)
        assert registry.get_state("motion-1") is True

        platform.advance(15)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") is None
        assert platform.store_writes == []

        await motion_cycle(platform, registry, "motion-1", 9)

        assert registry.get_learned_timeout("motion-1") == 9000

    @pytest.mark.asyncio
    async def test_learning_disabled(self, platform):
        registry = await make_registry(platform, enable_learning=False)

        await motion_cycle(platform, registry, "motion-1", 12)

        assert registry.get_learned_timeout("motion-1") is None
        assert platform.store_writes == []

    @pytest.mark.asyncio
    async def test_disabling_discards_pending_measurement(self, platform):
        registry = await make_registry(platform)

        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        registry.enable_learning = False
        platform.advance(3)
        registry.enable_learning = True
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") is None

    @pytest.mark.asyncio
    async def test_save_failure_keeps_memory_value(self, platform, caplog):
        registry = await make_registry(platform)
        platform.fail_store_writes = True

        with caplog.at_level(logging.ERROR):
            await motion_cycle(platform, registry, "motion-1", 12)

        assert registry.get_learned_timeout("motion-1") == 12000
        assert "Failed to save data" in caplog.text


class TestEffectiveTimeouts:
    """Timeouts handed to the checking rendezvous."""

    @pytest.mark.asyncio
    async def test_effective_timeout(self, platform):
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12)

        assert registry.get_effective_timeout("motion-1") == 12000
        assert registry.get_effective_timeout("motion-2") == DEFAULT_TIMEOUT_MS
        assert registry.get_device_configs() == [
            DeviceConfig(id="motion-1", timeout_ms=12000),
            DeviceConfig(id="motion-2", timeout_ms=DEFAULT_TIMEOUT_MS),
        ]

    @pytest.mark.asyncio
    async def test_default_timeout_change(self, platform):
        registry = await make_registry(platform)

        registry.default_timeout_ms = 60000

        assert registry.get_effective_timeout("motion-2") == 60000

    @pytest.mark.asyncio
    async def test_min_learned_timeout(self, platform):
        registry = await make_registry(platform)
        assert registry.get_min_learned_timeout(DEFAULT_TIMEOUT_MS) == DEFAULT_TIMEOUT_MS

        await motion_cycle(platform, registry, "motion-1", 12)
        await motion_cycle(platform, registry, "motion-2", 9)

        assert registry.get_min_learned_timeout(DEFAULT_TIMEOUT_MS) == 9000
        assert registry.get_min_learned_timeout(5000) == 5000

    @pytest.mark.asyncio
    async def test_context_carries_timeout_seconds(self, platform):
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12.4)

        assert registry.build_context("motion-1").timeout_seconds == 12
        assert registry.build_context("motion-2").timeout_seconds == 30
        assert registry.build_context("motion-1").device_name == "Sofa Motion"


class TestPersistence:
    """Restore, prune and removal."""

    @pytest.mark.asyncio
    async def test_restored_on_creation(self, platform):
        platform.store[TIMEOUT_STORE_KEY] = {"version": 1, "data": {"motion-1": 7000}}

        registry = await make_registry(platform)

        assert registry.get_learned_timeout("motion-1") == 7000
        assert registry.get_all_learned_timeouts() == {"motion-1": 7000}

    @pytest.mark.asyncio
    async def test_restored_value_only_replaced_by_shorter(self, platform):
        platform.store[TIMEOUT_STORE_KEY] = {"version": 1, "data": {"motion-1": 7000}}
        registry = await make_registry(platform)

        await motion_cycle(platform, registry, "motion-1", 10)

        assert registry.get_learned_timeout("motion-1") == 7000

    @pytest.mark.asyncio
    async def test_unconfigured_entries_pruned(self, platform):
        platform.store[TIMEOUT_STORE_KEY] = {
            "version": 1,
            "data": {"motion-1": 7000, "motion-old": 4000},
        }

        registry = await make_registry(platform, device_ids=["motion-1"])

        assert registry.get_all_learned_timeouts() == {"motion-1": 7000}
        assert stored_timeouts(platform) == {"motion-1": 7000}

    @pytest.mark.asyncio
    async def test_restored_values_below_floor_dropped(self, platform, caplog):
        platform.store[TIMEOUT_STORE_KEY] = {
            "version": 1,
            "data": {"motion-1": 10, "motion-2": 7000},
        }

        with caplog.at_level(logging.WARNING):
            registry = await make_registry(platform)

        assert registry.get_learned_timeout("motion-1") is None
        assert registry.get_learned_timeout("motion-2") == 7000
        assert registry.get_effective_timeout("motion-1") == DEFAULT_TIMEOUT_MS
        assert stored_timeouts(platform) == {"motion-2": 7000}
        assert "below the 1000 ms minimum" in caplog.text

    @pytest.mark.asyncio
    async def test_restore_respects_custom_floor(self, platform):
        platform.store[TIMEOUT_STORE_KEY] = {
            "version": 1,
            "data": {"motion-1": 3000, "motion-2": 7000},
        }

        registry = await make_registry(platform, min_learned_timeout_ms=5000)

        assert registry.get_all_learned_timeouts() == {"motion-2": 7000}

    @pytest.mark.asyncio
    async def test_incompatible_store_ignored(self, platform):
        platform.store[TIMEOUT_STORE_KEY] = {"version": 99, "data": {"motion-1": 7000}}

        registry = await make_registry(platform)

        assert registry.get_learned_timeout("motion-1") is None

    @pytest.mark.asyncio
    async def test_remove_device(self, platform):
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12)
        await motion_cycle(platform, registry, "motion-2", 9)

        registry.remove_device("motion-1")
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") is None
        assert stored_timeouts(platform) == {"motion-2": 9000}

    @pytest.mark.asyncio
    async def test_remove_device_without_data(self, platform):
        registry = await make_registry(platform)

        registry.remove_device("motion-9")
        await registry.async_wait_pending()

        assert platform.store_writes == []

    @pytest.mark.asyncio
    async def test_update_device_ids_forgets_removed(self, platform):
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12)

        await registry.async_update_device_ids(["motion-2"])
        await registry.async_wait_pending()

        assert registry.get_learned_timeout("motion-1") is None
        assert stored_timeouts(platform) == {}
        assert not registry.is_listening("motion-1")

    @pytest.mark.asyncio
    async def test_readded_device_learns_from_scratch(self, platform):
        """A removed and re-added sensor does not inherit its old minimum."""
        registry = await make_registry(platform)
        await motion_cycle(platform, registry, "motion-1", 12)

        await registry.async_update_device_ids(["motion-2"])
        await registry.async_wait_pending()
        await registry.async_update_device_ids(["motion-2", "motion-1"])
        await registry.async_wait_pending()

        assert registry.is_listening("motion-1")
        assert registry.get_learned_timeout("motion-1") is None
        assert "motion-1" not in stored_timeouts(platform)

        await motion_cycle(platform, registry, "motion-1", 20)

        assert registry.get_learned_timeout("motion-1") == 20000
        assert stored_timeouts(platform) == {"motion-1": 20000}


class YieldingStorePlatform(MockPlatformAdapter):
    """Store writes suspend before completing, like a real backend."""

    async def async_set_store_value(self, key, value):
        await asyncio.sleep(0)
        await super().async_set_store_value(key, value)


class TestConcurrentSaves:
    """Saves racing with each other."""

    @pytest.mark.asyncio
    async def test_remove_during_inflight_save(self):
        platform = YieldingStorePlatform()
        platform.add_device("motion-1", "Sofa Motion", {CAPABILITY_MOTION: False})
        platform.add_device("motion-2", "Desk Motion", {CAPABILITY_MOTION: False})
        platform.store[TIMEOUT_STORE_KEY] = {"version": 1, "data": {"motion-1": 5000}}
        registry = await make_registry(platform)

        platform.set_capability_value("motion-2", CAPABILITY_MOTION, True)
        platform.advance(3)
        platform.set_capability_value("motion-2", CAPABILITY_MOTION, False)
        # Let the learning save start and suspend inside the store write.
        await asyncio.sleep(0)

        registry.remove_device("motion-1")
        await registry.async_wait_pending()

        assert registry.get_all_learned_timeouts() == {"motion-2": 3000}
        assert stored_timeouts(platform) == {"motion-2": 3000}

    @pytest.mark.asyncio
    async def test_last_write_is_newest_state(self):
        platform = YieldingStorePlatform()
        platform.add_device("motion-1", "Sofa Motion", {CAPABILITY_MOTION: False})
        registry = await make_registry(platform, device_ids=["motion-1"])

        await motion_cycle(platform, registry, "motion-1", 12)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        platform.advance(8)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, True)
        platform.advance(4)
        platform.set_capability_value("motion-1", CAPABILITY_MOTION, False)
        await registry.async_wait_pending()

        assert platform.store_writes[-1][1]["data"] == {"motion-1": 4000}
        assert stored_timeouts(platform) == {"motion-1": 4000}
