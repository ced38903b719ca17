"""
Versioned persistence on top of the platform key-value store.

Both stores degrade gracefully: failures and incompatible data are logged
and treated as "no data" / "save skipped", never raised.
"""

import logging
import math
from typing import Any, Dict, Generic, Optional, TypeVar

from virtual_occupancy.core.platform import PlatformAdapter
from virtual_occupancy.occupancy.models import TimeoutLearningData

logger = logging.getLogger(__name__)

T = TypeVar("T")

TIMEOUT_STORE_KEY = "learned_motion_timeouts"
TIMEOUT_STORE_VERSION = 1


class VersionedStore(Generic[T]):
    """
    Generic versioned storage with validation and error handling.

    Data is stored as {"version": int, "data": T}. A missing blob, a blob
    with another version or a blob with the wrong shape loads as None.
    """

    def __init__(self, platform: PlatformAdapter, key: str, version: int) -> None:
        self._platform = platform
        self._key = key
        self._version = version

    @property
    def key(self) -> str:
        return self._key

    @property
    def version(self) -> int:
        return self._version

    def load(self) -> Optional[T]:
        """
        Load and validate stored data.

        Returns:
            The stored data, or None if no data, wrong version, or corrupted
        """
        try:
            stored = self._platform.get_store_value(self._key)
        except Exception:
            logger.error(f"Failed to load data for '{self._key}'", exc_info=True)
            return None

        if stored is None:
            return None

        if not isinstance(stored, dict) or "data" not in stored:
            logger.warning(f"Corrupted stored data for '{self._key}', ignoring")
            return None

        if stored.get("version") != self._version:
            logger.warning(
                f"Incompatible stored data for '{self._key}' "
                f"(version: {stored.get('version')}, expected: {self._version}), ignoring"
            )
            return None

        return stored["data"]

    async def async_save(self, data: T) -> None:
        """Save data with version metadata. Logs errors instead of raising."""
        try:
            await self._platform.async_set_store_value(
                self._key, {"version": self._version, "data": data}
            )
        except Exception:
            logger.error(f"Failed to save data for '{self._key}'", exc_info=True)

    async def async_clear(self) -> None:
        """Remove stored data. Logs errors instead of raising."""
        try:
            await self._platform.async_unset_store_value(self._key)
        except Exception:
            logger.error(f"Failed to clear data for '{self._key}'", exc_info=True)


class TimeoutStore:
    """
    Storage for learned motion sensor timeouts.

    Persists {device_id: timeout_ms} and converts it to and from
    TimeoutLearningData.
    """

    def __init__(
        self,
        platform: PlatformAdapter,
        key: str = TIMEOUT_STORE_KEY,
        version: int = TIMEOUT_STORE_VERSION,
    ) -> None:
        self._store: VersionedStore[Dict[str, int]] = VersionedStore(platform, key, version)

    def load(self) -> Dict[str, TimeoutLearningData]:
        """
        Load stored timeouts.

        Entries that are not positive whole milliseconds are discarded.

        Returns:
            Device ID -> learning data (empty if nothing usable is stored)
        """
        stored = self._store.load()
        result: Dict[str, TimeoutLearningData] = {}

        if not isinstance(stored, dict):
            if stored is not None:
                logger.warning(f"Ignoring malformed learned timeouts in '{self._store.key}'")
            return result

        for device_id, timeout_ms in stored.items():
            if _is_number(timeout_ms) and int(timeout_ms) > 0:
                result[device_id] = TimeoutLearningData(learned_timeout_ms=int(timeout_ms))
            else:
                logger.debug(f"Discarding stored timeout for {device_id}: {timeout_ms!r}")

        return result

    async def async_save(self, timeouts: Dict[str, Optional[int]]) -> None:
        """Save timeouts, skipping devices that have not learned one yet."""
        data = {
            device_id: int(timeout_ms)
            for device_id, timeout_ms in timeouts.items()
            if timeout_ms is not None
        }
        await self._store.async_save(data)

    async def async_clear(self) -> None:
        """Remove all stored timeouts."""
        await self._store.async_clear()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)
