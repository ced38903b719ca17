"""Helpers for reading sensor settings."""

from typing import List, Optional


def parse_sensor_ids_setting(setting: Optional[str]) -> List[str]:
    """
    Parse a comma-separated device ID setting.

    Whitespace around IDs is trimmed, empty entries and duplicates are dropped
    and the original order is kept.

    Args:
        setting: e.g. "door-1, door-2,,door-1"

    Returns:
        e.g. ["door-1", "door-2"]
    """
    if not setting or not setting.strip():
        return []
    ids = (part.strip() for part in setting.split(","))
    return list(dict.fromkeys(i for i in ids if i))
