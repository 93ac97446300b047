"""Snapshot diffing."""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List

from pgmount.devices.models import Device


class EventType(str, Enum):
    """Kinds of change between two scans."""
    ADDED = "device_added"
    REMOVED = "device_removed"


@dataclass(frozen=True)
class DeviceEvent:
    """A device that appeared or disappeared between two scans."""
    type: EventType
    path: str
    device: Device  # for REMOVED, the record from the previous scan


def diff_snapshots(previous: Dict[str, Device], current: Dict[str, Device]) -> List[DeviceEvent]:
    """
    Compare two snapshots keyed by device path.

    Devices present in both are not reported, even if their attributes
    changed. Events are ordered by path.
    """
    events = []
    for path in sorted(set(previous) | set(current)):
        if path in current and path not in previous:
            events.append(DeviceEvent(EventType.ADDED, path, current[path]))
        elif path in previous and path not in current:
            events.append(DeviceEvent(EventType.REMOVED, path, previous[path]))
    return events
