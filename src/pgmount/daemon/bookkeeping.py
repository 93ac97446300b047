"""Daemon-side record of what it has mounted and unlocked."""
import asyncio
import logging
import threading
from typing import Callable, Dict, List, Optional, Set

from pgmount.devices.models import Device

logger = logging.getLogger(__name__)

Listener = Callable[[int], None]


class MountRegistry:
    """
    Path -> mounted Device map plus the set of unlocked paths.

    This is the only state that outlives a scan. All access goes through a
    mutex so readers on other threads never see a half-applied change.
    Listeners are called after every change with a generation number that
    only ever increases, so a consumer can discard stale notifications.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._mounted: Dict[str, Device] = {}
        self._unlocked: Set[str] = set()
        self._claimed: Set[str] = set()
        self._generation = 0
        self._listeners: List[Listener] = []

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, path: str) -> Optional[Device]:
        with self._lock:
            return self._mounted.get(path)

    def is_mounted(self, path: str) -> bool:
        with self._lock:
            return path in self._mounted

    def is_unlocked(self, path: str) -> bool:
        with self._lock:
            return path in self._unlocked

    def mounted(self) -> Dict[str, Device]:
        """Consistent copy of the mounted map."""
        with self._lock:
            return dict(self._mounted)

    def mount_points(self) -> Set[str]:
        """Mount points in use or reserved by a mount still in progress."""
        with self._lock:
            return {d.mount_point for d in self._mounted.values()} | self._claimed

    def claim_mount_point(self, mount_point: str) -> bool:
        """
        Reserve a directory for a mount that is about to run.

        Returns False if another device already uses or reserved it.
        """
        with self._lock:
            if mount_point in self._claimed:
                return False
            if any(d.mount_point == mount_point for d in self._mounted.values()):
                return False
            self._claimed.add(mount_point)
            return True

    def release_mount_point(self, mount_point: str) -> None:
        with self._lock:
            self._claimed.discard(mount_point)

    def record_mounted(self, device: Device) -> None:
        with self._lock:
            self._mounted[device.path] = device
            if device.is_unlocked:
                self._unlocked.add(device.path)
        self._changed()

    def record_unmounted(self, path: str) -> Optional[Device]:
        with self._lock:
            device = self._mounted.pop(path, None)
        self._changed()
        return device

    def mark_unlocked(self, path: str) -> None:
        with self._lock:
            self._unlocked.add(path)
        self._changed()

    def mark_locked(self, path: str) -> None:
        with self._lock:
            self._unlocked.discard(path)
        self._changed()

    def forget(self, path: str) -> None:
        """Drop every trace of a device that left the system."""
        with self._lock:
            self._mounted.pop(path, None)
            self._unlocked.discard(path)
        self._changed()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _changed(self) -> None:
        with self._lock:
            self._generation += 1
            generation = self._generation
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(generation)
            except Exception as e:
                logger.warning(f"Status listener failed: {e}")


class DeviceLocks:
    """One asyncio lock per device path, serializing that device's transitions."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def for_path(self, path: str) -> asyncio.Lock:
        lock = self._locks.get(path)
        if lock is None:
            lock = self._locks[path] = asyncio.Lock()
        return lock

    def is_busy(self, path: str) -> bool:
        lock = self._locks.get(path)
        return lock is not None and lock.locked()

    def discard(self, path: str) -> None:
        """Drop the lock of a device that is gone, unless a transition holds it."""
        lock = self._locks.get(path)
        if lock is not None and not lock.locked():
            del self._locks[path]
