"""Cache of the most recent device scan."""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from pgmount.devices.detection import DeviceDetector
from pgmount.devices.models import Device

logger = logging.getLogger(__name__)


class DeviceSnapshotStore:
    """
    Thread-safe store of the latest scan, keyed by device path.

    Every scan shells out to several tools, so concurrent callers are
    collapsed onto a single in-flight scan, and results younger than
    ``ttl`` seconds are served from the cache unless ``force`` is given.
    """

    def __init__(self, detector: DeviceDetector, ttl: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.detector = detector
        self.ttl = ttl
        self._clock = clock
        self._devices: Dict[str, Device] = {}
        self._scanned_at: Optional[float] = None
        self._state_lock = threading.Lock()
        self._scan_lock = threading.Lock()

    def scan(self, force: bool = False) -> List[Device]:
        """
        Return the current device list, scanning if the cache is stale.

        Raises:
            DiscoveryError: if the scan fails; the previous snapshot is kept
        """
        if not force and self._is_fresh():
            return self.devices()

        requested_at = self._clock()
        with self._scan_lock:
            with self._state_lock:
                scanned_at = self._scanned_at
            # Somebody finished a scan while we were waiting for the lock
            if scanned_at is not None and scanned_at >= requested_at:
                return self.devices()
            if not force and self._is_fresh():
                return self.devices()

            devices = self.detector.scan()
            self._replace(devices)
            return self.devices()

    def _is_fresh(self) -> bool:
        with self._state_lock:
            if self._scanned_at is None:
                return False
            return self._clock() - self._scanned_at < self.ttl

    def _replace(self, devices: List[Device]) -> None:
        snapshot: Dict[str, Device] = {}
        for device in devices:
            if device.path in snapshot:
                logger.debug(f"Duplicate device path in scan: {device.path}")
            snapshot[device.path] = device
        with self._state_lock:
            self._devices = snapshot
            self._scanned_at = self._clock()

    def invalidate(self) -> None:
        """Force the next scan() to hit the detector."""
        with self._state_lock:
            self._scanned_at = None

    def devices(self) -> List[Device]:
        with self._state_lock:
            return list(self._devices.values())

    def find(self, target: str) -> Optional[Device]:
        """Look a device up by path, name, /dev/<name> or mount point."""
        for device in self.devices():
            if target in (device.path, device.name, f"/dev/{device.name}"):
                return device
            if device.mount_point and device.mount_point == target.rstrip("/"):
                return device
        return None
