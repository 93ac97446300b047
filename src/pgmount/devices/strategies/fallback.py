"""Detector for platforms without a discovery strategy."""
import logging
from typing import List, Optional

from pgmount.devices.detection import DeviceDetector
from pgmount.devices.models import Device
from pgmount.devices.strategies.utils import parent_disk
from pgmount.errors import DiscoveryError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)


class UnsupportedDeviceDetector(DeviceDetector):
    """Always fails, so callers can tell "unsupported" apart from "no devices"."""

    def __init__(self, runner: Optional[CommandRunner] = None, system: str = ""):
        super().__init__(runner)
        self.system = system or "unknown"

    def parent_disk(self, name: str) -> Optional[str]:
        return parent_disk(name)

    def scan(self) -> List[Device]:
        logger.error(f"No device discovery available for {self.system}")
        raise DiscoveryError(f"unsupported operating system: {self.system}")
