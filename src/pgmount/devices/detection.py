"""Device detection interface."""
import platform
from abc import ABC, abstractmethod
from typing import List, Optional

from pgmount.devices.models import Device
from pgmount.utils.runner import CommandRunner


class DeviceDetector(ABC):
    """Base interface for device discovery strategies."""

    def __init__(self, runner: Optional[CommandRunner] = None):
        self.runner = runner or CommandRunner()

    @abstractmethod
    def scan(self) -> List[Device]:
        """
        Enumerate removable disks and their partitions.

        Returns:
            Devices in discovery order, disks before their partitions

        Raises:
            DiscoveryError: if every discovery method failed
        """
        pass

    @abstractmethod
    def parent_disk(self, name: str) -> Optional[str]:
        """Name of the disk a partition belongs to, or None for a disk."""
        pass


class DeviceDetectorFactory:
    """Factory for creating the detector for the current platform."""

    @staticmethod
    def create_detector(runner: Optional[CommandRunner] = None, system: Optional[str] = None,
                        provider_suffix: str = ".eli") -> DeviceDetector:
        """Create a device detector for the given (default: current) platform."""
        system = system or platform.system()

        if system == "FreeBSD":
            from pgmount.devices.strategies.freebsd import FreeBSDDeviceDetector
            return FreeBSDDeviceDetector(runner, provider_suffix=provider_suffix)
        elif system == "Linux":
            from pgmount.devices.strategies.linux import LinuxDeviceDetector
            return LinuxDeviceDetector(runner)
        else:
            from pgmount.devices.strategies.fallback import UnsupportedDeviceDetector
            return UnsupportedDeviceDetector(runner, system=system)
