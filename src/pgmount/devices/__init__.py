"""Removable device discovery."""
from pgmount.devices.detection import DeviceDetector, DeviceDetectorFactory
from pgmount.devices.models import Device
from pgmount.devices.store import DeviceSnapshotStore

__all__ = [
    'Device',
    'DeviceDetector',
    'DeviceDetectorFactory',
    'DeviceSnapshotStore',
]
