"""
pgmount.

Automounter for removable storage: discovers USB disks and partitions,
mounts them under a base directory, unlocks encrypted volumes and runs
user hooks on device events.
"""

from pgmount.config import AppConfig, load_config
from pgmount.daemon.service import BatchResult, Daemon
from pgmount.devices.models import Device

__version__ = "1.0.0"

__all__ = [
    'AppConfig',
    'BatchResult',
    'Daemon',
    'Device',
    'load_config',
]
