"""Poll loop, orchestration and bookkeeping."""
from pgmount.daemon.bookkeeping import DeviceLocks, MountRegistry
from pgmount.daemon.events import DeviceEvent, EventType, diff_snapshots
from pgmount.daemon.orchestrator import DeviceState, MountOrchestrator, UnmountOrchestrator
from pgmount.daemon.service import BatchResult, Daemon

__all__ = [
    'BatchResult',
    'Daemon',
    'DeviceEvent',
    'DeviceLocks',
    'DeviceState',
    'EventType',
    'MountOrchestrator',
    'MountRegistry',
    'UnmountOrchestrator',
    'diff_snapshots',
]
