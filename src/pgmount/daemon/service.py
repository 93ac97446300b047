import asyncio
import logging
import shlex
import signal
from dataclasses import dataclass, field
from typing import Callable, Coroutine, Dict, List, Optional, Set

from pgmount.config import AppConfig
from pgmount.daemon.bookkeeping import DeviceLocks, MountRegistry
from pgmount.daemon.events import DeviceEvent, EventType, diff_snapshots
from pgmount.daemon.hooks import EventHookDispatcher
from pgmount.daemon.orchestrator import DeviceState, MountOrchestrator, UnmountOrchestrator
from pgmount.daemon.unlock import EncryptionUnlocker, PassphrasePrompt, prompt_on_terminal
from pgmount.devices.detection import DeviceDetector, DeviceDetectorFactory
from pgmount.devices.models import Device
from pgmount.devices.store import DeviceSnapshotStore
from pgmount.errors import DiscoveryError, MountError, PartialBatchFailure, UnlockError, UnmountError
from pgmount.notify import Notifier, NullNotifier
from pgmount.utils.background import BackgroundTasks
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)


@dataclass
class DeviceFailure:
    path: str
    error: str


@dataclass
class BatchResult:
    """Outcome of mount-all / unmount-all."""
    succeeded: int = 0
    failures: List[DeviceFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_failures(self) -> None:
        if self.failures:
            raise PartialBatchFailure(self)


class Daemon:
    """
    Polls for removable devices and mounts, unmounts and reports them.

    Every ``poll_interval`` seconds the device list is rescanned and
    compared with the previous scan. Additions and removals are handed to
    the orchestrators as separate tasks so the poll loop never waits for a
    mount or an unlock prompt.
    """

    def __init__(self, config: AppConfig,
                 detector: Optional[DeviceDetector] = None,
                 runner: Optional[CommandRunner] = None,
                 notifier: Optional[Notifier] = None,
                 prompt: PassphrasePrompt = prompt_on_terminal):
        self.config = config
        self.runner = runner or CommandRunner()
        self.detector = detector or DeviceDetectorFactory.create_detector(
            runner=self.runner, provider_suffix=config.encryption.provider_suffix)
        self.store = DeviceSnapshotStore(self.detector, ttl=config.scan_cache_ttl)
        self.notifier = notifier or NullNotifier()

        self.registry = MountRegistry()
        self.locks = DeviceLocks()
        self.background = BackgroundTasks()
        self.hooks = EventHookDispatcher(config.event_hooks, self.background, self.runner)
        self.unlocker = EncryptionUnlocker(config.encryption, self.registry, self.runner, prompt)
        self.mounter = MountOrchestrator(
            policy=config,
            mount_base=config.mount_base,
            registry=self.registry,
            locks=self.locks,
            unlocker=self.unlocker,
            runner=self.runner,
            report=self._on_transition,
        )
        self.unmounter = UnmountOrchestrator(
            mount_base=config.mount_base,
            registry=self.registry,
            locks=self.locks,
            unlocker=self.unlocker,
            runner=self.runner,
            lock_on_unmount=config.encryption.lock_on_unmount,
            report=self._on_transition,
            detector=self.detector,
        )

        self._known: Dict[str, Device] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._signal_tasks: Set[asyncio.Task] = set()
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None
        self._stopped: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """
        Run the initial scan, dispatch it as the first tick and start polling.

        Automount tasks of the first tick may still be running on return;
        use wait_idle() to wait for them.

        Raises:
            DiscoveryError: if devices cannot be enumerated at startup
        """
        if self._running:
            logger.warning("Daemon is already running")
            return

        logger.info("Starting pgmount daemon")
        devices = await asyncio.to_thread(self.store.scan, True)
        logger.info(f"Found {len(devices)} removable device(s)")

        self._running = True
        self._stop_event = asyncio.Event()
        self._stopped = asyncio.Event()
        self._dispatch(devices)
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Daemon started (automount: {self.config.automount}, "
                    f"mount base: {self.config.mount_base})")

    async def stop(self, sig=None) -> None:
        """Stop polling, let in-flight work finish and wait for background jobs."""
        if not self._running:
            return

        if sig:
            logger.info(f"Received signal {sig.name}, shutting down")
        else:
            logger.info("Shutting down pgmount daemon")

        self._running = False
        self._stop_event.set()
        if self._poll_task is not None:
            await self._poll_task
            self._poll_task = None

        await self.drain()
        self._stopped.set()
        logger.info("Daemon stopped")

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._stop_on_signal, sig)

    def _stop_on_signal(self, sig) -> None:
        task = asyncio.create_task(self.stop(sig))
        self._signal_tasks.add(task)
        task.add_done_callback(self._signal_tasks.discard)

    def is_running(self) -> bool:
        return self._running

    async def wait_for_stop(self) -> None:
        """Wait until stop() has completed."""
        await self._stopped.wait()

    async def wait_idle(self) -> None:
        """Wait until every spawned device task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drain(self) -> None:
        """Wait for device tasks, then for hooks, notifications and file managers."""
        await self.wait_idle()
        await asyncio.to_thread(self.background.wait)

    async def _poll_loop(self) -> None:
        interval = self.config.poll_interval
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                await self.poll_once()

    async def poll_once(self) -> List[DeviceEvent]:
        """
        One poll tick: rescan, diff against the previous scan, dispatch.

        A failed scan is logged and skipped; the previous snapshot stays in
        place so nothing is reported as removed.
        """
        try:
            devices = await asyncio.to_thread(self.store.scan, True)
        except DiscoveryError as e:
            logger.warning(f"Device scan failed: {e}")
            return []
        return self._dispatch(devices)

    def _dispatch(self, devices: List[Device]) -> List[DeviceEvent]:
        current = {d.path: d for d in devices}
        events = diff_snapshots(self._known, current)
        self._known = current

        for event in events:
            if event.type == EventType.ADDED:
                self._on_device_added(event.device)
            else:
                self._on_device_removed(event.device)
        return events

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _on_device_added(self, device: Device) -> None:
        logger.info(f"Device added: {device.path} ({device.display_name})")
        if self.config.should_ignore_device(device.label, device.volume_id, device.path):
            logger.info(f"Ignoring device {device.path}")
            return

        self._notify("device_added", "Device Added", f"{device.display_name} connected")
        self.hooks.dispatch("device_added", device)

        if device.is_mounted:
            if not self.registry.is_mounted(device.path):
                logger.info(f"Adopting existing mount of {device.path} at {device.mount_point}")
                self.registry.record_mounted(device)
            return

        if device.is_partition and self.config.should_automount_device(
                device.label, device.volume_id, device.path):
            self._spawn(self._automount(device))

    async def _automount(self, device: Device) -> None:
        try:
            await self.mounter.mount(device)
        except (MountError, UnlockError) as e:
            # Failure was already reported by the orchestrator
            logger.debug(f"Automount of {device.path} failed: {e}")

    def _on_device_removed(self, device: Device) -> None:
        logger.info(f"Device removed: {device.path}")
        tracked = self.registry.get(device.path)
        self._spawn(self._cleanup_removed(device))
        if self.config.should_ignore_device(device.label, device.volume_id, device.path):
            return
        self.hooks.dispatch("device_removed", tracked or device)
        self._notify("device_removed", "Device Removed", f"{device.display_name} disconnected")

    async def _cleanup_removed(self, device: Device) -> None:
        try:
            await self.unmounter.unmount(device, force=self.config.unmount_on_removal_force,
                                         tracked_only=True)
        except UnmountError as e:
            # Keep the entry so a later unmount can retry
            logger.warning(f"Could not clean up after removed device {device.path}: {e}")
            return
        self.registry.forget(device.path)
        self.locks.discard(device.path)

    def _on_transition(self, state: DeviceState, device: Device, error: Optional[Exception]) -> None:
        if state in (DeviceState.MOUNTED, DeviceState.UNMOUNTED):
            # A cached scan would still show the old mount state
            self.store.invalidate()
        if state == DeviceState.MOUNTED:
            self._notify("device_mounted", "Device Mounted",
                         f"{device.display_name} mounted at {device.mount_point}")
            self.hooks.dispatch("device_mounted", device)
            self._open_file_manager(device.mount_point)
        elif state == DeviceState.UNMOUNTED:
            self._notify("device_unmounted", "Device Unmounted", f"{device.display_name} unmounted")
            self.hooks.dispatch("device_unmounted", device)
        elif state == DeviceState.UNLOCKED:
            self._notify("device_unlocked", "Device Unlocked", f"{device.display_name} unlocked")
            self.hooks.dispatch("device_unlocked", device)
        elif state == DeviceState.LOCKED:
            self._notify("device_locked", "Device Locked", f"{device.display_name} locked")
        elif state == DeviceState.FAILED:
            self._notify("job_failed", "Operation Failed", f"{device.display_name}: {error}")
        else:
            logger.debug(f"{device.path}: {state.value}")

    def _notify(self, event: str, summary: str, body: str) -> None:
        seconds = self.config.notifications.timeout_for(event)
        if seconds <= 0:
            return
        self.background.submit(f"Notification {event}", self.notifier.send,
                               summary, body, int(seconds * 1000))

    def _open_file_manager(self, mount_point: str) -> None:
        if not self.config.file_manager or not mount_point:
            return
        try:
            argv = shlex.split(self.config.file_manager) + [mount_point]
        except ValueError as e:
            logger.error(f"Invalid file manager command: {e}")
            return
        self.background.submit("File manager", self.runner.spawn, argv)

    # Operations used by the command line tools

    async def scan(self) -> List[Device]:
        """Fresh device list with the daemon's own mounts applied."""
        devices = await asyncio.to_thread(self.store.scan, True)
        mounted = self.registry.mounted()
        return [mounted.get(d.path, d) for d in devices]

    async def find_device(self, target: str) -> Optional[Device]:
        await asyncio.to_thread(self.store.scan)
        device = self.store.find(target)
        if device is None:
            return None
        return self.registry.get(device.path) or device

    async def mount_device(self, device: Device, fs_type: Optional[str] = None,
                           options: Optional[List[str]] = None) -> Device:
        return await self.mounter.mount(device, fs_type=fs_type, options=options)

    async def unmount_device(self, device: Device, force: bool = False,
                             detach: bool = False) -> Device:
        unmounted = await self.unmounter.unmount(device, force=force)
        if detach:
            await self.unmounter.detach(device)
        return unmounted

    async def mount_all(self) -> BatchResult:
        """
        Mount every unmounted, non-ignored partition, one at a time.

        A failure is recorded and the batch moves on.

        Raises:
            DiscoveryError: if devices cannot be enumerated
        """
        result = BatchResult()
        for device in await self.scan():
            if not device.is_partition or device.is_mounted:
                continue
            if self.config.should_ignore_device(device.label, device.volume_id, device.path):
                continue
            try:
                await self.mounter.mount(device)
                result.succeeded += 1
            except (MountError, UnlockError) as e:
                result.failures.append(DeviceFailure(device.path, str(e)))
        logger.info(f"Mount all: {result.succeeded} mounted, {len(result.failures)} failed")
        return result

    async def unmount_all(self, force: bool = False, detach: bool = False) -> BatchResult:
        """Unmount every mounted removable device, one at a time."""
        result = BatchResult()
        for device in await self.scan():
            if not device.is_mounted:
                continue
            try:
                await self.unmount_device(device, force=force, detach=detach)
                result.succeeded += 1
            except UnmountError as e:
                result.failures.append(DeviceFailure(device.path, str(e)))
        logger.info(f"Unmount all: {result.succeeded} unmounted, {len(result.failures)} failed")
        return result

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        """Be told (with a generation number) whenever mount state changes."""
        return self.registry.subscribe(listener)
