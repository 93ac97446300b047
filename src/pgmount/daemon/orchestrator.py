"""Mount and unmount state machines."""
import asyncio
import logging
import os
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

from pgmount.daemon.bookkeeping import DeviceLocks, MountRegistry
from pgmount.daemon.unlock import EncryptionUnlocker
from pgmount.devices.detection import DeviceDetector
from pgmount.devices.models import Device, safe_join
from pgmount.devices.strategies.utils import parent_disk
from pgmount.errors import MountError, UnlockError, UnmountError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

AUTO_FSTYPE = "auto"


class DeviceState(str, Enum):
    """Lifecycle states reported by the orchestrators."""
    DISCOVERED = "discovered"
    UNLOCKING = "unlocking"
    UNLOCKED = "unlocked"
    MOUNTING = "mounting"
    MOUNTED = "mounted"
    UNMOUNTING = "unmounting"
    UNMOUNTED = "unmounted"
    LOCKED = "locked"
    FAILED = "failed"


Reporter = Callable[[DeviceState, Device, Optional[Exception]], None]


class MountPolicy(Protocol):
    """Lookup service deciding what to do with a device."""

    def should_ignore_device(self, label: str, uuid: str, path: str) -> bool:
        ...

    def should_automount_device(self, label: str, uuid: str, path: str) -> bool:
        ...

    def get_mount_options(self, fstype: str, label: str, uuid: str, path: str) -> List[str]:
        ...


def build_mount_command(source: str, mount_point: str, fs_type: str, options: List[str]) -> List[str]:
    """mount [-o opts] [-t fstype] <source> <mount point>"""
    args = ["mount"]
    if options:
        args += ["-o", ",".join(options)]
    if fs_type and fs_type != AUTO_FSTYPE:
        args += ["-t", fs_type]
    args += [source, mount_point]
    return args


def build_unmount_command(mount_point: str, force: bool = False) -> List[str]:
    """umount [-f] <mount point>"""
    args = ["umount"]
    if force:
        args.append("-f")
    args.append(mount_point)
    return args


def _is_inside(path: str, base: str) -> bool:
    base_real = os.path.realpath(base)
    return os.path.dirname(os.path.realpath(path)) == base_real


def _ignore_report(state: DeviceState, device: Device, error: Optional[Exception]) -> None:
    logger.debug(f"{device.path}: {state.value}")


class MountOrchestrator:
    """Drives a device from discovered, through unlocking if needed, to mounted."""

    def __init__(self, policy: MountPolicy, mount_base: str, registry: MountRegistry,
                 locks: DeviceLocks, unlocker: EncryptionUnlocker,
                 runner: Optional[CommandRunner] = None,
                 report: Reporter = _ignore_report):
        self.policy = policy
        self.mount_base = mount_base
        self.registry = registry
        self.locks = locks
        self.unlocker = unlocker
        self.runner = runner or CommandRunner()
        self.report = report

    async def mount(self, device: Device, fs_type: Optional[str] = None,
                    options: Optional[List[str]] = None) -> Device:
        """
        Mount a device under the mount base.

        Transitions for one device path are serialized; a second caller
        for the same path sees it as already mounted.

        Args:
            device: Record from the latest scan
            fs_type: Overrides the detected filesystem type
            options: Overrides the policy's mount options

        Returns:
            Copy of the device with mount_point and is_mounted set

        Raises:
            MountError: if the device is already mounted, the mount point
                cannot be created, or the mount tool fails
            UnlockError: if an encrypted device cannot be unlocked
        """
        async with self.locks.for_path(device.path):
            tracked = self.registry.get(device.path)
            if tracked is not None or device.is_mounted:
                where = tracked.mount_point if tracked is not None else device.mount_point
                raise MountError(f"device {device.path} already mounted at {where}", path=device.path)

            self.report(DeviceState.DISCOVERED, device, None)
            source = device.path
            unlocked = device.is_unlocked or self.registry.is_unlocked(device.path)

            if device.is_encrypted:
                if unlocked:
                    source = self.unlocker.provider_path(device)
                else:
                    self.report(DeviceState.UNLOCKING, device, None)
                    try:
                        source = await asyncio.to_thread(self.unlocker.unlock, device)
                    except UnlockError as e:
                        logger.error(f"Failed to unlock {device.path}: {e}")
                        self.report(DeviceState.FAILED, device, e)
                        raise
                    unlocked = True
                    self.report(DeviceState.UNLOCKED, device.model_copy(update={"is_unlocked": True}), None)

            self.report(DeviceState.MOUNTING, device, None)
            try:
                mount_point, created = await asyncio.to_thread(self._prepare_mount_point, device)
            except MountError as e:
                self.report(DeviceState.FAILED, device, e)
                raise

            try:
                mounted = await self._run_mount(device, source, mount_point, created, unlocked,
                                                fs_type, options)
            finally:
                self.registry.release_mount_point(mount_point)
            logger.info(f"Successfully mounted {device.path} at {mount_point}")
            self.report(DeviceState.MOUNTED, mounted, None)
            return mounted

    async def _run_mount(self, device: Device, source: str, mount_point: str, created: bool,
                         unlocked: bool, fs_type: Optional[str],
                         options: Optional[List[str]]) -> Device:
        fs = fs_type if fs_type is not None else device.fs_type
        opts = options if options is not None else self.policy.get_mount_options(
            device.fs_type, device.label, device.volume_id, device.path)
        command = build_mount_command(source, mount_point, fs, opts)

        logger.info(f"Mounting {device.path} at {mount_point} (fstype: {fs or 'auto'})")
        result = await asyncio.to_thread(self.runner.run, command)
        if not result.ok:
            if created:
                self._remove_directory(mount_point)
            error = MountError(f"mount failed for {device.path}: {result.output}",
                               path=device.path, output=result.output)
            logger.error(str(error))
            self.report(DeviceState.FAILED, device, error)
            raise error

        mounted = device.model_copy(update={
            "mount_point": mount_point,
            "is_mounted": True,
            "is_unlocked": device.is_encrypted and unlocked,
        })
        # Must happen before the reservation is released
        self.registry.record_mounted(mounted)
        return mounted

    def _prepare_mount_point(self, device: Device) -> Tuple[str, bool]:
        """
        Pick and create the mount directory.

        A directory already used or reserved by another device, mounted on,
        or holding files gets a numeric suffix instead. The chosen directory
        stays reserved in the registry until the caller releases it.

        Returns:
            (mount point, whether it was created here)
        """
        try:
            name = device.mount_directory_name()
            candidate = safe_join(self.mount_base, name)
        except ValueError as e:
            raise MountError(str(e), path=device.path) from e

        suffix = 2
        while self._is_taken(candidate) or not self.registry.claim_mount_point(candidate):
            candidate = safe_join(self.mount_base, f"{name}_{suffix}")
            suffix += 1

        existed = os.path.isdir(candidate)
        try:
            os.makedirs(candidate, mode=0o755, exist_ok=True)
        except OSError as e:
            self.registry.release_mount_point(candidate)
            raise MountError(f"failed to create mount point {candidate}: {e}", path=device.path) from e
        return candidate, not existed

    @staticmethod
    def _is_taken(candidate: str) -> bool:
        if not os.path.lexists(candidate):
            return False
        if not os.path.isdir(candidate) or os.path.ismount(candidate):
            return True
        try:
            return bool(os.listdir(candidate))
        except OSError:
            return True

    @staticmethod
    def _remove_directory(path: str) -> None:
        try:
            os.rmdir(path)
        except OSError as e:
            logger.warning(f"Could not remove mount point {path}: {e}")


class UnmountOrchestrator:
    """Drives a mounted device back to unmounted and cleans up after it."""

    def __init__(self, mount_base: str, registry: MountRegistry, locks: DeviceLocks,
                 unlocker: Optional[EncryptionUnlocker] = None,
                 runner: Optional[CommandRunner] = None,
                 lock_on_unmount: bool = False,
                 report: Reporter = _ignore_report,
                 detector: Optional[DeviceDetector] = None):
        self.mount_base = mount_base
        self.registry = registry
        self.locks = locks
        self.unlocker = unlocker
        self.runner = runner or CommandRunner()
        self.lock_on_unmount = lock_on_unmount
        self.report = report
        self.detector = detector

    async def unmount(self, device: Device, force: bool = False,
                      tracked_only: bool = False) -> Optional[Device]:
        """
        Unmount a device.

        The daemon's own record is preferred; a device mounted outside the
        daemon is unmounted from the mount point seen by the scan.

        Args:
            device: Device record (from a scan or the registry)
            force: Pass the force flag to umount
            tracked_only: Only unmount what the registry recorded; return None
                instead of raising when there is no record

        Returns:
            Copy of the device with the mount cleared, or None

        Raises:
            UnmountError: if the device is not mounted or umount fails;
                bookkeeping is left as it was
        """
        async with self.locks.for_path(device.path):
            tracked = self.registry.get(device.path)
            if tracked_only and tracked is None:
                return None
            target = tracked if tracked is not None else (device if device.is_mounted else None)
            if target is None or not target.mount_point:
                raise UnmountError(f"device {device.path} is not mounted", path=device.path)

            self.report(DeviceState.UNMOUNTING, target, None)
            logger.info(f"Unmounting {target.path} from {target.mount_point}")
            result = await asyncio.to_thread(self.runner.run, build_unmount_command(target.mount_point, force))
            if not result.ok:
                error = UnmountError(f"unmount failed for {target.path}: {result.output}",
                                     path=target.path, output=result.output)
                logger.error(str(error))
                self.report(DeviceState.FAILED, target, error)
                raise error

            if tracked is not None:
                self.registry.record_unmounted(device.path)
            self._remove_mount_point(target.mount_point)
            logger.info(f"Successfully unmounted {target.path}")
            # Hooks still want to know where it was mounted
            self.report(DeviceState.UNMOUNTED, target, None)

            if self.lock_on_unmount and self.unlocker is not None and target.is_encrypted \
                    and self.registry.is_unlocked(target.path):
                await self._lock(target)

            return target.model_copy(update={"mount_point": "", "is_mounted": False})

    async def _lock(self, device: Device) -> None:
        try:
            await asyncio.to_thread(self.unlocker.lock, device)
        except UnlockError as e:
            # The unmount itself succeeded
            logger.warning(f"Could not lock {device.path}: {e}")
            return
        self.report(DeviceState.LOCKED, device.model_copy(update={"is_unlocked": False}), None)

    def _remove_mount_point(self, mount_point: str) -> None:
        """Remove the now-empty directory if it lives under the mount base."""
        if not _is_inside(mount_point, self.mount_base):
            return
        try:
            os.rmdir(mount_point)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove mount point {mount_point}: {e}")

    async def detach(self, device: Device) -> None:
        """
        Power off or eject the disk a device lives on.

        Raises:
            UnmountError: if neither camcontrol nor usbconfig succeeds
        """
        if self.detector is not None:
            disk = self.detector.parent_disk(device.name)
        else:
            disk = parent_disk(device.name)
        disk = disk or device.name
        logger.info(f"Detaching {disk}")
        result = await asyncio.to_thread(self.runner.run, ["camcontrol", "eject", disk])
        if result.ok:
            return
        result = await asyncio.to_thread(self.runner.run, ["usbconfig", "-d", disk, "power_off"])
        if not result.ok:
            raise UnmountError(f"detach failed for {disk}: {result.output}",
                               path=device.path, output=result.output)
