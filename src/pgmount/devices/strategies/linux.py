"""Linux-specific device detection implementation."""
import logging
import os
from typing import Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator

from pgmount.devices.detection import DeviceDetector
from pgmount.devices.models import Device
from pgmount.devices.strategies.utils import (
    MOUNT_TABLE_FILES,
    linux_parent_disk,
    parse_size,
    partition_index,
    read_mount_table,
)
from pgmount.errors import DiscoveryError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

LSBLK_COLUMNS = "NAME,SIZE,TYPE,MOUNTPOINT,FSTYPE,LABEL,UUID,RM,HOTPLUG"
LUKS_FSTYPE = "crypto_LUKS"
SECTOR_SIZE = 512


def _flag(value) -> bool:
    """lsblk reports flags as true/false, 1/0 or "1"/"0" depending on version."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true")


class LsblkEntry(BaseModel):
    """One node of ``lsblk -J`` output. Absent or null fields mean unknown."""
    name: str
    size: Optional[Union[int, str]] = None
    type: Optional[str] = None
    mountpoint: Optional[str] = None
    fstype: Optional[str] = None
    label: Optional[str] = None
    uuid: Optional[str] = None
    rm: bool = False
    hotplug: bool = False
    children: List["LsblkEntry"] = Field(default_factory=list)

    @field_validator("rm", "hotplug", mode="before")
    @classmethod
    def parse_flag(cls, value) -> bool:
        return _flag(value)

    @field_validator("children", mode="before")
    @classmethod
    def none_as_empty(cls, value):
        return [] if value is None else value


LsblkEntry.model_rebuild()


class LsblkOutput(BaseModel):
    """Top level of ``lsblk -J`` output."""
    blockdevices: List[LsblkEntry] = Field(default_factory=list)


def _to_device(entry: LsblkEntry, inherited_removable: bool = False) -> Device:
    is_partition = entry.type == "part"
    device = Device(
        name=entry.name,
        path=f"/dev/{entry.name}",
        label=entry.label or "",
        volume_id=entry.uuid or "",
        fs_type=entry.fstype or "",
        size_bytes=parse_size(entry.size),
        mount_point=entry.mountpoint or "",
        is_mounted=bool(entry.mountpoint),
        is_encrypted=entry.fstype == LUKS_FSTYPE,
        is_partition=is_partition,
        is_removable=entry.rm or entry.hotplug or inherited_removable,
        partition_index=partition_index(entry.name) if is_partition else 0,
    )

    if device.is_encrypted:
        # An opened LUKS volume shows up as a "crypt" child; its mount is ours
        for child in entry.children:
            if child.type == "crypt":
                device.is_unlocked = True
                device.unlocked_path = f"/dev/mapper/{child.name}"
                if child.mountpoint:
                    device.mount_point = child.mountpoint
                    device.is_mounted = True
    return device


def parse_lsblk_json(output: str) -> List[Device]:
    """
    Parse ``lsblk -J`` output into disk and partition records.

    Partitions inherit removability from their disk. Other node types
    (crypt, loop, rom) are not reported as devices.

    Raises:
        ValidationError: if the output does not match the lsblk schema
    """
    data = LsblkOutput.model_validate_json(output)
    devices = []

    def walk(entries: List[LsblkEntry], parent_removable: bool) -> None:
        for entry in entries:
            if entry.type not in ("disk", "part"):
                continue
            device = _to_device(entry, parent_removable)
            devices.append(device)
            walk(entry.children, device.is_removable)

    walk(data.blockdevices, False)
    return devices


def parse_blkid_export(output: str) -> Dict[str, str]:
    """Parse ``blkid -o export`` KEY=value lines."""
    info = {}
    for line in output.splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            info[key.strip()] = value.strip()
    return info


class LinuxDeviceDetector(DeviceDetector):
    """Device detector implementation for Linux."""

    def __init__(self, runner: Optional[CommandRunner] = None,
                 sys_block: str = "/sys/block",
                 mount_table_files: Iterable[str] = MOUNT_TABLE_FILES):
        super().__init__(runner)
        self.sys_block = sys_block
        self.mount_table_files = tuple(mount_table_files)

    def parent_disk(self, name: str) -> Optional[str]:
        return linux_parent_disk(name)

    def scan(self) -> List[Device]:
        reasons = []
        try:
            devices = self._scan_with_lsblk()
            return [d for d in devices if d.is_removable]
        except (ValidationError, ValueError, OSError) as e:
            reasons.append(f"lsblk: {e}")
            logger.warning(f"lsblk detection failed, falling back to {self.sys_block}: {e}")

        try:
            return self._scan_with_sysfs()
        except OSError as e:
            reasons.append(f"{self.sys_block}: {e}")
            logger.error(f"sysfs detection failed: {e}")

        raise DiscoveryError("failed to list block devices", reasons)

    def _scan_with_lsblk(self) -> List[Device]:
        result = self.runner.run(["lsblk", "-J", "-b", "-o", LSBLK_COLUMNS])
        if not result.ok:
            raise OSError(result.output or f"exit status {result.returncode}")
        return parse_lsblk_json(result.stdout)

    def _scan_with_sysfs(self) -> List[Device]:
        """Lower-fidelity scan reading /sys/block attributes and blkid."""
        logger.info(f"Using {self.sys_block} for device detection")
        mounts = read_mount_table(self.runner, self.mount_table_files)
        devices = []

        for name in sorted(os.listdir(self.sys_block)):
            if self._read_attr(os.path.join(self.sys_block, name, "removable")) != "1":
                continue

            disk = Device(
                name=name,
                path=f"/dev/{name}",
                size_bytes=self._read_sectors(os.path.join(self.sys_block, name, "size")),
                is_removable=True,
            )
            self._apply_mount_status(disk, mounts)
            devices.append(disk)
            devices.extend(self._sysfs_partitions(name, mounts))

        return devices

    def _sysfs_partitions(self, disk_name: str, mounts: Dict[str, str]) -> List[Device]:
        disk_dir = os.path.join(self.sys_block, disk_name)
        try:
            entries = sorted(os.listdir(disk_dir))
        except OSError:
            return []

        partitions = []
        for name in entries:
            if not name.startswith(disk_name) or name == disk_name:
                continue
            partition = Device(
                name=name,
                path=f"/dev/{name}",
                size_bytes=self._read_sectors(os.path.join(disk_dir, name, "size")),
                is_partition=True,
                is_removable=True,
                partition_index=partition_index(name),
            )
            self._probe_filesystem(partition)
            self._apply_mount_status(partition, mounts)
            partitions.append(partition)
        return partitions

    def _probe_filesystem(self, device: Device) -> None:
        result = self.runner.run(["blkid", "-o", "export", device.path])
        if not result.ok:
            return
        info = parse_blkid_export(result.stdout)
        device.fs_type = info.get("TYPE", "")
        device.label = info.get("LABEL", "")
        device.volume_id = info.get("UUID", "")
        device.is_encrypted = device.fs_type == LUKS_FSTYPE

    @staticmethod
    def _apply_mount_status(device: Device, mounts: Dict[str, str]) -> None:
        mount_point = mounts.get(device.path)
        if mount_point:
            device.mount_point = mount_point
            device.is_mounted = True

    @staticmethod
    def _read_attr(path: str) -> str:
        try:
            with open(path, "r") as f:
                return f.read().strip()
        except OSError:
            return ""

    def _read_sectors(self, path: str) -> int:
        value = self._read_attr(path)
        return int(value) * SECTOR_SIZE if value.isdigit() else 0
