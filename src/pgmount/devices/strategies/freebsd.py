"""FreeBSD-specific device detection implementation."""
import logging
import os
import re
from typing import Dict, Iterable, List, Optional, Tuple

from pgmount.devices.detection import DeviceDetector
from pgmount.devices.models import Device
from pgmount.devices.strategies.utils import (
    freebsd_parent_disk,
    parse_size,
    partition_index,
    read_mount_table,
)
from pgmount.errors import DiscoveryError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

REMOVABLE_PREFIXES = ("da", "umass")

# glabel provider classes carrying a human label vs. an identifier
LABEL_CLASSES = ("msdosfs", "ext2fs", "ufs", "ntfs", "label", "gpt", "iso9660", "cd9660")
ID_CLASSES = ("ufsid", "gptid", "diskid")

_PERIPHERALS = re.compile(r"\(([^)]*)\)\s*$")


def parse_geom_disk_list(output: str) -> List[Device]:
    """
    Parse ``geom disk list`` output.

    Each stanza starts with ``Geom name: <name>`` and carries an indented
    ``Mediasize: <bytes> (<human>)`` line.
    """
    disks = []
    current: Optional[Device] = None

    for raw_line in output.splitlines():
        line = raw_line.strip()
        if line.startswith("Geom name:"):
            if current is not None:
                disks.append(current)
            name = line[len("Geom name:"):].strip()
            current = Device(name=name, path=f"/dev/{name}") if name else None
        elif current is not None and line.startswith("Mediasize:"):
            fields = line.split()
            if len(fields) >= 2:
                current.size_bytes = parse_size(fields[1])

    if current is not None:
        disks.append(current)

    return disks


def parse_gpart_show(output: str, disk_name: str) -> List[Tuple[str, int]]:
    """
    Parse ``gpart show -p <disk>`` output.

    Data rows start with a numeric offset; the partition name is one of the
    later columns. Header rows start with ``=>`` and free-space rows carry
    ``- free -``.

    Returns:
        List of (partition name, size in bytes)
    """
    partitions = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("=>"):
            continue
        fields = line.split()
        if len(fields) < 3 or not fields[0].isdigit():
            continue

        name = next(
            (f for f in fields[2:] if f.startswith(disk_name) and f != disk_name),
            None,
        )
        if name is None:
            continue

        # Sizes are in 512-byte sectors
        size = int(fields[1]) * 512 if fields[1].isdigit() else 0
        partitions.append((name, size))

    return partitions


def classify_file_output(output: str) -> Tuple[str, bool]:
    """
    Map ``file -s`` output to a mount(8) filesystem type.

    Returns:
        (filesystem type or "", whether a GELI header was seen)
    """
    # Drop the leading "/dev/da0p1: " so the device path cannot match
    description = output.split(":", 1)[1] if ":" in output else output

    fs_type = ""
    if "ext4" in description:
        fs_type = "ext4"
    elif "ext3" in description:
        fs_type = "ext3"
    elif "ext2" in description:
        fs_type = "ext2"
    elif "exFAT" in description or "EXFAT" in description:
        fs_type = "exfat"
    elif "FAT" in description:
        fs_type = "msdosfs"
    elif "NTFS" in description:
        fs_type = "ntfs"
    elif "UFS" in description:
        fs_type = "ufs"
    elif "ZFS" in description:
        fs_type = "zfs"

    return fs_type, "GELI" in description


def parse_glabel_status(output: str) -> Dict[str, Dict[str, str]]:
    """
    Parse ``glabel status`` output.

    Returns:
        Dict of component name -> {"label": ..., "volume_id": ...}
    """
    labels: Dict[str, Dict[str, str]] = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) < 3 or fields[0] == "Name" or "/" not in fields[0]:
            continue
        provider_class, value = fields[0].split("/", 1)
        entry = labels.setdefault(fields[-1], {})
        if provider_class in LABEL_CLASSES:
            entry.setdefault("label", value)
        elif provider_class in ID_CLASSES:
            entry.setdefault("volume_id", value)
    return labels


def parse_dumpe2fs(output: str) -> Dict[str, str]:
    """Extract UUID and volume name from ``dumpe2fs -h`` output."""
    info = {}
    for line in output.splitlines():
        if line.startswith("Filesystem UUID:"):
            info["volume_id"] = line.split(":", 1)[1].strip()
        elif line.startswith("Filesystem volume name:"):
            label = line.split(":", 1)[1].strip()
            if label and label != "<none>":
                info["label"] = label
    return info


def parse_camcontrol_devlist(output: str) -> Dict[str, str]:
    """
    Parse ``camcontrol devlist`` output.

    Returns:
        Dict of peripheral name (da0, pass0, ...) -> the full device line
    """
    peripherals = {}
    for line in output.splitlines():
        match = _PERIPHERALS.search(line)
        if not match:
            continue
        for name in match.group(1).split(","):
            peripherals[name.strip()] = line
    return peripherals


class FreeBSDDeviceDetector(DeviceDetector):
    """Device detector implementation for FreeBSD (geom, gpart, glabel)."""

    def __init__(self, runner: Optional[CommandRunner] = None,
                 mount_table_files: Iterable[str] = ("/etc/mtab",),
                 provider_suffix: str = ".eli"):
        super().__init__(runner)
        self.mount_table_files = tuple(mount_table_files)
        self.provider_suffix = provider_suffix

    def parent_disk(self, name: str) -> Optional[str]:
        return freebsd_parent_disk(name)

    def scan(self) -> List[Device]:
        reasons = []

        disks = self._list_disks_geom(reasons)
        if disks is None:
            # Lower fidelity: names only, no sizes
            disks = self._list_disks_sysctl(reasons)
        if disks is None:
            raise DiscoveryError("failed to list disks", reasons)

        mounts = read_mount_table(self.runner, self.mount_table_files)
        labels = self._read_labels()
        devlist: Optional[Dict[str, str]] = None

        devices = []
        for disk in disks:
            removable = disk.name.startswith(REMOVABLE_PREFIXES)
            if not removable:
                if devlist is None:
                    devlist = self._read_devlist()
                removable = self._is_usb_attached(disk.name, devlist)
            if not removable:
                continue

            disk.is_removable = True
            self._apply_mount_status(disk, mounts)
            devices.append(disk)
            devices.extend(self._list_partitions(disk.name, mounts, labels))

        logger.debug(f"Found {len(devices)} removable devices")
        return devices

    def _list_disks_geom(self, reasons: List[str]) -> Optional[List[Device]]:
        result = self.runner.run(["geom", "disk", "list"])
        if not result.ok:
            reasons.append(f"geom disk list: {result.output or result.returncode}")
            logger.warning(f"geom disk list failed, falling back to sysctl: {result.output}")
            return None
        return parse_geom_disk_list(result.stdout)

    def _list_disks_sysctl(self, reasons: List[str]) -> Optional[List[Device]]:
        result = self.runner.run(["sysctl", "-n", "kern.disks"])
        if not result.ok:
            reasons.append(f"sysctl kern.disks: {result.output or result.returncode}")
            return None
        return [Device(name=name, path=f"/dev/{name}") for name in sorted(result.stdout.split())]

    def _read_labels(self) -> Dict[str, Dict[str, str]]:
        result = self.runner.run(["glabel", "status"])
        if not result.ok:
            logger.debug(f"glabel status unavailable: {result.output}")
            return {}
        return parse_glabel_status(result.stdout)

    def _read_devlist(self) -> Dict[str, str]:
        result = self.runner.run(["camcontrol", "devlist"])
        if not result.ok:
            logger.debug(f"camcontrol devlist unavailable: {result.output}")
            return {}
        return parse_camcontrol_devlist(result.stdout)

    @staticmethod
    def _is_usb_attached(name: str, devlist: Dict[str, str]) -> bool:
        line = devlist.get(name, "").lower()
        return "usb" in line or "mass storage" in line

    def _list_partitions(self, disk_name: str, mounts: Dict[str, str],
                         labels: Dict[str, Dict[str, str]]) -> List[Device]:
        result = self.runner.run(["gpart", "show", "-p", disk_name])
        if not result.ok:
            # Unpartitioned media
            logger.debug(f"No partition table on {disk_name}: {result.output}")
            return []

        partitions = []
        for name, size in parse_gpart_show(result.stdout, disk_name):
            partition = Device(
                name=name,
                path=f"/dev/{name}",
                size_bytes=size,
                is_partition=True,
                is_removable=True,
                partition_index=partition_index(name),
            )
            self._probe_filesystem(partition, labels)
            self._apply_mount_status(partition, mounts)
            partitions.append(partition)
        return partitions

    def _probe_filesystem(self, device: Device, labels: Dict[str, Dict[str, str]]) -> None:
        result = self.runner.run(["file", "-s", device.path])
        if result.ok:
            device.fs_type, device.is_encrypted = classify_file_output(result.stdout)

        if self.provider_exists(device.path):
            device.is_encrypted = True
            device.is_unlocked = True

        label_info = labels.get(device.name, {})
        device.label = label_info.get("label", "")
        device.volume_id = label_info.get("volume_id", "")

        if device.fs_type.startswith("ext"):
            result = self.runner.run(["dumpe2fs", "-h", device.path])
            if result.ok:
                info = parse_dumpe2fs(result.stdout)
                device.volume_id = info.get("volume_id", device.volume_id)
                device.label = info.get("label", device.label)

    def provider_exists(self, path: str) -> bool:
        """Whether the decrypted provider for ``path`` is attached."""
        return os.path.exists(path + self.provider_suffix)

    def _apply_mount_status(self, device: Device, mounts: Dict[str, str]) -> None:
        mount_point = mounts.get(device.path) or mounts.get(device.path + self.provider_suffix)
        if mount_point:
            device.mount_point = mount_point
            device.is_mounted = True
