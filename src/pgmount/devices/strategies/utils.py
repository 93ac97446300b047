"""Utility functions shared by the discovery strategies."""
import logging
import re
from typing import Dict, Iterable, Optional

from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

MOUNT_TABLE_FILES = ("/etc/mtab", "/proc/mounts")

_SIZE_UNITS = {
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
}
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")
_FREEBSD_PARTITION = re.compile(r"^(?P<disk>[a-z]+\d+)[ps](?P<index>\d+)[a-h]?$")
_LINUX_NUMBERED_DISK = re.compile(r"^(?P<disk>(?:mmcblk|nvme\d+n|loop|md)\d+)p(?P<index>\d+)$")
_LINUX_PARTITION = re.compile(r"^(?P<disk>[a-z]+)(?P<index>\d+)$")


def parse_size(value) -> int:
    """
    Parse a size reported by a listing tool.

    Accepts plain byte counts (int or string) and human sizes such as
    "7.5G" or "128M". Returns 0 when the size is unknown.
    """
    if value is None or value is False:
        return 0
    if isinstance(value, (int, float)):
        return int(value)

    text = str(value).strip()
    if not text or text == "null":
        return 0
    if text.isdigit():
        return int(text)

    multiplier = _SIZE_UNITS.get(text[-1].upper())
    number = text[:-1] if multiplier else text
    try:
        return int(float(number.replace(",", ".")) * (multiplier or 1))
    except ValueError:
        logger.debug(f"Unparsable size: {text}")
        return 0


def _unescape(field: str) -> str:
    """Decode the octal escapes (\\040 for space) used in mount tables."""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


def parse_mount_table(text: str) -> Dict[str, str]:
    """
    Parse an fstab-style mount table (``/etc/mtab``, ``/proc/mounts``).

    Returns:
        Dict of device path -> mount point
    """
    mounts = {}
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 2 or fields[0].startswith("#"):
            continue
        mounts[_unescape(fields[0])] = _unescape(fields[1])
    return mounts


def parse_mount_output(text: str) -> Dict[str, str]:
    """
    Parse ``mount`` command output of the form ``device on mountpoint (options)``.

    Returns:
        Dict of device path -> mount point
    """
    mounts = {}
    for line in text.splitlines():
        if " on " not in line:
            continue
        device, rest = line.split(" on ", 1)
        mount_point = rest.rsplit(" (", 1)[0] if " (" in rest else rest
        # Linux util-linux prints "dev on /mnt type ext4 (rw)"
        if " type " in mount_point:
            mount_point = mount_point.rsplit(" type ", 1)[0]
        device = device.strip()
        mount_point = mount_point.strip()
        if device and mount_point:
            mounts[device] = mount_point
    return mounts


def read_mount_table(runner: CommandRunner, files: Iterable[str] = MOUNT_TABLE_FILES) -> Dict[str, str]:
    """
    Read the live mount table.

    Tries the mount table files in order, then the ``mount`` command.
    Returns an empty dict if nothing is readable.
    """
    for path in files:
        try:
            with open(path, "r") as f:
                return parse_mount_table(f.read())
        except OSError:
            continue

    result = runner.run(["mount"])
    if result.ok:
        return parse_mount_output(result.stdout)

    logger.warning(f"Could not read mount table: {result.output}")
    return {}


def freebsd_parent_disk(name: str) -> Optional[str]:
    """Parent disk of a FreeBSD partition: da0p1 -> da0, ada0s1a -> ada0."""
    match = _FREEBSD_PARTITION.match(name)
    return match.group("disk") if match else None


def linux_parent_disk(name: str) -> Optional[str]:
    """Parent disk of a Linux partition: sdb1 -> sdb, mmcblk0p2 -> mmcblk0."""
    match = _LINUX_NUMBERED_DISK.match(name) or _LINUX_PARTITION.match(name)
    return match.group("disk") if match else None


def parent_disk(name: str) -> Optional[str]:
    """Parent disk by whichever naming convention matches."""
    if _LINUX_NUMBERED_DISK.match(name):
        return linux_parent_disk(name)
    return freebsd_parent_disk(name) or linux_parent_disk(name)


def partition_index(name: str) -> int:
    """Trailing partition number of a partition name, or 0."""
    match = _FREEBSD_PARTITION.match(name) or _LINUX_NUMBERED_DISK.match(name) or _LINUX_PARTITION.match(name)
    return int(match.group("index")) if match else 0
