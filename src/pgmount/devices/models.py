import os
import re
from typing import Dict

from pydantic import BaseModel

# Anything outside this alphabet is replaced in mount directory names, which
# rules out separators, dots, whitespace and shell metacharacters.
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class Device(BaseModel):
    """A removable disk or partition as seen by one scan."""
    name: str  # e.g. "da0", "da0p1", "sdb1"
    path: str  # e.g. "/dev/da0p1"; unique within a snapshot
    label: str = ""
    volume_id: str = ""  # filesystem UUID
    fs_type: str = ""
    size_bytes: int = 0
    mount_point: str = ""
    is_mounted: bool = False
    is_encrypted: bool = False
    is_unlocked: bool = False
    is_partition: bool = False
    is_removable: bool = False
    partition_index: int = 0
    unlocked_path: str = ""  # decrypted node reported by the OS, e.g. /dev/mapper/luks-...

    def __str__(self) -> str:
        return f"{self.path} ({self.display_name})"

    @property
    def display_name(self) -> str:
        """Label if present, else a UUID prefix, else the device name."""
        if self.label:
            return self.label
        if self.volume_id:
            return self.volume_id[:8] + "..."
        return self.name

    def mount_directory_name(self) -> str:
        """Directory name for this device's mount point, free of unsafe characters."""
        if self.label:
            raw = self.label
        elif self.volume_id:
            raw = self.volume_id[:8]
        else:
            raw = self.name
        name = sanitize_name(raw)
        if not name.strip("_"):
            name = sanitize_name(self.name) or "device"
        return name

    def mount_directory(self, base: str) -> str:
        """Join the sanitized directory name to ``base``."""
        return safe_join(base, self.mount_directory_name())

    def to_dict(self) -> Dict:
        """Convert to dictionary for hooks and debugging."""
        return self.model_dump()


def sanitize_name(name: str) -> str:
    """Replace every character outside [A-Za-z0-9_-] with an underscore."""
    return _UNSAFE_CHARS.sub("_", name)


def safe_join(base: str, name: str) -> str:
    """
    Join ``name`` to ``base`` and verify the result stays inside ``base``.

    Raises:
        ValueError: if the joined path escapes the base directory
    """
    base_real = os.path.realpath(base)
    joined = os.path.realpath(os.path.join(base_real, name))
    if os.path.dirname(joined) != base_real or not os.path.basename(joined):
        raise ValueError(f"mount directory {name!r} escapes {base}")
    return joined
