import logging
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, Field, ValidationError, field_validator

from pgmount.errors import ConfigError

logger = logging.getLogger(__name__)


# Helper functions for parsing environment variables
def get_str_env(key: str, default: str = "") -> str:
    return os.environ.get(key, default)

def get_int_env(key: str, default: int) -> int:
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default

def get_float_env(key: str, default: float) -> float:
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default

def get_bool_env(key: str, default: bool) -> bool:
    value = os.environ.get(key, str(default)).lower()
    return value in ("true", "1", "yes")

def get_str_list_env(key: str, default: str = "") -> List[str]:
    return [p.strip() for p in os.environ.get(key, default).split(",") if p.strip()]


# Default factory functions
def default_automount() -> bool:
    return get_bool_env("PGMOUNT_AUTOMOUNT", True)

def default_mount_base() -> str:
    return get_str_env("PGMOUNT_MOUNT_BASE", "/media")

def default_file_manager() -> str:
    return get_str_env("PGMOUNT_FILE_MANAGER", "xdg-open")

def default_poll_interval() -> float:
    return get_float_env("PGMOUNT_POLL_INTERVAL", 2.0)

def default_scan_cache_ttl() -> float:
    return get_float_env("PGMOUNT_SCAN_CACHE_TTL", 1.0)

def default_notifications_enabled() -> bool:
    return get_bool_env("PGMOUNT_NOTIFY", True)

def default_password_cmd() -> str:
    return get_str_env("PGMOUNT_PASSWORD_CMD", "")

def default_unlock_command() -> List[str]:
    return get_str_list_env("PGMOUNT_UNLOCK_COMMAND", "geli,attach")

def default_lock_command() -> List[str]:
    return get_str_list_env("PGMOUNT_LOCK_COMMAND", "geli,detach")

def default_log_level() -> str:
    return get_str_env("LOG_LEVEL", "INFO")

def default_log_dir() -> str:
    return get_str_env("LOG_DIR", "")

def default_max_size_mb() -> int:
    return get_int_env("LOG_MAX_SIZE_MB", 10)

def default_backup_count() -> int:
    return get_int_env("LOG_BACKUP_COUNT", 5)

def default_use_color() -> bool:
    return get_bool_env("LOG_USE_COLOR", True)

def default_config_path() -> Path:
    return Path(get_str_env("PGMOUNT_CONFIG", str(Path.home() / ".config" / "pgmount" / "config.yml")))

def default_mount_options() -> Dict[str, List[str]]:
    return {
        "vfat": ["locale=en_US.UTF-8", "longnames"],
        "msdos": ["locale=en_US.UTF-8", "longnames"],
        "msdosfs": ["locale=en_US.UTF-8", "longnames"],
        "ntfs": ["locale=en_US.UTF-8"],
        "ext2": [],
        "ext3": [],
        "ext4": [],
        "ufs": [],
        "zfs": [],
    }


class NotificationConfig(BaseModel):
    """Desktop notification settings. Per-event values are seconds; <= 0 disables."""
    enabled: bool = Field(default_factory=default_notifications_enabled)
    timeout: float = 1.5
    device_mounted: float = 5.0
    device_unmounted: float = -1.0
    device_added: float = -1.0
    device_removed: float = -1.0
    device_unlocked: float = -1.0
    device_locked: float = -1.0
    job_failed: float = -1.0

    def timeout_for(self, event: str) -> float:
        """Return the display time in seconds for an event, or <= 0 if disabled."""
        if not self.enabled:
            return -1.0
        return getattr(self, event, -1.0)


class DeviceConfig(BaseModel):
    """Per-device overrides matched by label, UUID or device path."""
    id_label: str = ""
    id_uuid: str = ""
    device_path: str = ""
    ignore: bool = False
    automount: Optional[bool] = None
    options: List[str] = Field(default_factory=list)

    def matches(self, label: str, uuid: str, path: str) -> bool:
        if self.id_label and self.id_label == label:
            return True
        if self.id_uuid and self.id_uuid == uuid:
            return True
        if self.device_path and self.device_path == path:
            return True
        return False


class MountOptionsConfig(BaseModel):
    """Default mount options per filesystem type."""
    default: Dict[str, List[str]] = Field(default_factory=default_mount_options)


class EncryptionConfig(BaseModel):
    """Encrypted volume settings."""
    enabled: bool = True
    password_cmd: str = Field(default_factory=default_password_cmd)  # run with sh -c
    keyfiles: Dict[str, str] = Field(default_factory=dict)  # volume ID -> keyfile path
    keyfile_option: str = "-k"
    command: List[str] = Field(default_factory=default_unlock_command)
    lock_command: List[str] = Field(default_factory=default_lock_command)
    provider_suffix: str = ".eli"
    # Decrypted node for templated commands, e.g. "/dev/mapper/pgmount-{name}"
    provider_template: str = ""
    lock_on_unmount: bool = False


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default_factory=default_log_level)
    log_dir: str = Field(default_factory=default_log_dir)
    max_size_mb: int = Field(default_factory=default_max_size_mb)
    backup_count: int = Field(default_factory=default_backup_count)
    use_color: bool = Field(default_factory=default_use_color)


class AppConfig(BaseModel):
    """Application configuration."""
    automount: bool = Field(default_factory=default_automount)
    verbose: bool = False
    quiet: bool = False
    mount_base: str = Field(default_factory=default_mount_base)
    file_manager: str = Field(default_factory=default_file_manager)
    poll_interval: float = Field(default_factory=default_poll_interval)
    scan_cache_ttl: float = Field(default_factory=default_scan_cache_ttl)
    unmount_on_removal_force: bool = False
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    devices: List[DeviceConfig] = Field(
        default_factory=list,
        validation_alias=AliasChoices("device_config", "devices"),
    )
    event_hooks: Dict[str, Union[str, List[str]]] = Field(default_factory=dict)
    mount_options: MountOptionsConfig = Field(default_factory=MountOptionsConfig)
    encryption: EncryptionConfig = Field(
        default_factory=EncryptionConfig,
        validation_alias=AliasChoices("encryption", "geli"),
    )
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("poll_interval")
    @classmethod
    def validate_poll_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("poll_interval must be positive")
        return value

    @field_validator("devices", mode="before")
    @classmethod
    def none_as_empty_list(cls, value):
        # An empty YAML section parses as None
        return [] if value is None else value

    @field_validator("event_hooks", mode="before")
    @classmethod
    def none_as_empty_dict(cls, value):
        return {} if value is None else value

    def get_device_config(self, label: str, uuid: str, path: str) -> Optional[DeviceConfig]:
        """Return the first per-device entry matching the given identifiers."""
        for device_config in self.devices:
            if device_config.matches(label, uuid, path):
                return device_config
        return None

    def should_ignore_device(self, label: str, uuid: str, path: str) -> bool:
        device_config = self.get_device_config(label, uuid, path)
        if device_config is not None:
            return device_config.ignore
        return False

    def should_automount_device(self, label: str, uuid: str, path: str) -> bool:
        device_config = self.get_device_config(label, uuid, path)
        if device_config is not None and device_config.automount is not None:
            return device_config.automount
        return self.automount

    def get_mount_options(self, fstype: str, label: str, uuid: str, path: str) -> List[str]:
        """Device-specific options win over the per-filesystem defaults."""
        device_config = self.get_device_config(label, uuid, path)
        if device_config is not None and device_config.options:
            return list(device_config.options)
        return list(self.mount_options.default.get(fstype, []))


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    """
    Load configuration from a YAML file on top of the defaults.

    Args:
        path: Config file; defaults to ~/.config/pgmount/config.yml

    Returns:
        AppConfig. A missing file yields the defaults.

    Raises:
        ConfigError: if the file cannot be read, parsed or validated
    """
    config_path = Path(path) if path else default_config_path()
    if not config_path.exists():
        logger.info(f"Config file not found at {config_path}, using defaults")
        return AppConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to read config file {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"config file {config_path} must contain a mapping")

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config file {config_path}: {e}") from e
