"""Exception hierarchy for pgmount."""
from typing import List, Optional


class PgmountError(Exception):
    """Base class for all pgmount errors."""


class ConfigError(PgmountError):
    """Configuration file could not be read or validated."""


class DiscoveryError(PgmountError):
    """No discovery method could enumerate devices."""

    def __init__(self, message: str, reasons: Optional[List[str]] = None):
        super().__init__(message)
        self.reasons = reasons or []

    def __str__(self) -> str:
        base = super().__str__()
        if self.reasons:
            return f"{base} ({'; '.join(self.reasons)})"
        return base


class MountError(PgmountError):
    """A device could not be mounted."""

    def __init__(self, message: str, path: str = "", output: str = ""):
        super().__init__(message)
        self.path = path
        self.output = output


class UnmountError(PgmountError):
    """A device could not be unmounted."""

    def __init__(self, message: str, path: str = "", output: str = ""):
        super().__init__(message)
        self.path = path
        self.output = output


class UnlockError(PgmountError):
    """An encrypted device could not be unlocked."""

    def __init__(self, message: str, path: str = "", output: str = ""):
        super().__init__(message)
        self.path = path
        self.output = output


class NotificationError(PgmountError):
    """Desktop notifications are unavailable."""


class PartialBatchFailure(PgmountError):
    """Some devices of a mount-all or unmount-all batch failed."""

    def __init__(self, result):
        super().__init__(
            f"{len(result.failures)} device(s) failed, {result.succeeded} succeeded"
        )
        self.result = result
