"""Desktop notifications through notify-send."""
import logging
import shutil
from typing import Optional

from pgmount.errors import NotificationError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

DEFAULT_ICON = "drive-removable-media"


class Notifier:
    """Handle returned by init_notifications(); required to send anything."""

    def __init__(self, executable: str, runner: Optional[CommandRunner] = None,
                 icon: str = DEFAULT_ICON):
        self.executable = executable
        self.runner = runner or CommandRunner(timeout=10)
        self.icon = icon

    def send(self, summary: str, body: str, timeout_ms: int = 0) -> None:
        """
        Show a notification.

        Raises:
            NotificationError: if notify-send fails
        """
        args = [self.executable]
        if timeout_ms > 0:
            args += ["-t", str(timeout_ms)]
        if self.icon:
            args += ["-i", self.icon]
        args += [summary, body]

        result = self.runner.run(args)
        if not result.ok:
            raise NotificationError(f"notify-send failed: {result.output}")


class NullNotifier(Notifier):
    """Used when notifications are disabled or unavailable."""

    def __init__(self):
        super().__init__(executable="")

    def send(self, summary: str, body: str, timeout_ms: int = 0) -> None:
        logger.debug(f"Notification suppressed: {summary}: {body}")


def init_notifications(runner: Optional[CommandRunner] = None,
                       executable: str = "notify-send") -> Notifier:
    """
    Locate notify-send and return a handle for sending notifications.

    Raises:
        NotificationError: if notify-send is not installed
    """
    path = shutil.which(executable)
    if path is None:
        raise NotificationError(f"{executable} not found in PATH (install libnotify)")
    return Notifier(path, runner=runner)
