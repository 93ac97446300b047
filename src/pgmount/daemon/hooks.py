"""User-configured commands run on lifecycle events."""
import logging
import re
import shlex
from concurrent.futures import Future
from typing import Dict, List, Optional, Union

from pgmount.devices.models import Device
from pgmount.utils.background import BackgroundTasks
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

HookTemplate = Union[str, List[str]]

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def hook_values(event: str, device: Device) -> Dict[str, str]:
    """Values available to hook templates."""
    return {
        "event": event,
        "device": device.path,
        "name": device.name,
        "label": device.label,
        "uuid": device.volume_id,
        "fstype": device.fs_type,
        "mount_point": device.mount_point,
    }


def build_hook_command(template: HookTemplate, event: str, device: Device) -> List[str]:
    """
    Turn a hook template into an argument vector.

    The template is split into words first and placeholders are replaced
    inside each word afterwards, so a device attribute always lands in a
    single argument and is never parsed as shell syntax. Unknown
    placeholders are left as they are.

    Raises:
        ValueError: if a string template has unbalanced quotes
    """
    words = shlex.split(template) if isinstance(template, str) else list(template)
    values = hook_values(event, device)
    return [_PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), word) for word in words]


class EventHookDispatcher:
    """Runs the hook configured for an event without waiting for it."""

    def __init__(self, hooks: Dict[str, HookTemplate], background: BackgroundTasks,
                 runner: Optional[CommandRunner] = None):
        self.hooks = hooks
        self.background = background
        self.runner = runner or CommandRunner()

    def dispatch(self, event: str, device: Device) -> Optional[Future]:
        """Start the hook for ``event`` if one is configured."""
        template = self.hooks.get(event)
        if not template:
            return None

        try:
            argv = build_hook_command(template, event, device)
        except ValueError as e:
            logger.error(f"Invalid event hook for {event}: {e}")
            return None
        if not argv:
            return None

        logger.info(f"Executing event hook for {event}: {argv}")
        return self.background.submit(f"Event hook {event}", self._run, event, argv)

    def _run(self, event: str, argv: List[str]) -> None:
        result = self.runner.run(argv)
        if not result.ok:
            logger.warning(f"Event hook {event} exited with {result.returncode}: {result.output}")
