"""Unlocking of encrypted volumes through an external tool (geli by default)."""
import getpass
import logging
import os
import re
import sys
from typing import Callable, Dict, List, Optional

from pgmount.config import EncryptionConfig
from pgmount.daemon.bookkeeping import MountRegistry
from pgmount.devices.models import Device
from pgmount.errors import UnlockError
from pgmount.utils.runner import CommandRunner

logger = logging.getLogger(__name__)

PassphrasePrompt = Callable[[Device], str]

LUKS_FSTYPE = "crypto_LUKS"

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


def prompt_on_terminal(device: Device) -> str:
    """Ask for the passphrase on the controlling terminal."""
    if not sys.stdin or not sys.stdin.isatty():
        raise UnlockError(f"no terminal to prompt for the passphrase of {device.display_name}",
                          path=device.path)
    return getpass.getpass(f"Enter password for {device.display_name}: ")


def is_templated(words: List[str]) -> bool:
    return any(_PLACEHOLDER.search(word) for word in words)


def expand_words(words: List[str], values: Dict[str, str]) -> List[str]:
    """Replace {placeholders} inside each word; unknown ones are kept."""
    return [_PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), word) for word in words]


class EncryptionUnlocker:
    """
    Attaches (and optionally detaches) the decrypted view of a volume.

    ``command`` and ``lock_command`` either name a geli-style tool, which
    gets the device path appended, or carry placeholders ({device},
    {name}, {uuid}, {provider}) for tools such as ``cryptsetup open`` that
    need a mapping name.
    """

    def __init__(self, config: EncryptionConfig, registry: MountRegistry,
                 runner: Optional[CommandRunner] = None,
                 prompt: PassphrasePrompt = prompt_on_terminal):
        self.config = config
        self.registry = registry
        self.runner = runner or CommandRunner()
        self.prompt = prompt

    def provider_path(self, device: Device) -> str:
        """Device node of the decrypted view, which is what gets mounted."""
        if device.unlocked_path:
            return device.unlocked_path
        if self.config.provider_template:
            return expand_words([self.config.provider_template], self._values(device))[0]
        return device.path + self.config.provider_suffix

    def unlock(self, device: Device) -> str:
        """
        Unlock an encrypted device.

        A keyfile registered for the volume ID is used non-interactively;
        otherwise the passphrase comes from the password command or the
        terminal and is piped to the tool's standard input.

        Returns:
            Path of the decrypted provider to mount

        Raises:
            UnlockError: if encryption support is off, the tool is not set up
                for LUKS, the keyfile is missing, no passphrase could be
                obtained, or the tool fails
        """
        if not self.config.enabled:
            raise UnlockError("encryption support is disabled", path=device.path)
        if device.fs_type == LUKS_FSTYPE and not (is_templated(self.config.command)
                                                  and self.config.provider_template):
            raise UnlockError(
                f"cannot unlock LUKS volume {device.path}: set encryption.command "
                f"(e.g. cryptsetup open {{device}} pgmount-{{name}}) and encryption.provider_template "
                f"(e.g. /dev/mapper/pgmount-{{name}})", path=device.path)

        logger.info(f"Unlocking encrypted device {device.path}")
        keyfile = self.config.keyfiles.get(device.volume_id) if device.volume_id else None

        if keyfile:
            if not os.path.isfile(keyfile):
                raise UnlockError(f"keyfile {keyfile} not found", path=device.path)
            result = self.runner.run(self._command(self.config.command, device,
                                                   [self.config.keyfile_option, keyfile]))
        else:
            passphrase = self._get_passphrase(device)
            try:
                result = self.runner.run(self._command(self.config.command, device),
                                         input=passphrase + "\n")
            finally:
                del passphrase

        if not result.ok:
            raise UnlockError(f"unlock failed for {device.path}: {result.output}",
                              path=device.path, output=result.output)

        self.registry.mark_unlocked(device.path)
        logger.info(f"Successfully unlocked {device.path}")
        return self.provider_path(device)

    def lock(self, device: Device) -> None:
        """
        Detach the decrypted view of a device.

        Raises:
            UnlockError: if the tool fails
        """
        result = self.runner.run(self._command(self.config.lock_command, device))
        if not result.ok:
            raise UnlockError(f"lock failed for {device.path}: {result.output}",
                              path=device.path, output=result.output)
        self.registry.mark_locked(device.path)
        logger.info(f"Locked {device.path}")

    def _values(self, device: Device) -> Dict[str, str]:
        return {"device": device.path, "name": device.name, "uuid": device.volume_id}

    def _command(self, template: List[str], device: Device, extra: Optional[List[str]] = None) -> List[str]:
        extra = extra or []
        if not is_templated(template):
            return list(template) + extra + [device.path]
        values = self._values(device)
        values["provider"] = self.provider_path(device)
        return expand_words(template, values) + extra

    def _get_passphrase(self, device: Device) -> str:
        if self.config.password_cmd:
            # Pipelines and $VARS are allowed
            result = self.runner.run(["sh", "-c", self.config.password_cmd])
            if not result.ok:
                # stdout may hold a partial secret; only stderr is reported
                raise UnlockError(f"password command failed: {result.stderr.strip()}", path=device.path)
            return result.stdout.strip()

        try:
            return self.prompt(device)
        except (EOFError, KeyboardInterrupt) as e:
            raise UnlockError(f"no passphrase entered for {device.path}", path=device.path) from e
