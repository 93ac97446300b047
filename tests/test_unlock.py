import logging
from unittest import mock

import pytest

from conftest import FakeRunner, fail, ok
from pgmount.config import EncryptionConfig
from pgmount.daemon.bookkeeping import MountRegistry
from pgmount.daemon.unlock import EncryptionUnlocker, prompt_on_terminal
from pgmount.devices.models import Device
from pgmount.errors import UnlockError
from pgmount.utils.runner import CommandResult

PASSPHRASE = "correct horse battery staple"


def encrypted(**kwargs) -> Device:
    fields = dict(name="da0p1", path="/dev/da0p1", volume_id="1234-ABCD", is_partition=True, is_encrypted=True)
    fields.update(kwargs)
    return Device(**fields)


class TestEncryptionUnlocker:
    """Test suite for EncryptionUnlocker."""

    @pytest.fixture
    def registry(self):
        return MountRegistry()

    def make_unlocker(self, registry, runner, prompt=lambda d: PASSPHRASE, **config):
        config.setdefault("password_cmd", "")
        return EncryptionUnlocker(EncryptionConfig(**config), registry, runner, prompt=prompt)

    def test_passphrase_on_stdin(self, registry, caplog):
        runner = FakeRunner({"geli": ok()})
        unlocker = self.make_unlocker(registry, runner)

        with caplog.at_level(logging.DEBUG):
            provider = unlocker.unlock(encrypted())

        assert provider == "/dev/da0p1.eli"
        assert runner.calls == [["geli", "attach", "/dev/da0p1"]]
        assert runner.inputs == [PASSPHRASE + "\n"]
        assert registry.is_unlocked("/dev/da0p1")
        assert PASSPHRASE not in caplog.text
        assert all(PASSPHRASE not in arg for call in runner.calls for arg in call)

    def test_keyfile(self, registry, tmp_path):
        keyfile = tmp_path / "usb.key"
        keyfile.write_bytes(b"\x00" * 64)
        runner = FakeRunner({"geli": ok()})
        prompt = mock.MagicMock()
        unlocker = self.make_unlocker(registry, runner, prompt=prompt, keyfiles={"1234-ABCD": str(keyfile)})

        unlocker.unlock(encrypted())

        assert runner.calls == [["geli", "attach", "-k", str(keyfile), "/dev/da0p1"]]
        assert runner.inputs == [None]
        prompt.assert_not_called()

    def test_missing_keyfile(self, registry, tmp_path):
        runner = FakeRunner({"geli": ok()})
        unlocker = self.make_unlocker(registry, runner, keyfiles={"1234-ABCD": str(tmp_path / "gone.key")})

        with pytest.raises(UnlockError, match="not found"):
            unlocker.unlock(encrypted())

        assert runner.calls == []

    def test_password_command(self, registry):
        runner = FakeRunner({
            ("sh", "-c", "pass show usb"): ok(PASSPHRASE + "\n"),
            "geli": ok(),
        })
        prompt = mock.MagicMock()
        unlocker = self.make_unlocker(registry, runner, prompt=prompt, password_cmd="pass show usb")

        unlocker.unlock(encrypted())

        assert runner.inputs[-1] == PASSPHRASE + "\n"
        prompt.assert_not_called()

    def test_password_command_runs_in_a_shell(self, registry):
        runner = FakeRunner({
            ("sh", "-c", "pass show usb | head -1"): ok(PASSPHRASE + "\n"),
            "geli": ok(),
        })
        unlocker = self.make_unlocker(registry, runner, password_cmd="pass show usb | head -1")

        unlocker.unlock(encrypted())

        assert runner.calls[0] == ["sh", "-c", "pass show usb | head -1"]
        assert runner.calls_to("pass") == []
        assert runner.inputs[-1] == PASSPHRASE + "\n"

    def test_password_command_failure_hides_stdout(self, registry):
        runner = FakeRunner({
            ("sh", "-c", "pass show usb"): CommandResult(
                stdout="partial-secret", stderr="gpg: decryption failed", returncode=2),
        })
        unlocker = self.make_unlocker(registry, runner, password_cmd="pass show usb")

        with pytest.raises(UnlockError) as exc_info:
            unlocker.unlock(encrypted())

        assert "decryption failed" in str(exc_info.value)
        assert "partial-secret" not in str(exc_info.value)

    def test_wrong_passphrase(self, registry):
        runner = FakeRunner({"geli": fail("geli: Wrong key for da0p1.")})
        unlocker = self.make_unlocker(registry, runner)

        with pytest.raises(UnlockError) as exc_info:
            unlocker.unlock(encrypted())

        assert "Wrong key" in exc_info.value.output
        assert not registry.is_unlocked("/dev/da0p1")

    def test_prompt_cancelled(self, registry):
        def cancelled(device):
            raise EOFError()

        unlocker = self.make_unlocker(registry, FakeRunner({"geli": ok()}), prompt=cancelled)

        with pytest.raises(UnlockError, match="no passphrase"):
            unlocker.unlock(encrypted())

    def test_disabled(self, registry):
        unlocker = self.make_unlocker(registry, FakeRunner(), enabled=False)

        with pytest.raises(UnlockError, match="disabled"):
            unlocker.unlock(encrypted())

    def test_lock(self, registry):
        runner = FakeRunner({"geli": ok()})
        unlocker = self.make_unlocker(registry, runner)
        registry.mark_unlocked("/dev/da0p1")

        unlocker.lock(encrypted())

        assert runner.calls == [["geli", "detach", "/dev/da0p1"]]
        assert not registry.is_unlocked("/dev/da0p1")

    def test_custom_provider_suffix(self, registry):
        unlocker = self.make_unlocker(registry, FakeRunner(), provider_suffix="_crypt")

        assert unlocker.provider_path(encrypted()) == "/dev/da0p1_crypt"



class TestLuksUnlock:
    """Unlocking LUKS volumes through a templated command."""

    CRYPTSETUP = dict(
        password_cmd="",
        command=["cryptsetup", "open", "{device}", "pgmount-{name}"],
        lock_command=["cryptsetup", "close", "{provider}"],
        keyfile_option="--key-file",
        provider_template="/dev/mapper/pgmount-{name}",
    )

    @pytest.fixture
    def registry(self):
        return MountRegistry()

    def luks(self, **kwargs) -> Device:
        return encrypted(name="sdb1", path="/dev/sdb1", fs_type="crypto_LUKS", **kwargs)

    def test_refused_with_geli_command(self, registry):
        runner = FakeRunner({"geli": ok()})
        unlocker = EncryptionUnlocker(EncryptionConfig(password_cmd=""), registry, runner,
                                      prompt=lambda d: PASSPHRASE)

        with pytest.raises(UnlockError, match="cannot unlock LUKS"):
            unlocker.unlock(self.luks())

        assert runner.calls == []

    def test_templated_unlock_and_lock(self, registry):
        runner = FakeRunner({"cryptsetup": ok()})
        unlocker = EncryptionUnlocker(EncryptionConfig(**self.CRYPTSETUP), registry, runner,
                                      prompt=lambda d: PASSPHRASE)

        provider = unlocker.unlock(self.luks())
        unlocker.lock(self.luks())

        assert provider == "/dev/mapper/pgmount-sdb1"
        assert runner.calls == [
            ["cryptsetup", "open", "/dev/sdb1", "pgmount-sdb1"],
            ["cryptsetup", "close", "/dev/mapper/pgmount-sdb1"],
        ]
        assert runner.inputs[0] == PASSPHRASE + "\n"

    def test_templated_keyfile(self, registry, tmp_path):
        keyfile = tmp_path / "usb.key"
        keyfile.write_bytes(b"\x00" * 64)
        runner = FakeRunner({"cryptsetup": ok()})
        config = EncryptionConfig(keyfiles={"1234-ABCD": str(keyfile)}, **self.CRYPTSETUP)
        unlocker = EncryptionUnlocker(config, registry, runner)

        unlocker.unlock(self.luks())

        assert runner.calls == [
            ["cryptsetup", "open", "/dev/sdb1", "pgmount-sdb1", "--key-file", str(keyfile)]
        ]

    def test_mapping_opened_by_the_system(self, registry):
        unlocker = EncryptionUnlocker(EncryptionConfig(password_cmd=""), registry, FakeRunner())

        device = self.luks(is_unlocked=True, unlocked_path="/dev/mapper/luks-1234")

        assert unlocker.provider_path(device) == "/dev/mapper/luks-1234"


def test_prompt_without_terminal():
    with mock.patch("sys.stdin") as stdin:
        stdin.isatty.return_value = False

        with pytest.raises(UnlockError, match="no terminal"):
            prompt_on_terminal(encrypted())
