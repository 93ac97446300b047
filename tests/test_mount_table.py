from conftest import FakeRunner, fail, ok
from pgmount.devices.strategies.utils import (
    parent_disk,
    parse_mount_output,
    parse_mount_table,
    parse_size,
    partition_index,
    read_mount_table,
)


class TestMountTable:
    """Test suite for mount table parsing."""

    def test_proc_mounts(self):
        text = (
            "sysfs /sys sysfs rw,nosuid 0 0\n"
            "/dev/sdb1 /media/My\\040Stick vfat rw,relatime 0 0\n"
            "# comment\n"
            "\n"
        )

        assert parse_mount_table(text) == {
            "sysfs": "/sys",
            "/dev/sdb1": "/media/My Stick",
        }

    def test_freebsd_mount_output(self):
        text = "/dev/ada0p2 on / (ufs, local, soft-updates)\n/dev/da0p1 on /media/USB STICK (msdosfs, local)\n"

        assert parse_mount_output(text) == {
            "/dev/ada0p2": "/",
            "/dev/da0p1": "/media/USB STICK",
        }

    def test_linux_mount_output(self):
        text = "/dev/sdb1 on /media/USB type vfat (rw,relatime)\n"

        assert parse_mount_output(text) == {"/dev/sdb1": "/media/USB"}

    def test_read_prefers_files(self, tmp_path):
        mtab = tmp_path / "mtab"
        mtab.write_text("/dev/sdb1 /media/USB vfat rw 0 0\n")
        runner = FakeRunner()

        assert read_mount_table(runner, [str(tmp_path / "absent"), str(mtab)]) == {"/dev/sdb1": "/media/USB"}
        assert runner.calls == []

    def test_read_falls_back_to_mount(self, tmp_path):
        runner = FakeRunner({("mount",): ok("/dev/da0p1 on /media/USB (msdosfs, local)\n")})

        assert read_mount_table(runner, [str(tmp_path / "absent")]) == {"/dev/da0p1": "/media/USB"}

    def test_read_nothing_available(self, tmp_path):
        runner = FakeRunner({("mount",): fail()})

        assert read_mount_table(runner, []) == {}


def test_parse_size():
    assert parse_size(1024) == 1024
    assert parse_size("8000000000") == 8000000000
    assert parse_size("1K") == 1024
    assert parse_size("7,5G") == int(7.5 * 1024 ** 3)
    assert parse_size(None) == 0
    assert parse_size("") == 0
    assert parse_size("huge") == 0


def test_parent_disk_and_index():
    assert parent_disk("da0p1") == "da0"
    assert parent_disk("da0s1a") == "da0"
    assert parent_disk("sdb2") == "sdb"
    assert parent_disk("mmcblk0p1") == "mmcblk0"
    assert partition_index("da0p3") == 3
    assert partition_index("mmcblk0p2") == 2
    assert partition_index("sdb") == 0
