from unittest import mock

import pytest

from conftest import FakeRunner, fail, ok
from pgmount.devices.detection import DeviceDetectorFactory
from pgmount.devices.strategies.fallback import UnsupportedDeviceDetector
from pgmount.devices.strategies.freebsd import (
    FreeBSDDeviceDetector,
    classify_file_output,
    parse_camcontrol_devlist,
    parse_dumpe2fs,
    parse_geom_disk_list,
    parse_glabel_status,
    parse_gpart_show,
)
from pgmount.errors import DiscoveryError

GEOM_DISK_LIST = """\
Geom name: ada0
Providers:
1. Name: ada0
   Mediasize: 256060514304 (238G)
   Sectorsize: 512
   Mode: r2w2e4
   descr: Samsung SSD 860 EVO 250GB
   ident: S3YJNB0K123456
   rotationrate: 0
   fwsectors: 63
   fwheads: 16

Geom name: da0
Providers:
1. Name: da0
   Mediasize: 8000000000 (7.5G)
   Sectorsize: 512
   Mode: r0w0e0
   descr: SanDisk Cruzer Blade
   ident: 4C530001230917115583
   rotationrate: unknown
   fwsectors: 63
   fwheads: 255
"""

GPART_SHOW_DA0 = """\
=>      40  15624920  da0  GPT  (7.5G)
        40  15624920  da0p1  ms-basic-data  (7.5G)
"""

GPART_SHOW_DA0_MBR = """\
=>      63  15625937    da0  MBR  (7.5G)
        63      1985         - free -  (993K)
      2048  15623952  da0s1  fat32lba  (7.5G)
"""

FILE_FAT32 = ('/dev/da0p1: DOS/MBR boot sector, code offset 0x58+2, OEM-ID "mkfs.fat", '
              'sectors/cluster 8, Media descriptor 0xf8, sectors/track 63, heads 255, '
              'FAT (32 bit), sectors/FAT 15248, serial number 0x1a2b3c4d, label: "USB        "\n')

GLABEL_STATUS = """\
                                      Name  Status  Components
                               msdosfs/USB     N/A  da0p1
gptid/5d0a4b6e-1111-11ee-9a8b-001b2150b6b5     N/A  da0p1
                          diskid/DISK-S3YJ     N/A  ada0
"""

CAMCONTROL_DEVLIST = """\
<Samsung SSD 860 EVO 250GB RVT04B6Q>  at scbus0 target 0 lun 0 (ada0,pass0)
<SanDisk Cruzer Blade 1.00>        at scbus7 target 0 lun 0 (da0,pass1)
"""

MOUNT_OUTPUT = """\
/dev/ada0p2 on / (ufs, local, soft-updates)
devfs on /dev (devfs)
"""


def base_responses():
    return {
        ("geom", "disk", "list"): ok(GEOM_DISK_LIST),
        ("gpart", "show", "-p", "da0"): ok(GPART_SHOW_DA0),
        ("file", "-s", "/dev/da0p1"): ok(FILE_FAT32),
        ("glabel", "status"): ok(GLABEL_STATUS),
        ("camcontrol", "devlist"): ok(CAMCONTROL_DEVLIST),
        ("mount",): ok(MOUNT_OUTPUT),
    }


@pytest.fixture
def no_providers():
    with mock.patch.object(FreeBSDDeviceDetector, "provider_exists", return_value=False):
        yield


class TestFreeBSDDeviceDetector:
    """Test suite for FreeBSD device discovery."""

    def make_detector(self, runner):
        return FreeBSDDeviceDetector(runner, mount_table_files=())

    def test_usb_stick(self, no_providers):
        runner = FakeRunner(base_responses())

        devices = self.make_detector(runner).scan()

        assert [d.name for d in devices] == ["da0", "da0p1"]
        disk, partition = devices

        assert disk.size_bytes == 8000000000
        assert disk.is_removable is True
        assert disk.is_partition is False

        assert partition.path == "/dev/da0p1"
        assert partition.fs_type == "msdosfs"
        assert partition.label == "USB"
        assert partition.volume_id == "5d0a4b6e-1111-11ee-9a8b-001b2150b6b5"
        assert partition.size_bytes == 15624920 * 512
        assert partition.is_partition is True
        assert partition.is_removable is True
        assert partition.partition_index == 1
        assert partition.is_mounted is False
        assert partition.is_encrypted is False

    def test_internal_disk_skipped(self, no_providers):
        runner = FakeRunner(base_responses())

        self.make_detector(runner).scan()

        assert ["gpart", "show", "-p", "ada0"] not in runner.calls

    def test_usb_attached_without_da_prefix(self, no_providers):
        responses = base_responses()
        responses[("geom", "disk", "list")] = ok("Geom name: ada1\nProviders:\n1. Name: ada1\n   Mediasize: 1024 (1.0K)\n")
        responses[("camcontrol", "devlist")] = ok(
            "<USB Mass Storage Device 1.00>  at scbus5 target 0 lun 0 (pass2,ada1)\n")
        responses[("gpart", "show", "-p", "ada1")] = fail("gpart: No such geom: ada1.")
        runner = FakeRunner(responses)

        devices = self.make_detector(runner).scan()

        assert [d.name for d in devices] == ["ada1"]
        assert devices[0].is_removable is True

    def test_mounted_partition(self, no_providers):
        responses = base_responses()
        responses[("mount",)] = ok(MOUNT_OUTPUT + "/dev/da0p1 on /media/USB (msdosfs, local)\n")
        runner = FakeRunner(responses)

        partition = self.make_detector(runner).scan()[1]

        assert partition.is_mounted is True
        assert partition.mount_point == "/media/USB"

    def test_unlocked_geli_provider(self):
        responses = base_responses()
        responses[("file", "-s", "/dev/da0p1")] = ok("/dev/da0p1: data\n")
        responses[("mount",)] = ok("/dev/da0p1.eli on /media/SECRET (msdosfs, local)\n")
        runner = FakeRunner(responses)
        detector = self.make_detector(runner)

        with mock.patch.object(detector, "provider_exists", side_effect=lambda p: p == "/dev/da0p1"):
            partition = detector.scan()[1]

        assert partition.is_encrypted is True
        assert partition.is_unlocked is True
        assert partition.mount_point == "/media/SECRET"

    def test_ext_filesystem_uses_dumpe2fs(self, no_providers):
        responses = base_responses()
        responses[("file", "-s", "/dev/da0p1")] = ok(
            "/dev/da0p1: Linux rev 1.0 ext4 filesystem data, UUID=0f0e (extents) (64bit)\n")
        responses[("glabel", "status")] = ok("")
        responses[("dumpe2fs", "-h", "/dev/da0p1")] = ok(
            "dumpe2fs 1.47.0 (5-Feb-2023)\n"
            "Filesystem volume name:   BACKUP\n"
            "Filesystem UUID:          0f0e0d0c-0b0a-0908-0706-050403020100\n"
        )
        runner = FakeRunner(responses)

        partition = self.make_detector(runner).scan()[1]

        assert partition.fs_type == "ext4"
        assert partition.label == "BACKUP"
        assert partition.volume_id == "0f0e0d0c-0b0a-0908-0706-050403020100"

    def test_unpartitioned_disk(self, no_providers):
        responses = base_responses()
        responses[("gpart", "show", "-p", "da0")] = fail("gpart: No such geom: da0.")
        runner = FakeRunner(responses)

        devices = self.make_detector(runner).scan()

        assert [d.name for d in devices] == ["da0"]

    def test_sysctl_fallback(self, no_providers):
        responses = base_responses()
        responses[("geom", "disk", "list")] = fail("geom: command failed")
        responses[("sysctl", "-n", "kern.disks")] = ok("da0 ada0\n")
        runner = FakeRunner(responses)

        devices = self.make_detector(runner).scan()

        assert [d.name for d in devices] == ["da0", "da0p1"]
        # No sizes without geom
        assert devices[0].size_bytes == 0

    def test_all_methods_fail(self):
        runner = FakeRunner({
            ("geom", "disk", "list"): fail("geom: not found", 127),
            ("sysctl", "-n", "kern.disks"): fail("sysctl: unknown oid", 1),
        })

        with pytest.raises(DiscoveryError) as exc_info:
            self.make_detector(runner).scan()

        assert len(exc_info.value.reasons) == 2
        assert "geom" in str(exc_info.value)

    def test_no_devices(self, no_providers):
        responses = base_responses()
        responses[("geom", "disk", "list")] = ok("")
        runner = FakeRunner(responses)

        assert self.make_detector(runner).scan() == []

    def test_parent_disk(self):
        detector = FreeBSDDeviceDetector(FakeRunner())

        assert detector.parent_disk("da0p1") == "da0"
        assert detector.parent_disk("ada0s1a") == "ada0"
        assert detector.parent_disk("da0") is None


class TestFreeBSDParsers:
    """Test suite for the FreeBSD tool output parsers."""

    def test_geom_disk_list(self):
        disks = parse_geom_disk_list(GEOM_DISK_LIST)

        assert [(d.name, d.path, d.size_bytes) for d in disks] == [
            ("ada0", "/dev/ada0", 256060514304),
            ("da0", "/dev/da0", 8000000000),
        ]

    def test_gpart_show_skips_free_space(self):
        assert parse_gpart_show(GPART_SHOW_DA0_MBR, "da0") == [("da0s1", 15623952 * 512)]

    @pytest.mark.parametrize("output,expected", [
        (FILE_FAT32, ("msdosfs", False)),
        ("/dev/da0p1: Linux rev 1.0 ext2 filesystem data\n", ("ext2", False)),
        ("/dev/da0p1: Linux rev 1.0 ext3 filesystem data, UUID=x (needs journal recovery)\n", ("ext3", False)),
        ('/dev/da0p1: DOS/MBR boot sector, code offset 0x76+2, OEM-ID "EXFAT   "\n', ("exfat", False)),
        ('/dev/da0p1: DOS/MBR boot sector, code offset 0x52+2, OEM-ID "NTFS    "\n', ("ntfs", False)),
        ("/dev/da0p1: Unix Fast File system [v2] (little-endian), last mounted on /mnt, UFS2\n", ("ufs", False)),
        ("/dev/da0p1: GELI encrypted data\n", ("", True)),
        ("/dev/da0p1: data\n", ("", False)),
    ])
    def test_classify_file_output(self, output, expected):
        assert classify_file_output(output) == expected

    def test_device_path_is_not_classified(self):
        assert classify_file_output("/dev/FAT0p1: data\n") == ("", False)

    def test_glabel_status(self):
        labels = parse_glabel_status(GLABEL_STATUS)

        assert labels["da0p1"] == {"label": "USB", "volume_id": "5d0a4b6e-1111-11ee-9a8b-001b2150b6b5"}
        assert labels["ada0"] == {"volume_id": "DISK-S3YJ"}

    def test_dumpe2fs_without_label(self):
        info = parse_dumpe2fs("Filesystem volume name:   <none>\nFilesystem UUID:          abc\n")

        assert info == {"volume_id": "abc"}

    def test_camcontrol_devlist(self):
        peripherals = parse_camcontrol_devlist(CAMCONTROL_DEVLIST)

        assert set(peripherals) == {"ada0", "pass0", "da0", "pass1"}
        assert "SanDisk" in peripherals["da0"]


class TestDetectorFactory:
    """Test suite for DeviceDetectorFactory."""

    def test_freebsd(self):
        detector = DeviceDetectorFactory.create_detector(FakeRunner(), system="FreeBSD")

        assert isinstance(detector, FreeBSDDeviceDetector)

    def test_unsupported(self):
        detector = DeviceDetectorFactory.create_detector(FakeRunner(), system="Windows")

        assert isinstance(detector, UnsupportedDeviceDetector)
        with pytest.raises(DiscoveryError, match="Windows"):
            detector.scan()
