# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import logging
import os
from pathlib import Path

from .utils import SkipCheck, Validator, command_exists, get_metadata, run

logger = logging.getLogger("cit")

GB = 1024 * 1024 * 1024
DISK_BY_ID = "/dev/disk/by-id"
RESIZE_MARKER = "/var/lib/cit/disk-resize-boot"
RESIZE_GB_KEY = "disk-resize-gb"
MIN_FILESYSTEM_RATIO = 0.9
HOTATTACH_MOUNT_PATH = "/mnt/disks/hotattach"
MKFS_CMD = "mkfs.ext4"


def write_and_read_back(path: str, contents: str) -> None:
    """Write contents, sync them to disk and read them back."""
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(contents)
        handle.flush()
        os.fsync(handle.fileno())

    read_back = Path(path).read_text(encoding="utf-8")
    assert read_back == contents, f"read back {read_back!r} from {path}, wrote {contents!r}"


def get_root_disk() -> str:
    """Block device backing the root filesystem, e.g. /dev/sda."""
    source = run(["findmnt", "-n", "-o", "SOURCE", "--nofsroot", "/"]).strip()
    parent = run(["lsblk", "-n", "-o", "PKNAME", source]).strip()
    return f"/dev/{parent}" if parent else source


def get_block_device_size(device: str) -> int:
    output = run(["lsblk", "-b", "-d", "-n", "-o", "SIZE", device])
    return int(output.strip())


def get_filesystem_size(path: str) -> int:
    stats = os.statvfs(path)
    return stats.f_blocks * stats.f_frsize


class DiskValidator(Validator):
    """Validate disk access, resizing and device naming."""

    def validate_block_device_naming(self) -> None:
        run(["udevadm", "trigger"])
        run(["udevadm", "settle"])
        disks = sorted(os.listdir(DISK_BY_ID))
        assert "google-secondary" in disks, f"could not find a disk named google-secondary, found these disks: {disks}"
        logger.info("validate_block_device_naming OK")

    def validate_disk_read_write(self) -> None:
        path = "/var/lib/cit/disk-read-write.txt"
        os.makedirs(os.path.dirname(path), exist_ok=True)
        write_and_read_back(path, "disk read write test\n")
        logger.info("validate_disk_read_write OK: %s", path)

    def validate_disk_resize(self) -> None:
        """After the boot disk was resized, the root filesystem grew with it."""
        if not os.path.exists(RESIZE_MARKER):
            os.makedirs(os.path.dirname(RESIZE_MARKER), exist_ok=True)
            Path(RESIZE_MARKER).touch()
            raise SkipCheck("disk is resized after the first boot")

        want_bytes = int(get_metadata("instance", "attributes", RESIZE_GB_KEY)) * GB
        disk = get_root_disk()
        disk_bytes = get_block_device_size(disk)
        assert disk_bytes >= want_bytes, f"root disk {disk} has {disk_bytes} bytes, want at least {want_bytes}"

        filesystem_bytes = get_filesystem_size("/")
        assert (
            filesystem_bytes >= MIN_FILESYSTEM_RATIO * want_bytes
        ), f"root filesystem has {filesystem_bytes} bytes, want at least {MIN_FILESYSTEM_RATIO:.0%} of {want_bytes}"
        logger.info("validate_disk_resize OK: disk=%d filesystem=%d", disk_bytes, filesystem_bytes)


class LssdValidator(Validator):
    """Validate formatting and mounting a local SSD."""

    def validate_mount(self) -> None:
        disk_name = get_metadata("instance", "attributes", "hotattach-disk-name")
        device = os.path.realpath(os.path.join(DISK_BY_ID, f"google-{disk_name}"))
        assert command_exists(MKFS_CMD), f"could not format mount disk: {MKFS_CMD} cmd not found"

        os.makedirs(HOTATTACH_MOUNT_PATH, exist_ok=True)
        run([MKFS_CMD, "-m", "0", "-E", "lazy_itable_init=0,lazy_journal_init=0,discard", "-F", device])
        run(["mount", "-o", "discard,defaults", device, HOTATTACH_MOUNT_PATH])

        write_and_read_back(os.path.join(HOTATTACH_MOUNT_PATH, "hotattach.txt"), "cold Attach")
        logger.info("validate_mount OK: %s on %s", device, HOTATTACH_MOUNT_PATH)
