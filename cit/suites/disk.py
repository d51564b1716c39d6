# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Disk suites: boot disk resize, block device naming and local SSD mounts."""

from ..workflow import TestWorkflow

RESIZE_DISK_SIZE_GB = 200
LSSD_ZONE = "us-central1-a"
LSSD_MACHINE_TYPE = "c3-standard-8-lssd"
LSSD_BOOT_DISK_SIZE_GB = 10

BLOCK_NAMING_MACHINE_TYPES = {
    "ARM64": "c4a-standard-1",
    "X86_64": "c3-standard-4",
}


def setup(workflow: TestWorkflow) -> None:
    vm = workflow.create_test_vm("resize")
    vm.resize_disk_after_boot(RESIZE_DISK_SIZE_GB)
    vm.run_checks("disk_read_write|disk_resize")

    # Block device naming comes from the guest environment's udev rules.
    if workflow.image.has_feature("GVNIC"):
        machine_type = BLOCK_NAMING_MACHINE_TYPES[workflow.image.architecture]
        series = machine_type.split("-")[0]
        naming = workflow.create_test_vm(
            f"blockNaming{series.upper()}",
            machine_type=machine_type,
            boot_disk_type="hyperdisk-balanced",
        )
        naming.add_disk("secondary", 10, disk_type="hyperdisk-balanced")
        naming.run_checks("block_device_naming")


def setup_lssd(workflow: TestWorkflow) -> None:
    if workflow.image.architecture == "ARM64" or not workflow.image.has_feature("GVNIC"):
        workflow.skip(f"{workflow.image.name} cannot run on {LSSD_MACHINE_TYPE}")

    vm = workflow.create_test_vm(
        "remountLSSD",
        machine_type=LSSD_MACHINE_TYPE,
        zone=LSSD_ZONE,
        boot_disk_type="pd-balanced",
        boot_disk_size_gb=LSSD_BOOT_DISK_SIZE_GB,
    )
    # Local SSDs are listed under /dev/disk/by-id by their NVMe name.
    vm.add_metadata("hotattach-disk-name", "local-nvme-ssd-0")
    vm.run_checks("mount")
