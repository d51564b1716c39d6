# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest agent suite: telemetry, snapshot scripts, clock and service ordering."""

from ..workflow import TestWorkflow, disk_type_needed

WINDOWS_CLIENT_IMAGES = ["windows-10", "windows-11"]


def is_windows_client(image_name: str) -> bool:
    return any(name in image_name for name in WINDOWS_CLIENT_IMAGES)


def setup(workflow: TestWorkflow) -> None:
    disk_type = disk_type_needed(workflow.machine_type)

    disabled = workflow.create_test_vm("telemetryDisabled", boot_disk_type=disk_type)
    disabled.add_metadata("disable-guest-telemetry", "true")
    disabled.run_checks("telemetry")

    enabled = workflow.create_test_vm("telemetryEnabled", boot_disk_type=disk_type)
    enabled.add_metadata("disable-guest-telemetry", "false")
    enabled.run_checks("telemetry")

    if not is_windows_client(workflow.image.name):
        snapshot = workflow.create_test_vm("snapshotScripts", boot_disk_type=disk_type)
        snapshot.run_checks("snapshot_scripts")

    clock = workflow.create_test_vm("clock", boot_disk_type=disk_type)
    clock.run_checks("clock_drift")

    service_config = workflow.create_test_vm("serviceConfig", boot_disk_type=disk_type)
    service_config.run_checks("service_config")
