# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""NCCL collective benchmarks across the eight GPUs of one accelerator VM."""

from ..workflow import TestWorkflow
from .accelerator import create_accelerator_networks, create_accelerator_vm

NCCL_VM_NAME = "ncclvm"
NCCL_BOOT_DISK_SIZE_GB = 80


def setup(workflow: TestWorkflow) -> None:
    nics = create_accelerator_networks(workflow, firewalls=True)
    vm = create_accelerator_vm(workflow, NCCL_VM_NAME, nics, boot_disk_size_gb=NCCL_BOOT_DISK_SIZE_GB)
    vm.run_checks("^nccl$")
