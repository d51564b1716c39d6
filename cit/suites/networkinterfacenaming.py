# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network interface naming suite."""

import logging
import os
import random
import threading
from typing import Set

from ..workflow import TestWorkflow, disk_type_needed, region_from_zone

logger = logging.getLogger(__name__)

METAL_MACHINE_TYPE = "c3-standard-192-metal"
METAL_SUBNETWORK_CIDR = "10.132.0.0/20"
METAL_ZONES = [
    "asia-southeast1-a",
    "asia-southeast1-c",
    "us-west1-a",
    "us-west1-b",
    "us-east1-c",
    "us-east1-d",
    "us-east4-a",
    "us-east4-c",
    "us-east5-a",
    "us-east5-b",
]

_used_zones: Set[str] = set()
_zones_lock = threading.Lock()


def metal_zone() -> str:
    """Zone for the metal VM, spreading concurrent images over the zones."""
    zone = os.getenv("CIT_NETWORKINTERFACENAMING_METAL_ZONE", "")
    if zone:
        return zone

    with _zones_lock:
        unused = [zone for zone in METAL_ZONES if zone not in _used_zones]
        if not unused:
            _used_zones.clear()
            unused = list(METAL_ZONES)
        zone = random.choice(unused)
        _used_zones.add(zone)
    return zone


def setup(workflow: TestWorkflow) -> None:
    network1 = workflow.create_network("network-1")
    subnetwork1 = workflow.create_subnetwork(network1, "subnetwork-1", "10.128.0.0/20")
    network2 = workflow.create_network("network-2")
    subnetwork2 = workflow.create_subnetwork(network2, "subnetwork-2", "192.168.0.0/16")

    # Mixed virtio/gvnic needs both an x86 machine and gvnic support in the image.
    nic1_type, nic2_type = "", ""
    if workflow.image.architecture != "ARM64" and workflow.image.has_feature("GVNIC"):
        nic1_type, nic2_type = "VIRTIO_NET", "GVNIC"

    vm = workflow.create_test_vm("nicname", boot_disk_type=disk_type_needed(workflow.machine_type))
    vm.add_nic(network1.name, subnetwork=subnetwork1.name, nic_type=nic1_type)
    vm.add_nic(network2.name, subnetwork=subnetwork2.name, nic_type=nic2_type, external_address=False)
    vm.run_checks("interface_naming")

    if workflow.image.architecture == "X86_64" and workflow.image.has_feature("IDPF"):
        zone = metal_zone()
        logger.info("using zone %s for %s instance", zone, METAL_MACHINE_TYPE)
        # Subnetworks are regional and the metal zone may be outside the test region.
        metal_subnetwork = workflow.create_subnetwork(
            network1, "subnetwork-metal", METAL_SUBNETWORK_CIDR, region=region_from_zone(zone)
        )
        metal = workflow.create_test_vm(
            "c3metal",
            machine_type=METAL_MACHINE_TYPE,
            zone=zone,
            boot_disk_type=disk_type_needed(METAL_MACHINE_TYPE),
            on_host_maintenance="TERMINATE",
        )
        metal.add_nic(network1.name, subnetwork=metal_subnetwork.name, nic_type="IDPF")
        metal.run_checks("interface_naming")
