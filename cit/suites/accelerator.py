# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Accelerator suites: GPU/NIC topology and RDMA traffic between two VMs.

Accelerator VMs have two GVNIC NICs and eight MRDMA NICs on a RoCE network
profile of the test zone, with eight GPUs attached.
"""

from typing import List, Tuple

from ..workflow import Network, Subnetwork, TestVM, TestWorkflow

GVNIC_NETWORKS = [
    ("gvnic-net0", "gvnic-net0-sub0", "192.168.0.0/24"),
    ("gvnic-net1", "gvnic-net1-sub0", "192.168.1.0/24"),
]
MRDMA_NETWORK = "mrdma-net"
MRDMA_NIC_COUNT = 8
JUMBO_FRAMES_MTU = 8896
ACCELERATOR_COUNT = 8
FIREWALL_PROTOCOLS = ["tcp", "udp", "icmp"]

RDMA_HOST_NAME = "rdmahost"
RDMA_CLIENT_NAME = "rdmaclient"
RDMA_BOOT_DISK_SIZE_GB = 80

CONFIG_CHECKS = "gpu_count|nic_count|gpu_numa_mapping|nic_numa_mapping|nic_naming"

# Suite name to the check run by the host and client VMs, with _host/_client appended.
RDMA_CHECKS = {
    "acceleratorrdma": "gpudirect_rdma",
    "acceleratorrdmabandwidth": "ib_write_bw",
    "acceleratorrdmanetwork": "rdma_network",
    "acceleratorrdmawriteimmediate": "write_with_immediate",
}


def create_accelerator_networks(workflow: TestWorkflow, firewalls: bool) -> List[Tuple[Network, Subnetwork]]:
    """Declare the GVNIC and MRDMA networks, returning one entry per NIC."""
    if not workflow.accelerator_type:
        raise ValueError(f"suite {workflow.suite} requires CIT_ACCELERATOR_TYPE")

    nics = []
    for network_name, subnetwork_name, cidr in GVNIC_NETWORKS:
        network = workflow.create_network(network_name)
        subnetwork = workflow.create_subnetwork(network, subnetwork_name, cidr)
        if firewalls:
            for protocol in FIREWALL_PROTOCOLS:
                workflow.add_firewall_rule(network, f"{network_name}-allow-{protocol}", [cidr], protocol=protocol)
        nics.append((network, subnetwork))

    mrdma = workflow.create_network(
        MRDMA_NETWORK,
        mtu=JUMBO_FRAMES_MTU,
        network_profile=f"global/networkProfiles/{workflow.zone}-vpc-roce",
    )
    for i in range(MRDMA_NIC_COUNT):
        subnetwork = workflow.create_subnetwork(mrdma, f"mrdma-net-sub-{i}", f"192.168.{i + 2}.0/24")
        nics.append((mrdma, subnetwork))

    return nics


def create_accelerator_vm(
    workflow: TestWorkflow,
    name: str,
    nics: List[Tuple[Network, Subnetwork]],
    boot_disk_size_gb: int = 0,
) -> TestVM:
    vm = workflow.create_test_vm(
        name,
        boot_disk_type="hyperdisk-balanced",
        boot_disk_size_gb=boot_disk_size_gb,
        accelerator_type=workflow.accelerator_type,
        accelerator_count=ACCELERATOR_COUNT,
        on_host_maintenance="TERMINATE",
    )
    for network, subnetwork in nics:
        if network.name == workflow.resource_name(MRDMA_NETWORK):
            vm.add_nic(network.name, subnetwork=subnetwork.name, nic_type="MRDMA", external_address=False)
        else:
            vm.add_nic(network.name, subnetwork=subnetwork.name, nic_type="GVNIC")
    return vm


def setup_config(workflow: TestWorkflow) -> None:
    nics = create_accelerator_networks(workflow, firewalls=False)
    vm = create_accelerator_vm(workflow, "accelerator-cfg", nics)
    vm.run_checks(CONFIG_CHECKS)


def setup_rdma(workflow: TestWorkflow) -> None:
    check = RDMA_CHECKS[workflow.suite]
    nics = create_accelerator_networks(workflow, firewalls=True)

    host = create_accelerator_vm(workflow, RDMA_HOST_NAME, nics, boot_disk_size_gb=RDMA_BOOT_DISK_SIZE_GB)
    host.run_checks(f"^{check}_host$")

    client = create_accelerator_vm(workflow, RDMA_CLIENT_NAME, nics, boot_disk_size_gb=RDMA_BOOT_DISK_SIZE_GB)
    client.run_checks(f"^{check}_client$")
