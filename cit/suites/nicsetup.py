# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""NIC setup suite: IPv4, dual stack and IPv6 only NICs configured by the agent.

The VM names encode the stack type of each NIC in groups of four characters
(ipv4, dual, ipv6), which the guest decodes to know what to expect.
"""

import os
from typing import List

from ..guest.imagematch import IMAGE_SLES, ImageException, has_match
from ..workflow import COMPUTE_READONLY_SCOPE, COMPUTE_SCOPE, TestVM, TestWorkflow

PING_VM_IPV4 = "10.0.0.128"
SUPPORTS_IPV6_KEY = "supports-ipv6"
VM_TYPES = ["multi", "single", "both"]

IPV6_EXCEPTIONS = [
    ImageException(match=IMAGE_SLES, version=12, compare="eq"),
    ImageException(match=r"rhel-(?:9-0|8-6)-sap-ha"),
]

STACK_TYPES = {
    "ipv4": ("IPV4_ONLY", ""),
    "dual": ("IPV4_IPV6", ""),
    "ipv6": ("IPV6_ONLY", "EXTERNAL"),
}
SECONDARY_STACK_TYPES = {
    "ipv4": ("IPV4_ONLY", ""),
    "dual": ("IPV4_IPV6", "INTERNAL"),
    "ipv6": ("IPV6_ONLY", "INTERNAL"),
}


def supports_ipv6(image_name: str) -> bool:
    return not has_match(image_name, IPV6_EXCEPTIONS)


def vm_names(vm_type: str, ipv6: bool) -> List[str]:
    """Names of the VMs to test, each NIC's stack type spelled in order."""
    names = []
    stacks = ["ipv4", "dual", "ipv6"] if ipv6 else ["ipv4"]
    if vm_type != "multi":
        names += stacks
    if vm_type != "single":
        names += [first + second for first in stacks for second in stacks]
    return names


def setup(workflow: TestWorkflow) -> None:
    vm_type = os.getenv("CIT_NICSETUP_VMTYPE", "both")
    if vm_type not in VM_TYPES:
        raise ValueError(f"invalid vmtype: {vm_type}\nMust be one of: {VM_TYPES}")

    ipv6 = supports_ipv6(workflow.image.name)

    network1 = workflow.create_network("network1")
    subnetwork1 = workflow.create_subnetwork(
        network1,
        "dual",
        "10.128.0.0/24",
        stack_type="IPV4_IPV6",
        ipv6_access_type="EXTERNAL",
    )

    vms: List[TestVM] = []
    names = vm_names(vm_type, ipv6)
    if vm_type != "single":
        network2 = workflow.create_network("network2", enable_ula_internal_ipv6=True)
        subnetwork2 = workflow.create_subnetwork(
            network2,
            "dual-2",
            "10.0.0.0/24",
            stack_type="IPV4_IPV6",
            ipv6_access_type="INTERNAL",
        )
        for short_name, network in (("net1", network1), ("net2", network2)):
            workflow.add_firewall_rule(network, f"allow-connection-ipv4-{short_name}", ["0.0.0.0/0"])
            workflow.add_firewall_rule(network, f"allow-connection-ipv6-{short_name}", ["::/0"])

        ping = workflow.create_test_vm("ping")
        if ipv6:
            ping.add_nic(
                network2.name,
                subnetwork=subnetwork2.name,
                stack_type="IPV4_IPV6",
                ipv6_access_type="INTERNAL",
                private_ip=PING_VM_IPV4,
            )
        else:
            ping.add_nic(network2.name, subnetwork=subnetwork2.name, stack_type="IPV4_ONLY", private_ip=PING_VM_IPV4)
        ping.scopes.append(COMPUTE_SCOPE)
        ping.add_metadata(SUPPORTS_IPV6_KEY, str(ipv6).lower())
        ping.run_checks("empty")

    for name in names:
        vm = workflow.create_test_vm(name)
        stack_type, access_type = STACK_TYPES[name[:4]]
        vm.add_nic(network1.name, subnetwork=subnetwork1.name, stack_type=stack_type, ipv6_access_type=access_type)
        if len(name) > 4:
            stack_type, access_type = SECONDARY_STACK_TYPES[name[4:]]
            vm.add_nic(
                network2.name,
                subnetwork=subnetwork2.name,
                stack_type=stack_type,
                ipv6_access_type=access_type,
                external_address=False,
            )
            vm.scopes.append(COMPUTE_READONLY_SCOPE)
        vms.append(vm)

    for vm in vms:
        vm.add_metadata(SUPPORTS_IPV6_KEY, str(ipv6).lower())
        vm.run_checks("nic_setup")
