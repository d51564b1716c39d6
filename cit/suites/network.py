# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network configuration suite: multi-NIC, aliases, DHCP, MTU, NTP and DNS."""

import re

from ..guest.utils import is_cos
from ..workflow import TestWorkflow

PING1_IP = "192.168.0.2"
PING2_IP = "192.168.0.3"
ALIAS_RANGE = "10.14.8.0/24"
LOCAL_ZONE_DNS_NAME = "testlocalzone.com."
LOCAL_ZONE_RECORD = "demo.testlocalzone.com."

NO_MULTINIC_IMAGES = ["sles-15", "opensuse-leap", "ubuntu-1604", "ubuntu-pro-1604"]
EL7_FAMILY_REGEX = re.compile(r"(centos|rhel)-7")


def supports_alias_checks(image_name: str) -> bool:
    if is_cos(image_name):
        return False
    return not any(name in image_name for name in NO_MULTINIC_IMAGES)


def setup(workflow: TestWorkflow) -> None:
    network1 = workflow.create_network("network-1")
    subnetwork1 = workflow.create_subnetwork(network1, "subnetwork-1", "10.128.0.0/20")
    subnetwork1.add_secondary_range("secondary-range", "10.14.0.0/16")
    workflow.add_firewall_rule(network1, "allow-tcp-net1", ["10.128.0.0/20"])

    network2 = workflow.create_network("network-2")
    subnetwork2 = workflow.create_subnetwork(network2, "subnetwork-2", "192.168.0.0/16")
    workflow.add_firewall_rule(network2, "allow-tcp-net2", ["192.168.0.0/16"])

    ping1 = workflow.create_test_vm("ping1")
    ping1.add_nic(network1.name, subnetwork=subnetwork1.name)
    ping1.add_nic(network2.name, subnetwork=subnetwork2.name, private_ip=PING1_IP, external_address=False)
    ping1.run_checks("send_ping|dhcp|default_mtu|ntp|local_cloud_dns")

    zone = workflow.create_dns_zone("test-local-zone", LOCAL_ZONE_DNS_NAME, network1)
    zone.add_record(LOCAL_ZONE_RECORD, PING1_IP)

    multinic_checks = "static_ip|wait_for_ping"
    if supports_alias_checks(workflow.image.name):
        multinic_checks += "|alias|ggactl_command|network_manager_restart"

    is_el7 = EL7_FAMILY_REGEX.search(workflow.image.family) is not None
    use_gvnic = workflow.image.has_feature("GVNIC") and not is_el7
    if use_gvnic:
        multinic_checks += "|gvnic"

    ping2 = workflow.create_test_vm("ping2")
    ping2.reboot = True
    ping2.enable_guest_attributes()
    ping2.add_nic(
        network1.name,
        subnetwork=subnetwork1.name,
        alias_ip_range=ALIAS_RANGE,
        secondary_range_name="secondary-range",
    )
    ping2.add_nic(network2.name, subnetwork=subnetwork2.name, private_ip=PING2_IP, external_address=False)
    if use_gvnic:
        for nic in ping2.nics:
            nic.nic_type = "GVNIC"
    ping2.run_checks(multinic_checks)

    if is_el7:
        el7 = workflow.create_test_vm("testGVNICEl7")
        el7.add_nic(network1.name, subnetwork=subnetwork1.name, nic_type="GVNIC")
        el7.run_checks("gvnic")
