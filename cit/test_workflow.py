# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .workflow import (
    DnsZone,
    FirewallRule,
    Image,
    NetworkInterface,
    SuiteSkipped,
    TestWorkflow,
    disk_type_needed,
    parse_image_spec,
    region_from_zone,
)

IMAGE_JSON = {
    "name": "debian-12-bookworm-v20240110",
    "family": "debian-12",
    "architecture": "X86_64",
    "guestOsFeatures": [{"type": "UEFI_COMPATIBLE"}, {"type": "GVNIC"}],
    "licenses": ["https://www.googleapis.com/compute/v1/projects/debian-cloud/global/licenses/debian-12-bookworm"],
    "licenseCodes": ["2147286739765738111"],
}


@pytest.fixture
def workflow():
    image = Image.from_json(IMAGE_JSON, project="debian-cloud")
    return TestWorkflow(suite="network", image=image, project="test-project", zone="us-central1-a", suffix="a1b2c3")


def test_image_from_json():
    image = Image.from_json(IMAGE_JSON, project="debian-cloud")

    assert image.has_feature("GVNIC")
    assert not image.has_feature("IDPF")
    assert image.license_codes == ["2147286739765738111"]
    assert image.architecture == "X86_64"


def test_image_from_json_defaults():
    image = Image.from_json({"name": "cos-stable-109"}, project="cos-cloud")

    assert image.family == ""
    assert image.architecture == "X86_64"
    assert image.guest_os_features == []


@pytest.mark.parametrize(
    "spec,args",
    [
        ("debian-cloud/debian-12-bookworm-v20240110", ["debian-12-bookworm-v20240110", "--project", "debian-cloud"]),
        ("debian-cloud/family/debian-12", ["--family", "debian-12", "--project", "debian-cloud"]),
    ],
)
def test_parse_image_spec(spec, args):
    assert parse_image_spec(spec) == args


@pytest.mark.parametrize("spec", ["debian-12", "debian-cloud/", "debian-cloud/images/debian-12", "a/b/c/d"])
def test_parse_image_spec_invalid(spec):
    with pytest.raises(ValueError):
        parse_image_spec(spec)


@pytest.mark.parametrize(
    "zone,region",
    [("us-central1-a", "us-central1"), ("europe-west4-b", "europe-west4"), ("northamerica-northeast1-c", "northamerica-northeast1")],
)
def test_region_from_zone(zone, region):
    assert region_from_zone(zone) == region


@pytest.mark.parametrize("zone", ["us-central1", "", "us--a"])
def test_region_from_zone_invalid(zone):
    with pytest.raises(ValueError):
        region_from_zone(zone)


@pytest.mark.parametrize(
    "machine_type,disk_type",
    [
        ("n1-standard-1", "pd-balanced"),
        ("c3-standard-4", "pd-balanced"),
        ("c4-standard-2", "hyperdisk-balanced"),
        ("c4a-standard-1", "hyperdisk-balanced"),
        ("n4-standard-16", "hyperdisk-balanced"),
    ],
)
def test_disk_type_needed(machine_type, disk_type):
    assert disk_type_needed(machine_type) == disk_type


def test_create_network(workflow):
    network = workflow.create_network("network-1", mtu=8896)
    subnetwork = workflow.create_subnetwork(network, "subnetwork-1", "10.128.0.0/20")

    assert network.name == "network-1-a1b2c3"
    assert network.region == "us-central1"
    assert subnetwork.name == "subnetwork-1-a1b2c3"
    assert subnetwork.region == "us-central1"
    assert workflow.get_network("network-1") is network
    assert network.create_command("test-project") == [
        "gcloud",
        "compute",
        "networks",
        "create",
        "network-1-a1b2c3",
        "--project",
        "test-project",
        "--subnet-mode=custom",
        "--mtu=8896",
    ]

    ssh = network.firewall_rules[0]
    assert ssh.name == "network-1-a1b2c3-allow-ssh"
    assert "--allow=tcp:22" in ssh.create_command("test-project")


def test_get_network_unknown(workflow):
    with pytest.raises(LookupError):
        workflow.get_network("network-1")


def test_subnetwork_create_command(workflow):
    network = workflow.create_network("network1")
    subnetwork = workflow.create_subnetwork(
        network, "dual", "10.128.0.0/24", stack_type="IPV4_IPV6", ipv6_access_type="EXTERNAL", region="europe-west4"
    )
    subnetwork.add_secondary_range("secondary-range", "10.14.0.0/16")

    cmd = subnetwork.create_command("test-project")
    assert cmd[cmd.index("--region") + 1] == "europe-west4"
    assert "--secondary-range=secondary-range=10.14.0.0/16" in cmd
    assert "--stack-type=IPV4_IPV6" in cmd
    assert "--ipv6-access-type=EXTERNAL" in cmd


def test_firewall_rule_create_command():
    rule = FirewallRule(name="allow-iperf", network="net0", ports=["5001-5010"], source_ranges=["192.168.0.0/24"])
    assert rule.create_command("test-project")[-2:] == ["--allow=tcp:5001-5010", "--source-ranges=192.168.0.0/24"]

    icmp = FirewallRule(name="allow-icmp", network="net0", protocol="icmp")
    assert icmp.create_command("test-project")[-1] == "--allow=icmp"


@pytest.mark.parametrize(
    "nic,arg",
    [
        (NetworkInterface(network="net1"), "--network-interface=network=net1"),
        (
            NetworkInterface(network="net2", subnetwork="sub2", nic_type="GVNIC", private_ip="192.168.0.3", external_address=False),
            "--network-interface=network=net2,subnet=sub2,nic-type=GVNIC,private-network-ip=192.168.0.3,no-address",
        ),
        (
            NetworkInterface(network="net1", subnetwork="sub1", alias_ip_range="10.14.8.0/24", secondary_range_name="secondary-range"),
            "--network-interface=network=net1,subnet=sub1,aliases=secondary-range:10.14.8.0/24",
        ),
        (
            NetworkInterface(network="net1", stack_type="IPV6_ONLY", ipv6_access_type="EXTERNAL"),
            "--network-interface=network=net1,stack-type=IPV6_ONLY,ipv6-network-tier=PREMIUM",
        ),
        (
            NetworkInterface(network="net2", stack_type="IPV4_IPV6", ipv6_access_type="INTERNAL"),
            "--network-interface=network=net2,stack-type=IPV4_IPV6",
        ),
    ],
)
def test_network_interface_to_arg(nic, arg):
    assert nic.to_arg() == arg


def test_test_vm_create_command(workflow, tmp_path):
    vm = workflow.create_test_vm("ping2", boot_disk_type="hyperdisk-balanced", boot_disk_size_gb=80, spot=True)
    vm.add_nic("network-1-a1b2c3")
    vm.add_disk("secondary", 10, disk_type="hyperdisk-balanced")
    vm.enable_guest_attributes()

    cmd = vm.create_command("test-project", tmp_path)

    assert vm.real_name == "ping2-network-a1b2c3"
    assert cmd[4] == "ping2-network-a1b2c3"
    assert "--boot-disk-type=hyperdisk-balanced" in cmd
    assert "--boot-disk-size=80GB" in cmd
    assert "--provisioning-model=SPOT" in cmd
    assert (
        "--create-disk=name=ping2-network-a1b2c3-secondary,device-name=secondary,size=10GB,type=hyperdisk-balanced,auto-delete=yes"
        in cmd
    )
    assert "--network-interface=network=network-1-a1b2c3" in cmd
    assert cmd[-1] == (
        f"--metadata-from-file=_test_vmname={(tmp_path / 'ping2-network-a1b2c3-_test_vmname').as_posix()},"
        f"enable-guest-attributes={(tmp_path / 'ping2-network-a1b2c3-enable-guest-attributes').as_posix()}"
    )
    assert (tmp_path / "ping2-network-a1b2c3-_test_vmname").read_text(encoding="utf-8") == "ping2"


def test_test_vm_real_name_is_lowercase(workflow):
    assert workflow.create_test_vm("telemetryDisabled").real_name == "telemetrydisabled-network-a1b2c3"


def test_test_vm_accelerator_command(workflow, tmp_path):
    vm = workflow.create_test_vm(
        "rdmahost",
        machine_type="a4-highgpu-8g",
        accelerator_type="nvidia-b200",
        accelerator_count=8,
        on_host_maintenance="TERMINATE",
    )
    cmd = vm.create_command("test-project", tmp_path)

    assert "--accelerator=type=nvidia-b200,count=8" in cmd
    assert "--maintenance-policy=TERMINATE" in cmd
    assert cmd[cmd.index("--machine-type") + 1] == "a4-highgpu-8g"


def test_resize_disk_after_boot(workflow):
    vm = workflow.create_test_vm("resize")
    vm.resize_disk_after_boot(200)

    assert vm.reboot
    assert vm.resize_disk_gb == 200
    assert vm.metadata["disk-resize-gb"] == "200"


def test_dns_zone_commands():
    zone = DnsZone(name="test-local-zone-a1b2c3", dns_name="testlocalzone.com.", network="network-1-a1b2c3")
    zone.add_record("demo.testlocalzone.com.", "192.168.0.2")

    assert "--networks=network-1-a1b2c3" in zone.create_command("test-project")
    (create,) = zone.record_create_commands("test-project")
    assert create[4] == "demo.testlocalzone.com."
    assert create[-1] == "--rrdatas=192.168.0.2"
    (delete,) = zone.record_delete_commands("test-project")
    assert delete[-3:] == ["--type", "A", "--quiet"]


def test_skip(workflow):
    with pytest.raises(SuiteSkipped):
        workflow.skip("not applicable")
