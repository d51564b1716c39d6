# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Declarations of the cloud resources a suite needs.

Suite setup functions declare networks, VMs and DNS zones on a TestWorkflow.
Each resource renders the gcloud commands that create and delete it, which
test_images.py runs in order.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Optional

logger = logging.getLogger(__name__)

# pylint: disable=line-too-long
# pylint: disable=too-many-instance-attributes

DEFAULT_SCOPES = ["https://www.googleapis.com/auth/cloud-platform"]
COMPUTE_SCOPE = "https://www.googleapis.com/auth/compute"
COMPUTE_READONLY_SCOPE = "https://www.googleapis.com/auth/compute.readonly"
SSH_SOURCE_RANGES = ["0.0.0.0/0", "35.235.240.0/20"]
VM_NAME_METADATA_KEY = "_test_vmname"

Architecture = Literal["X86_64", "ARM64"]
NicType = Literal["", "VIRTIO_NET", "GVNIC", "MRDMA", "IDPF"]
StackType = Literal["", "IPV4_ONLY", "IPV4_IPV6", "IPV6_ONLY"]
Ipv6AccessType = Literal["", "INTERNAL", "EXTERNAL"]


class SuiteSkipped(Exception):
    """Raised by a suite setup when the image is not applicable."""


@dataclass(eq=True, repr=True)
class Image:
    """Image under test, as described by `gcloud compute images describe`."""

    name: str
    project: str
    family: str = ""
    architecture: Architecture = "X86_64"
    guest_os_features: List[str] = field(default_factory=list)
    licenses: List[str] = field(default_factory=list)
    license_codes: List[str] = field(default_factory=list)

    def has_feature(self, feature: str) -> bool:
        return feature in self.guest_os_features

    @classmethod
    def from_json(cls, data: Dict, project: str) -> "Image":
        return cls(
            name=data["name"],
            project=project,
            family=data.get("family", ""),
            architecture=data.get("architecture") or "X86_64",
            guest_os_features=[f["type"] for f in data.get("guestOsFeatures", [])],
            licenses=list(data.get("licenses", [])),
            license_codes=[str(code) for code in data.get("licenseCodes", [])],
        )


@dataclass(eq=True, repr=True)
class FirewallRule:
    name: str
    network: str
    protocol: str = "tcp"
    ports: List[str] = field(default_factory=list)
    source_ranges: List[str] = field(default_factory=list)

    def create_command(self, project: str) -> List[str]:
        allow = self.protocol
        if self.ports:
            allow = ",".join(f"{self.protocol}:{port}" for port in self.ports)

        cmd = [
            "gcloud",
            "compute",
            "firewall-rules",
            "create",
            self.name,
            "--project",
            project,
            "--network",
            self.network,
            f"--allow={allow}",
        ]
        if self.source_ranges:
            cmd.append(f"--source-ranges={','.join(self.source_ranges)}")
        return cmd

    def delete_command(self, project: str) -> List[str]:
        return ["gcloud", "compute", "firewall-rules", "delete", self.name, "--project", project, "--quiet"]


@dataclass(eq=True, repr=True)
class Subnetwork:
    name: str
    network: str
    cidr: str
    region: str
    secondary_ranges: Dict[str, str] = field(default_factory=dict)
    stack_type: StackType = ""
    ipv6_access_type: Ipv6AccessType = ""

    def add_secondary_range(self, name: str, cidr: str) -> None:
        self.secondary_ranges[name] = cidr

    def create_command(self, project: str) -> List[str]:
        cmd = [
            "gcloud",
            "compute",
            "networks",
            "subnets",
            "create",
            self.name,
            "--project",
            project,
            "--network",
            self.network,
            "--region",
            self.region,
            "--range",
            self.cidr,
        ]
        if self.secondary_ranges:
            ranges = ",".join(f"{name}={cidr}" for name, cidr in self.secondary_ranges.items())
            cmd.append(f"--secondary-range={ranges}")
        if self.stack_type:
            cmd.append(f"--stack-type={self.stack_type}")
        if self.ipv6_access_type:
            cmd.append(f"--ipv6-access-type={self.ipv6_access_type}")
        return cmd

    def delete_command(self, project: str) -> List[str]:
        return [
            "gcloud",
            "compute",
            "networks",
            "subnets",
            "delete",
            self.name,
            "--project",
            project,
            "--region",
            self.region,
            "--quiet",
        ]


@dataclass(eq=True, repr=True)
class Network:
    name: str
    region: str
    auto_create_subnetworks: bool = False
    mtu: int = 0
    network_profile: str = ""
    enable_ula_internal_ipv6: bool = False
    subnetworks: List[Subnetwork] = field(default_factory=list)
    firewall_rules: List[FirewallRule] = field(default_factory=list)

    def create_subnetwork(self, name: str, cidr: str, **kwargs) -> Subnetwork:
        kwargs.setdefault("region", self.region)
        subnetwork = Subnetwork(name=name, network=self.name, cidr=cidr, **kwargs)
        self.subnetworks.append(subnetwork)
        return subnetwork

    def add_firewall_rule(
        self,
        name: str,
        source_ranges: List[str],
        protocol: str = "tcp",
        ports: Optional[List[str]] = None,
    ) -> FirewallRule:
        rule = FirewallRule(
            name=name,
            network=self.name,
            protocol=protocol,
            ports=ports or [],
            source_ranges=source_ranges,
        )
        self.firewall_rules.append(rule)
        return rule

    def create_command(self, project: str) -> List[str]:
        cmd = [
            "gcloud",
            "compute",
            "networks",
            "create",
            self.name,
            "--project",
            project,
            f"--subnet-mode={'auto' if self.auto_create_subnetworks else 'custom'}",
        ]
        if self.mtu:
            cmd.append(f"--mtu={self.mtu}")
        if self.network_profile:
            cmd.append(f"--network-profile={self.network_profile}")
        if self.enable_ula_internal_ipv6:
            cmd.append("--enable-ula-internal-ipv6")
        return cmd

    def delete_command(self, project: str) -> List[str]:
        return ["gcloud", "compute", "networks", "delete", self.name, "--project", project, "--quiet"]


@dataclass(eq=True, repr=True)
class NetworkInterface:
    network: str
    subnetwork: str = ""
    nic_type: NicType = ""
    private_ip: str = ""
    alias_ip_range: str = ""
    secondary_range_name: str = ""
    stack_type: StackType = ""
    ipv6_access_type: Ipv6AccessType = ""
    external_address: bool = True

    def to_arg(self) -> str:
        parts = [f"network={self.network}"]
        if self.subnetwork:
            parts.append(f"subnet={self.subnetwork}")
        if self.nic_type:
            parts.append(f"nic-type={self.nic_type}")
        if self.private_ip:
            parts.append(f"private-network-ip={self.private_ip}")
        if self.alias_ip_range:
            alias = self.alias_ip_range
            if self.secondary_range_name:
                alias = f"{self.secondary_range_name}:{alias}"
            parts.append(f"aliases={alias}")
        if self.stack_type:
            parts.append(f"stack-type={self.stack_type}")
        if self.ipv6_access_type == "EXTERNAL":
            parts.append("ipv6-network-tier=PREMIUM")
        if not self.external_address:
            parts.append("no-address")
        return "--network-interface=" + ",".join(parts)


@dataclass(eq=True, repr=True)
class Disk:
    name: str
    size_gb: int
    disk_type: str = "pd-balanced"


@dataclass(eq=True, repr=True)
class TestVM:
    """VM running a set of guest checks."""

    __test__ = False

    name: str
    suite: str
    suffix: str
    image: Image
    machine_type: str
    zone: str
    boot_disk_type: str = ""
    boot_disk_size_gb: int = 0
    disks: List[Disk] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    nics: List[NetworkInterface] = field(default_factory=list)
    accelerator_type: str = ""
    accelerator_count: int = 0
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    on_host_maintenance: str = ""
    spot: bool = False
    checks: str = ""
    reboot: bool = False
    resize_disk_gb: int = 0

    @property
    def real_name(self) -> str:
        return f"{self.name.lower()}-{self.suite}-{self.suffix}"

    def add_metadata(self, key: str, value: str) -> None:
        self.metadata[key] = value

    def add_nic(self, network: str, **kwargs) -> NetworkInterface:
        nic = NetworkInterface(network=network, **kwargs)
        self.nics.append(nic)
        return nic

    def add_disk(self, name: str, size_gb: int, disk_type: str = "pd-balanced") -> Disk:
        disk = Disk(name=name, size_gb=size_gb, disk_type=disk_type)
        self.disks.append(disk)
        return disk

    def run_checks(self, regex: str) -> None:
        self.checks = regex

    def enable_guest_attributes(self) -> None:
        self.add_metadata("enable-guest-attributes", "TRUE")

    def set_startup_script(self, script: str) -> None:
        self.add_metadata("startup-script", script)

    def resize_disk_after_boot(self, size_gb: int) -> None:
        """Reboot during the test, growing the boot disk between the boots."""
        self.reboot = True
        self.resize_disk_gb = size_gb
        self.add_metadata("disk-resize-gb", str(size_gb))

    def write_metadata_files(self, metadata_dir: Path) -> Dict[str, Path]:
        """Write each metadata value to its own file for --metadata-from-file."""
        metadata_dir.mkdir(parents=True, exist_ok=True)
        paths = {}
        for key, value in sorted(self.metadata.items()):
            path = metadata_dir / f"{self.real_name}-{key}"
            path.write_text(value, encoding="utf-8")
            paths[key] = path
        return paths

    def create_command(self, project: str, metadata_dir: Path) -> List[str]:
        cmd = [
            "gcloud",
            "compute",
            "instances",
            "create",
            self.real_name,
            "--project",
            project,
            "--zone",
            self.zone,
            "--machine-type",
            self.machine_type,
            "--image",
            self.image.name,
            "--image-project",
            self.image.project,
        ]
        if self.boot_disk_type:
            cmd.append(f"--boot-disk-type={self.boot_disk_type}")
        if self.boot_disk_size_gb:
            cmd.append(f"--boot-disk-size={self.boot_disk_size_gb}GB")
        for disk in self.disks:
            cmd.append(
                f"--create-disk=name={self.real_name}-{disk.name},device-name={disk.name},size={disk.size_gb}GB,type={disk.disk_type},auto-delete=yes"
            )
        cmd += [nic.to_arg() for nic in self.nics]
        if self.accelerator_type:
            cmd.append(f"--accelerator=type={self.accelerator_type},count={self.accelerator_count}")
        if self.on_host_maintenance:
            cmd.append(f"--maintenance-policy={self.on_host_maintenance}")
        if self.spot:
            cmd.append("--provisioning-model=SPOT")
        if self.scopes:
            cmd.append(f"--scopes={','.join(self.scopes)}")

        paths = self.write_metadata_files(metadata_dir)
        if paths:
            cmd.append(
                "--metadata-from-file=" + ",".join(f"{key}={path.as_posix()}" for key, path in paths.items())
            )
        return cmd

    def delete_command(self, project: str) -> List[str]:
        return [
            "gcloud",
            "compute",
            "instances",
            "delete",
            self.real_name,
            "--project",
            project,
            "--zone",
            self.zone,
            "--quiet",
        ]


@dataclass(eq=True, repr=True)
class DnsRecord:
    name: str
    record_type: str
    rrdatas: List[str]
    ttl: int = 300


@dataclass(eq=True, repr=True)
class DnsZone:
    """Private DNS zone visible to one network."""

    name: str
    dns_name: str
    network: str
    records: List[DnsRecord] = field(default_factory=list)

    def add_record(self, name: str, ip: str, record_type: str = "A") -> DnsRecord:
        record = DnsRecord(name=name, record_type=record_type, rrdatas=[ip])
        self.records.append(record)
        return record

    def create_command(self, project: str) -> List[str]:
        return [
            "gcloud",
            "dns",
            "managed-zones",
            "create",
            self.name,
            "--project",
            project,
            "--dns-name",
            self.dns_name,
            "--description",
            "cloud image tests private zone",
            "--visibility=private",
            f"--networks={self.network}",
        ]

    def record_create_commands(self, project: str) -> List[List[str]]:
        return [
            [
                "gcloud",
                "dns",
                "record-sets",
                "create",
                record.name,
                "--project",
                project,
                "--zone",
                self.name,
                "--type",
                record.record_type,
                "--ttl",
                str(record.ttl),
                f"--rrdatas={','.join(record.rrdatas)}",
            ]
            for record in self.records
        ]

    def record_delete_commands(self, project: str) -> List[List[str]]:
        return [
            [
                "gcloud",
                "dns",
                "record-sets",
                "delete",
                record.name,
                "--project",
                project,
                "--zone",
                self.name,
                "--type",
                record.record_type,
                "--quiet",
            ]
            for record in self.records
        ]

    def delete_command(self, project: str) -> List[str]:
        return ["gcloud", "dns", "managed-zones", "delete", self.name, "--project", project, "--quiet"]


HYPERDISK_ONLY_SERIES = ["a4", "c4", "c4a", "c4d", "n4", "x4"]


def disk_type_needed(machine_type: str) -> str:
    """Boot disk type supported by the machine series."""
    if machine_type.split("-")[0] in HYPERDISK_ONLY_SERIES:
        return "hyperdisk-balanced"
    return "pd-balanced"


def region_from_zone(zone: str) -> str:
    """us-central1-a -> us-central1."""
    parts = zone.split("-")
    if len(parts) < 3 or not all(parts):
        raise ValueError(f"invalid zone: {zone!r}")
    return "-".join(parts[:-1])


def parse_image_spec(spec: str) -> List[str]:
    """Split <project>/<image> or <project>/family/<family> into gcloud arguments."""
    parts = spec.split("/")
    if len(parts) == 2 and all(parts):
        return [parts[1], "--project", parts[0]]
    if len(parts) == 3 and parts[1] == "family" and parts[0] and parts[2]:
        return ["--family", parts[2], "--project", parts[0]]

    raise ValueError(f"invalid image {spec!r}, expected <project>/<image> or <project>/family/<family>")


@dataclass(eq=True, repr=True)
class TestWorkflow:
    """Resources declared by one suite for one image."""

    __test__ = False

    suite: str
    image: Image
    project: str
    zone: str
    suffix: str
    machine_type: str = "n1-standard-1"
    accelerator_type: str = ""
    networks: List[Network] = field(default_factory=list)
    vms: List[TestVM] = field(default_factory=list)
    dns_zones: List[DnsZone] = field(default_factory=list)

    @property
    def region(self) -> str:
        return region_from_zone(self.zone)

    def resource_name(self, name: str) -> str:
        return f"{name.lower()}-{self.suffix}"

    def get_network(self, name: str) -> Network:
        real_name = self.resource_name(name)
        for network in self.networks:
            if network.name == real_name:
                return network
        raise LookupError(f"network {name} not declared")

    def create_network(self, name: str, **kwargs) -> Network:
        """Declare a network reachable over ssh for the orchestration."""
        network = Network(name=self.resource_name(name), region=self.region, **kwargs)
        network.add_firewall_rule(f"{network.name}-allow-ssh", SSH_SOURCE_RANGES, ports=["22"])
        self.networks.append(network)
        return network

    def create_subnetwork(self, network: Network, name: str, cidr: str, **kwargs) -> Subnetwork:
        return network.create_subnetwork(self.resource_name(name), cidr, **kwargs)

    def add_firewall_rule(
        self,
        network: Network,
        name: str,
        source_ranges: List[str],
        protocol: str = "tcp",
        ports: Optional[List[str]] = None,
    ) -> FirewallRule:
        return network.add_firewall_rule(self.resource_name(name), source_ranges, protocol, ports)

    def create_test_vm(self, name: str, **kwargs) -> TestVM:
        kwargs.setdefault("machine_type", self.machine_type)
        kwargs.setdefault("zone", self.zone)
        vm = TestVM(name=name, suite=self.suite, suffix=self.suffix, image=self.image, **kwargs)
        vm.add_metadata(VM_NAME_METADATA_KEY, name)
        self.vms.append(vm)
        logger.debug("declared VM %s for suite %s", vm.real_name, self.suite)
        return vm

    def create_dns_zone(self, name: str, dns_name: str, network: Network) -> DnsZone:
        zone = DnsZone(name=self.resource_name(name), dns_name=dns_name, network=network.name)
        self.dns_zones.append(zone)
        return zone

    def skip(self, reason: str) -> None:
        raise SuiteSkipped(reason)
