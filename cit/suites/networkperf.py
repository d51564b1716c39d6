# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network performance suite: iperf between a server and a client VM.

Each default machine type is tested with the default and the jumbo frames MTU
on every configured network tier. The client measures the bandwidth to the
server on every NIC in parallel and publishes the iperf summary as a guest
attribute, which the client's own network_performance check compares with
the expected bandwidth from targets/.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Tuple

from ..workflow import TestVM, TestWorkflow, disk_type_needed, region_from_zone

logger = logging.getLogger(__name__)

NetworkTier = Literal["DEFAULT", "TIER_1"]

DEFAULT_TIER: NetworkTier = "DEFAULT"
TIER_1: NetworkTier = "TIER_1"
NETWORK_TIERS = [DEFAULT_TIER, TIER_1]

DEFAULT_MTU = 1460
JUMBO_FRAMES_MTU = 8896
TEST_MTUS = [DEFAULT_MTU, JUMBO_FRAMES_MTU]

NIC_TYPE_GVNIC = "GVNIC"
NIC_TYPE_REGEX = re.compile(r"^(.+):([0-9]+)$")
IPERF_PORTS = "5001-5010"

SUITE_DIR = Path(__file__).parent
STARTUP_SCRIPTS_DIR = SUITE_DIR / "startupscripts"
# The bundled targets are placeholders, not measured thresholds.
# CIT_NETWORKPERF_TARGETS_DIR points at a directory holding real ones.
TARGETS_DIR = SUITE_DIR / "targets"
TARGET_FILES: Dict[str, str] = {
    DEFAULT_TIER: "default.json",
    TIER_1: "tier1.json",
}


@dataclass(eq=True, repr=True)
class NetworkPerfConfig:
    """Machine type to test, expanded into one test per MTU and tier."""

    machine_type: str
    arch: str
    networks: List[NetworkTier]
    zone: str = ""
    nic_types: str = ""


@dataclass(eq=True, repr=True)
class NetworkPerfTest:
    name: str
    machine_type: str
    arch: str
    network: NetworkTier
    mtu: int
    zone: str = ""
    nic_types: List[str] = field(default_factory=list)


DEFAULT_CONFIGS = [
    NetworkPerfConfig("n1-standard-2", "X86_64", [DEFAULT_TIER]),
    NetworkPerfConfig("n2-standard-2", "X86_64", [DEFAULT_TIER]),
    NetworkPerfConfig("n2d-standard-2", "X86_64", [DEFAULT_TIER]),
    NetworkPerfConfig("e2-standard-2", "X86_64", [DEFAULT_TIER]),
    NetworkPerfConfig("t2d-standard-1", "X86_64", [DEFAULT_TIER]),
    NetworkPerfConfig("t2a-standard-1", "ARM64", [DEFAULT_TIER], zone="us-central1-a"),
    NetworkPerfConfig("n2-standard-32", "X86_64", [DEFAULT_TIER, TIER_1]),
    NetworkPerfConfig("n2d-standard-48", "X86_64", [DEFAULT_TIER, TIER_1]),
    NetworkPerfConfig("n4-standard-16", "X86_64", [DEFAULT_TIER], zone="us-central1-b"),
    NetworkPerfConfig("n4-standard-80", "X86_64", [DEFAULT_TIER], zone="us-central1-b"),
    NetworkPerfConfig("c4-standard-2", "X86_64", [DEFAULT_TIER], zone="us-central1-a"),
    NetworkPerfConfig("c4-standard-192", "X86_64", [DEFAULT_TIER, TIER_1], zone="us-central1-a"),
]


def expand_nic_types(condensed: str) -> List[str]:
    """Expand "GVNIC:2,MRDMA:1" into ["GVNIC", "GVNIC", "MRDMA"].

    Defaults to a single GVNIC when no NIC types are given.
    """
    nic_types = []
    for entry in condensed.split(","):
        entry = entry.strip()
        if not entry:
            continue

        match = NIC_TYPE_REGEX.match(entry)
        if match is None:
            raise ValueError(f"invalid nic type count: {entry!r}")
        nic_types += [match.group(1)] * int(match.group(2))

    if not nic_types:
        nic_types.append(NIC_TYPE_GVNIC)
    return nic_types


def parse_network_tiers(tiers: str) -> List[NetworkTier]:
    if not tiers.strip():
        return [DEFAULT_TIER]

    parsed: List[NetworkTier] = []
    for part in tiers.split(","):
        part = part.strip()
        if part == DEFAULT_TIER:
            parsed.append(DEFAULT_TIER)
        elif part == TIER_1:
            parsed.append(TIER_1)
        else:
            raise ValueError(f"invalid network tier: {part!r}")
    return parsed


def expand_network_test_configs(configs: List[NetworkPerfConfig]) -> List[NetworkPerfTest]:
    tests = []
    for config in configs:
        for mtu in TEST_MTUS:
            for network in config.networks:
                tests.append(
                    NetworkPerfTest(
                        name=f"{config.machine_type}_{mtu}_{network}",
                        machine_type=config.machine_type,
                        arch=config.arch,
                        network=network,
                        mtu=mtu,
                        zone=config.zone,
                        nic_types=expand_nic_types(config.nic_types),
                    )
                )
    return tests


def filter_network_test_configs(tests: List[NetworkPerfTest], regex: str, arch: str) -> List[NetworkPerfTest]:
    pattern = re.compile(regex)
    return [test for test in tests if pattern.search(test.name) and test.arch == arch]


def guest_cpus(machine_type: str) -> int:
    """n2-standard-32 -> 32."""
    match = re.search(r"-([0-9]+)$", machine_type)
    if match is None:
        raise ValueError(f"cannot determine vCPU count of machine type {machine_type!r}")
    return int(match.group(1))


def get_expected_perf(targets: Dict[str, int], machine_type: str, cpus: int) -> int:
    """Expected bandwidth in Gbit/s of the machine type.

    The targets only hold the vCPU breakpoints at which the bandwidth of a
    series changes, so the vCPU count is lowered until a breakpoint is hit.
    """
    if machine_type in targets:
        return targets[machine_type]

    while cpus > 1:
        cpus -= 1
        candidate = re.sub(r"-[0-9]+$", f"-{cpus}", machine_type)
        if candidate in targets:
            return targets[candidate]

    raise LookupError(f"no perf target found for {machine_type}")


def load_targets(tier: str) -> Dict[str, int]:
    if tier not in TARGET_FILES:
        raise ValueError(f"unknown network tier: {tier!r}")
    targets_dir = Path(os.getenv("CIT_NETWORKPERF_TARGETS_DIR", "") or TARGETS_DIR)
    return json.loads((targets_dir / TARGET_FILES[tier]).read_text(encoding="utf-8"))


def perf_target(machine_type: str, cpus: int, tier: str) -> int:
    return get_expected_perf(load_targets(tier), machine_type, cpus)


def startup_scripts() -> Tuple[str, str]:
    """Return the (server, client) startup scripts."""
    common = (STARTUP_SCRIPTS_DIR / "linux_common.sh").read_text(encoding="utf-8")
    server = (STARTUP_SCRIPTS_DIR / "linux_serverstartup.sh").read_text(encoding="utf-8")
    client = (STARTUP_SCRIPTS_DIR / "linux_clientstartup.sh").read_text(encoding="utf-8")
    return common + server, common + client


def sanitize_resource_name(name: str) -> str:
    """Instance names allow neither underscores nor, here, dashes."""
    return name.lower().replace("_", "").replace("-", "")


def network_prefix(index: int) -> str:
    return f"192.168.{index}.0/24"


def client_address(index: int) -> str:
    return f"192.168.{index}.2"


def server_address(index: int) -> str:
    return f"192.168.{index}.3"


def select_tests(workflow: TestWorkflow) -> List[NetworkPerfTest]:
    if os.getenv("CIT_NETWORKPERF_MACHINE_PARAMS_FROM_CLI"):
        config = NetworkPerfConfig(
            machine_type=workflow.machine_type,
            arch="X86_64",
            networks=parse_network_tiers(os.getenv("CIT_NETWORKPERF_NETWORK_TIERS", "")),
            zone=workflow.zone,
            nic_types=os.getenv("CIT_NETWORKPERF_NIC_TYPES", ""),
        )
        return expand_network_test_configs([config])

    return filter_network_test_configs(
        expand_network_test_configs(DEFAULT_CONFIGS),
        os.getenv("CIT_NETWORKPERF_TEST_FILTER", ".*"),
        workflow.image.architecture,
    )


def create_machine(
    workflow: TestWorkflow,
    test: NetworkPerfTest,
    role: str,
    zone: str,
    networks: List[Tuple[str, str]],
    startup_script: str,
    spot: bool,
) -> TestVM:
    if role == "client":
        address = client_address
    elif role == "server":
        address = server_address
    else:
        raise ValueError(f"unknown machine role: {role!r}")

    vm = workflow.create_test_vm(
        f"{role}{sanitize_resource_name(test.name)}",
        machine_type=test.machine_type,
        zone=zone,
        boot_disk_type=disk_type_needed(test.machine_type),
        spot=spot,
    )
    for index, (network, subnetwork) in enumerate(networks):
        vm.add_nic(network, subnetwork=subnetwork, nic_type="GVNIC", private_ip=address(index))
    vm.set_startup_script(startup_script)
    vm.add_metadata("num-parallel-tests", str(len(networks)))
    return vm


def setup(workflow: TestWorkflow) -> None:
    if not workflow.image.has_feature("GVNIC"):
        workflow.skip(f"{workflow.image.name} does not support GVNIC")

    spot = bool(os.getenv("CIT_NETWORKPERF_USE_SPOT_INSTANCES"))
    server_startup, client_startup = startup_scripts()

    for test in select_tests(workflow):
        zone = test.zone or workflow.zone
        region = region_from_zone(zone)
        prefix = sanitize_resource_name(test.name)

        networks = []
        for index, nic_type in enumerate(test.nic_types):
            if nic_type != NIC_TYPE_GVNIC:
                raise ValueError(f"unsupported nic type: {nic_type!r}")

            name = f"{prefix}{index}"
            network = workflow.create_network(name, mtu=JUMBO_FRAMES_MTU if test.mtu == JUMBO_FRAMES_MTU else 0)
            subnetwork = workflow.create_subnetwork(network, name, network_prefix(index), region=region)
            workflow.add_firewall_rule(network, f"allow-iperf-{name}", [network_prefix(index)], ports=[IPERF_PORTS])
            networks.append((network.name, subnetwork.name))

        target = perf_target(test.machine_type, guest_cpus(test.machine_type), test.network)
        logger.debug("networkperf test %s expects %s gbps", test.name, target)

        server = create_machine(workflow, test, "server", zone, networks, server_startup, spot)
        server.run_checks("gvnic_exists")

        client = create_machine(workflow, test, "client", zone, networks, client_startup, spot)
        client.enable_guest_attributes()
        for index in range(len(networks)):
            client.add_metadata(f"iperftarget-{index}", server_address(index))
        client.add_metadata("expectedperf", str(target))
        client.add_metadata("network-tier", test.network)
        client.run_checks("gvnic_exists|network_performance")
