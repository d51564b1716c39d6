# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Checks for NIC configuration written by the guest agent.

The agent configures NICs through whichever network manager the image uses.
The primary NIC is only configured when manage_primary_nic is enabled.
"""

import configparser
import enum
import ipaddress
import json
import logging
import os
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import yaml

from . import imagematch
from .utils import (
    ComputeClient,
    Validator,
    command_exists,
    filter_loopback_tunnel_interfaces,
    get_interface,
    get_instance_name,
    get_metadata,
    get_real_vm_name,
    is_core_disabled,
    list_interfaces,
    restart_agent,
    run,
    unchecked_run,
)

logger = logging.getLogger("cit")

# pylint: disable=line-too-long

INSTANCE_CONFIG_TEMPLATE = "/etc/default/instance_configs.cfg.template"
NETPLAN_PATH = "/run/netplan/20-google-guest-agent-ethernet.yaml"
NETWORK_MANAGER_PATH = "/etc/NetworkManager/system-connections/google-guest-agent-{}.nmconnection"
NETWORKD_PATH = "/usr/lib/systemd/network/20-{}-google-guest-agent.network"
WICKED_PATH = "/etc/sysconfig/network/ifcfg-{}"

SUPPORTS_IPV6_KEY = "supports-ipv6"
IPV6_ADDR_KEY = "ipv6_addr"
PING_VM_NAME = "ping"
PING_VM_IPV4 = "10.0.0.128"
PING_VM_PORT = 1234
PRIMARY_HOST = "www.google.com"
EXPECTED_CONNECTIONS = 6
LISTEN_TIMEOUT = 600


class NicStackType(enum.IntFlag):
    IPV4 = 0x1
    IPV6 = 0x2
    IPV4_IPV6 = 0x3


STACK_TYPES = {
    "ipv4": NicStackType.IPV4,
    "dual": NicStackType.IPV4_IPV6,
    "ipv6": NicStackType.IPV6,
}


class NicManager(enum.Enum):
    DHCLIENT = "dhclient"
    NETPLAN = "netplan"
    NETWORK_MANAGER = "NetworkManager"
    NETWORKD = "systemd-networkd"
    WICKED = "wicked"


@dataclass(eq=True, repr=True)
class EthernetInterface:
    name: str
    index: int
    stack_type: NicStackType
    ipv4_address: str = ""
    ipv6_address: str = ""


def stack_type_from_vm_name(vm_name: str, index: int) -> NicStackType:
    """VM names are made of 4-character stack types, one per NIC, e.g. ipv4dual."""
    type_name = vm_name[index * 4 : index * 4 + 4]
    try:
        return STACK_TYPES[type_name]
    except KeyError as error:
        raise ValueError(f"unknown network stack type {type_name!r} in {vm_name!r}") from error


def get_nic(index: int) -> EthernetInterface:
    vm_name = get_metadata("instance", "attributes", "_test_vmname")
    return EthernetInterface(
        name=get_interface(index).name,
        index=index,
        stack_type=stack_type_from_vm_name(vm_name, index),
    )


def is_ubuntu_1804(image: str) -> bool:
    return imagematch.match_all(
        image, imagematch.IMAGE_UBUNTU, imagematch.ImageException(version=1804)
    )


def _service_active(service: str) -> bool:
    return unchecked_run(["systemctl", "is-active", service]) == "active"


def primary_nic_manager(image: str) -> NicManager:
    """Best guess of the network manager in charge of the NICs."""
    # Ubuntu 18.04 ships netplan but the agent does not use it.
    if not is_ubuntu_1804(image):
        if command_exists("netplan"):
            return NicManager.NETPLAN
        if _service_active("systemd-networkd"):
            return NicManager.NETWORKD

    if _service_active("NetworkManager"):
        return NicManager.NETWORK_MANAGER

    if command_exists("wicked") and unchecked_run(["wicked", "--version"]):
        return NicManager.WICKED

    return NicManager.DHCLIENT


def verify_file_exists(path: str, exist: bool) -> None:
    if exist:
        assert os.path.exists(path), f"file {path} does not exist"
    else:
        assert not os.path.exists(path), f"file {path} exists, but shouldn't"


def read_ini(path: str) -> configparser.ConfigParser:
    config = configparser.ConfigParser(interpolation=None, strict=False)
    # Keys are case sensitive, e.g. DNSDefaultRoute.
    config.optionxform = str  # type: ignore
    config.read(path, encoding="utf-8")
    return config


def check_netplan_config(config: Optional[Dict], nic: EthernetInterface, exist: bool) -> None:
    """Netplan drop-in enables DHCP per stack type, use-domains only on the primary NIC."""
    ethernets = ((config or {}).get("network") or {}).get("ethernets") or {}
    for key, ethernet in ethernets.items():
        if nic.name not in key:
            continue

        assert exist, f"netplan configuration contains NIC {nic.name}, but shouldn't"

        families = []
        if nic.stack_type & NicStackType.IPV4:
            families.append("4")
        if nic.stack_type & NicStackType.IPV6:
            families.append("6")

        for family in families:
            assert ethernet.get(f"dhcp{family}") is True, f"netplan {key} has dhcp{family}={ethernet.get(f'dhcp{family}')!r}, expected true"
            overrides = ethernet.get(f"dhcp{family}-overrides")
            assert overrides is not None, f"netplan {key} has no dhcp{family}-overrides"
            use_domains = overrides.get("use-domains")
            assert use_domains == (nic.index == 0), f"netplan {key} has dhcp{family}-overrides use-domains={use_domains!r}, expected {nic.index == 0}"
        return

    assert not exist, f"netplan configuration does not contain NIC {nic.name}"


def verify_netplan(nic: EthernetInterface, exist: bool) -> None:
    try:
        content = Path(NETPLAN_PATH).read_text(encoding="utf-8")
    except FileNotFoundError:
        assert not exist, f"netplan configuration {NETPLAN_PATH} does not exist"
        return

    check_netplan_config(yaml.safe_load(content), nic, exist)


def check_network_manager_config(config: configparser.ConfigParser, nic: EthernetInterface) -> None:
    interface_name = config.get("connection", "interface-name", fallback="")
    assert interface_name == nic.name, f"NetworkManager configuration has NIC {interface_name!r}, expected {nic.name!r}"
    conn_type = config.get("connection", "type", fallback="")
    assert conn_type == "ethernet", f"NetworkManager configuration has connection type {conn_type!r}, expected ethernet"
    for section in ("ipv4", "ipv6"):
        method = config.get(section, "method", fallback="")
        assert method == "auto", f"NetworkManager configuration has {section} method {method!r}, expected auto"


def verify_network_manager(nic: EthernetInterface, exist: bool) -> None:
    path = NETWORK_MANAGER_PATH.format(nic.name)
    verify_file_exists(path, exist)
    if exist:
        check_network_manager_config(read_ini(path), nic)


def check_networkd_config(config: configparser.ConfigParser, nic: EthernetInterface) -> None:
    match_name = config.get("Match", "Name", fallback="")
    assert match_name == nic.name, f"systemd-networkd configuration has NIC {match_name!r}, expected {nic.name!r}"

    expected_dhcp = "yes" if nic.stack_type & NicStackType.IPV6 else "ipv4"
    dhcp = config.get("Network", "DHCP", fallback="")
    assert dhcp == expected_dhcp, f"systemd-networkd configuration has DHCP {dhcp!r}, expected {expected_dhcp!r}"

    dns_default_route = config.getboolean("Network", "DNSDefaultRoute", fallback=False)
    assert dns_default_route == (nic.index == 0), f"systemd-networkd configuration has DNSDefaultRoute {dns_default_route}, expected {nic.index == 0}"


def verify_networkd(nic: EthernetInterface, exist: bool) -> None:
    path = NETWORKD_PATH.format(nic.name)
    verify_file_exists(path, exist)
    if exist:
        check_networkd_config(read_ini(path), nic)


def verify_wicked(nic: EthernetInterface, _exist: bool) -> None:
    # The agent never overrides an existing wicked configuration.
    verify_file_exists(WICKED_PATH.format(nic.name), True)


def find_dhclient_processes(processes: str, nic_name: str, *, allow_duplicates: bool) -> Tuple[bool, bool]:
    """Whether IPv4 and IPv6 dhclient processes run for the NIC, from `pgrep -a` output."""
    ipv4, ipv6 = False, False
    for line in processes.splitlines():
        fields = line.split()
        if len(fields) < 2 or "dhclient" not in fields[1]:
            continue
        if nic_name not in fields:
            continue

        logger.debug("dhclient process: %s", line)
        if "-6" in fields:
            assert not ipv6 or allow_duplicates, f"found multiple IPv6 dhclient processes for NIC {nic_name}"
            ipv6 = True
        else:
            assert not ipv4 or allow_duplicates, f"found multiple IPv4 dhclient processes for NIC {nic_name}"
            ipv4 = True

    return ipv4, ipv6


def verify_dhclient(nic: EthernetInterface, exist: bool, image: str) -> None:
    # The primary NIC always has a dhclient process, except on Ubuntu 18.04.
    if nic.index == 0 and not is_ubuntu_1804(image):
        exist = True

    processes = unchecked_run(["pgrep", "dhclient", "-a"])
    if not processes and not exist:
        return

    core_disabled = is_core_disabled()
    if core_disabled:
        logger.info("core plugin disabled, skipping dhclient duplicate process check")
    ipv4, ipv6 = find_dhclient_processes(processes, nic.name, allow_duplicates=core_disabled)

    # Older Ubuntu only runs dhclient for IPv4 on the primary NIC.
    if "ubuntu" in image and nic.index == 0 and nic.stack_type != NicStackType.IPV4:
        ipv6 = True

    if nic.stack_type & NicStackType.IPV4:
        assert ipv4 == exist, f"NIC {nic.name}: found IPv4 dhclient process: {ipv4}, expected: {exist}"
    if nic.stack_type & NicStackType.IPV6:
        assert ipv6 == exist, f"NIC {nic.name}: found IPv6 dhclient process: {ipv6}, expected: {exist}"


def verify_nic(nic: EthernetInterface, exist: bool, image: str) -> None:
    """Configuration for the NIC exists (or not) for the active manager."""
    manager = primary_nic_manager(image)
    logger.info("verifying %s for NIC %s, exist=%s", manager.value, nic.name, exist)
    if manager == NicManager.NETPLAN:
        verify_netplan(nic, exist)
    elif manager == NicManager.NETWORK_MANAGER:
        verify_network_manager(nic, exist)
    elif manager == NicManager.NETWORKD:
        verify_networkd(nic, exist)
    elif manager == NicManager.WICKED:
        verify_wicked(nic, exist)
    else:
        verify_dhclient(nic, exist, image)


def get_ip_address_entries() -> List[Dict]:
    return json.loads(run(["ip", "--json", "address"]))


def global_addresses(entry: Dict) -> Tuple[str, str]:
    """First global IPv4 and IPv6 addresses of an `ip --json address` entry."""
    ipv4, ipv6 = "", ""
    for info in entry.get("addr_info", []):
        if info.get("scope") != "global":
            continue

        address = ipaddress.ip_address(info["local"])
        if info.get("family") == "inet":
            assert address.version == 4, f"invalid IPv4 address {address} on {entry.get('ifname')}"
            ipv4 = ipv4 or str(address)
        elif info.get("family") == "inet6":
            assert address.version == 6, f"invalid IPv6 address {address} on {entry.get('ifname')}"
            ipv6 = ipv6 or str(address)

    return ipv4, ipv6


def try_connect(nic_name: str, family: socket.AddressFamily, address: str, port: int) -> Optional[Exception]:
    """Connect to address through the NIC, returning the last error or None."""
    if not address:
        return ValueError("no address to connect to")

    last_error: Optional[Exception] = None
    for _ in range(5):
        with socket.socket(family, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BINDTODEVICE, nic_name.encode("utf-8"))
            sock.settimeout(1)
            try:
                sock.connect((address, port))
                return None
            except OSError as error:
                last_error = error
        time.sleep(1)

    return last_error


def create_connection(nic: EthernetInterface, ipv4_address: str, ipv6_address: str, port: int) -> None:
    """Connections succeed only over the families the NIC's stack type supports."""
    logger.info("connecting to %s:%d and [%s]:%d via %s", ipv4_address, port, ipv6_address, port, nic.name)
    for family, flag, address in (
        (socket.AF_INET, NicStackType.IPV4, ipv4_address),
        (socket.AF_INET6, NicStackType.IPV6, ipv6_address),
    ):
        error = try_connect(nic.name, family, address, port)
        if nic.stack_type & flag:
            assert error is None, f"failed to dial {address} via NIC {nic.name} ({flag.name}): {error}"
        else:
            assert error is not None, f"unexpected success dialing {address} via NIC {nic.name} ({flag.name})"


def resolve_host(host: str) -> Tuple[str, str]:
    ipv4, ipv6 = "", ""
    for family, _, _, _, sockaddr in socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP):
        if family == socket.AF_INET and not ipv4:
            ipv4 = sockaddr[0]
        elif family == socket.AF_INET6 and not ipv6:
            ipv6 = sockaddr[0]
    return ipv4, ipv6


def ping_vm_ipv6_address(supports_ipv6: bool) -> str:
    if not supports_ipv6:
        return ""

    client = ComputeClient.from_metadata()
    ping_vm = get_real_vm_name(PING_VM_NAME)
    for _ in range(30):
        address = client.get_instance_metadata(ping_vm).get(IPV6_ADDR_KEY, "")
        if address:
            return address
        logger.debug("no %s on %s yet, retrying in 10s", IPV6_ADDR_KEY, ping_vm)
        time.sleep(10)

    return ""


def verify_connection(nic: EthernetInterface, supports_ipv6: bool) -> None:
    """The NIC is up, addressed per its stack type and reaches its peer."""
    entries = get_ip_address_entries()
    entry = next((e for e in entries if e.get("ifname") == nic.name), None)
    assert entry is not None, f"NIC {nic.name} not found in `ip address` output"
    assert entry.get("operstate") == "UP", f"NIC {nic.name} is not UP, state is {entry.get('operstate')!r}"

    nic.ipv4_address, nic.ipv6_address = global_addresses(entry)
    if nic.stack_type & NicStackType.IPV4:
        assert nic.ipv4_address, f"NIC {nic.name} does not have an IPv4 address"
    if nic.stack_type & NicStackType.IPV6:
        assert nic.ipv6_address, f"NIC {nic.name} does not have an IPv6 address"

    if nic.index == 0:
        ipv4, ipv6 = resolve_host(PRIMARY_HOST)
        create_connection(nic, ipv4, ipv6, 443)
    else:
        create_connection(nic, PING_VM_IPV4, ping_vm_ipv6_address(supports_ipv6), PING_VM_PORT)


def get_supports_ipv6() -> bool:
    value = get_metadata("instance", "attributes", SUPPORTS_IPV6_KEY).strip().lower()
    if value not in ("true", "false"):
        raise ValueError(f"invalid {SUPPORTS_IPV6_KEY} value: {value!r}")
    return value == "true"


def enable_primary_nic(enable: bool) -> None:
    Path(INSTANCE_CONFIG_TEMPLATE).write_text(
        f"[NetworkInterfaces]\nmanage_primary_nic = {str(enable).lower()}\n", encoding="utf-8"
    )
    restart_agent()
    time.sleep(20)


class ConnectionCounter:
    """Accept connections on a listening socket and count those from the test network."""

    def __init__(self, family: socket.AddressFamily, expected: int, prefix: str = ""):
        self.family = family
        self.expected = expected
        self.prefix = prefix
        self.count = 0
        self.done = threading.Event()

    def serve(self, deadline: float) -> None:
        if self.expected == 0:
            self.done.set()
            return

        with socket.socket(self.family, socket.SOCK_STREAM) as listener:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if self.family == socket.AF_INET6:
                listener.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
            listener.bind(("", PING_VM_PORT))
            listener.listen()
            listener.settimeout(5)
            while self.count < self.expected and time.time() < deadline:
                try:
                    conn, peer = listener.accept()
                except socket.timeout:
                    continue
                conn.close()
                logger.info("accepted connection from %s", peer[0])
                if peer[0].startswith(self.prefix):
                    self.count += 1

        if self.count >= self.expected:
            self.done.set()


class NicSetupValidator(Validator):
    """Validate the agent's NIC configuration per network manager."""

    def validate_empty(self) -> None:
        """Ping VM: publish the IPv6 address and count peer connections."""
        supports_ipv6 = get_supports_ipv6()
        expected_ipv4, expected_ipv6 = 1, 0
        if supports_ipv6:
            expected_ipv4 = expected_ipv6 = EXPECTED_CONNECTIONS

            ipv6_address = ""
            for entry in get_ip_address_entries():
                _, ipv6_address = global_addresses(entry)
                if ipv6_address:
                    break
            logger.info("ping VM IPv6 address: %s", ipv6_address)
            ComputeClient.from_metadata().upsert_metadata(get_instance_name(), IPV6_ADDR_KEY, ipv6_address)

        deadline = time.time() + LISTEN_TIMEOUT
        counters = [
            ConnectionCounter(socket.AF_INET, expected_ipv4, prefix="10.0.0."),
            ConnectionCounter(socket.AF_INET6, expected_ipv6),
        ]
        threads = [threading.Thread(target=c.serve, args=(deadline,), daemon=True) for c in counters]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(LISTEN_TIMEOUT)

        logger.info(
            "validate_empty OK: ipv4 connections %d/%d, ipv6 connections %d/%d",
            counters[0].count,
            expected_ipv4,
            counters[1].count,
            expected_ipv6,
        )

    def validate_nic_setup(self) -> None:
        """Primary NIC is configured only while manage_primary_nic is set."""
        primary = get_nic(0)
        interfaces = filter_loopback_tunnel_interfaces(list_interfaces())
        secondary = get_nic(1) if len(interfaces) > 1 else None
        supports_ipv6 = get_supports_ipv6()
        ubuntu_1804 = is_ubuntu_1804(self.image)

        verify_nic(primary, False, self.image)

        enable_primary_nic(True)
        verify_nic(primary, not ubuntu_1804, self.image)
        verify_connection(primary, supports_ipv6)

        enable_primary_nic(False)
        verify_nic(primary, False, self.image)

        if secondary is None:
            logger.info("validate_nic_setup OK: %r", primary)
            return

        verify_nic(secondary, True, self.image)
        verify_connection(secondary, supports_ipv6)
        logger.info("validate_nic_setup OK: %r %r", primary, secondary)
