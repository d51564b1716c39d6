# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network checks: connectivity between VMs, DHCP, MTU, NTP, DNS and alias IPs."""

import http.client
import http.server
import ipaddress
import logging
import os
import socket
import subprocess
import time
from pathlib import Path
from typing import List, Tuple

from .utils import (
    SYS_CLASS_NET,
    SkipCheck,
    Validator,
    command_exists,
    get_google_routes,
    get_interface,
    get_interface_by_mac,
    get_interface_driver,
    get_ipv4_addresses,
    get_metadata,
    get_real_vm_name,
    is_cos,
    is_ubuntu,
    is_windows,
    restart_agent,
    run,
    unchecked_run,
)

logger = logging.getLogger("cit")

# pylint: disable=line-too-long

GCE_MTU = 1460
PING_PORT = 8080
PING_MARKER = "/var/ping-done"
PING_TIMEOUT_SECONDS = 600
BOOT_MARKER = "/var/boot-marker"
INSTANCE_CONFIGS = "/etc/default/instance_configs.cfg"
RESOLV_CONF = "/etc/resolv.conf"
ROUTE_SETTLE_SECONDS = 30

PING_TARGET_NAME = "ping2"
PING_TARGET_IP = "192.168.0.3"
DNS_RECORD_NAME = "demo.testlocalzone.com"
DNS_RECORD_IP = "192.168.0.2"
NTP_SERVER_NAMES = ["metadata.google.internal", "metadata", "169.254.169.254"]
GVNIC_DRIVERS = ["gvnic", "gve"]


def valid_ip_or_cidr(token: str) -> bool:
    try:
        ipaddress.ip_interface(token)
    except ValueError:
        return False
    return True


def has_dhcp_address(output: str, *markers: str) -> bool:
    """Any line containing all markers also carries an IP or CIDR token."""
    for line in output.splitlines():
        upper = line.upper()
        if all(marker in upper for marker in markers) and any(
            valid_ip_or_cidr(token) for token in upper.split()
        ):
            return True

    return False


def ntp_service_name(image: str) -> str:
    if "debian-12" in image or "debian-13" in image:
        return "systemd-timesyncd"
    if any(name in image for name in ("debian-9", "ubuntu-pro-1604", "ubuntu-1604")):
        return "ntp"
    if "sles-12" in image:
        return "ntpd"
    return "chronyd"


def read_search_path(contents: str) -> str:
    for line in contents.splitlines():
        if line.startswith("search"):
            return line
    return ""


def swap_ip_forwarding(config: str, current: str) -> str:
    """Flip an ip_forwarding setting in the instance configs."""
    toggle = {
        "ip_forwarding = true": "ip_forwarding = false",
        "ip_forwarding = false": "ip_forwarding = true",
    }
    return config.replace(current, toggle[current])


def ping_target(source: str, target: str, deadline: float) -> None:
    """Send "echo" to the target's listener from source until it answers."""
    while True:
        conn = http.client.HTTPConnection(
            target, PING_PORT, timeout=5, source_address=(source, 0)
        )
        try:
            conn.request("GET", "/", body="echo")
            body = conn.getresponse().read().decode("utf-8")
            assert body == "echo", f"unexpected response from {target}: {body!r}, want echo"
            return
        except OSError as error:
            if time.time() > deadline:
                raise
            logger.debug("ping %s via %s failed: %r", target, source, error)
            time.sleep(1)
        finally:
            conn.close()


class _EchoHandler(http.server.BaseHTTPRequestHandler):
    """Echo request bodies back and count requests."""

    def do_GET(self):  # pylint: disable=invalid-name
        length = int(self.headers.get("Content-Length", 0))
        body = self.rfile.read(length)
        self.send_response(200)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)
        self.server.pings += 1  # type: ignore

    def log_message(self, format, *args):  # pylint: disable=redefined-builtin
        logger.debug("ping listener: " + format, *args)


def ping_listener(port: int) -> http.server.HTTPServer:
    return http.server.HTTPServer(("", port), _EchoHandler)


def wait_for_pings(server: http.server.HTTPServer, want_pings: int, deadline: float) -> None:
    """Answer pings on server until want_pings arrived, failing at the monotonic deadline."""
    server.pings = 0  # type: ignore
    while server.pings < want_pings:  # type: ignore
        remaining = deadline - time.monotonic()
        assert remaining > 0, f"got {server.pings} of {want_pings} pings before the deadline"  # type: ignore
        server.timeout = min(remaining, 60)
        server.handle_request()


class NetworkValidator(Validator):
    """Validate network configuration and connectivity."""

    def _google_routes(self, interface_name: str) -> List[str]:
        # Give the guest agent time to (re)install routes.
        time.sleep(ROUTE_SETTLE_SECONDS)
        routes = get_google_routes(interface_name)
        assert routes, f"no Google routes found on {interface_name}"
        return routes

    def _primary_interface_for_aliases(self) -> str:
        if is_cos(self.image):
            raise SkipCheck("COS does not support IP aliases")
        return get_interface(0).name

    def _verify_alias_exists(self, routes: List[str]) -> None:
        expected = get_metadata("instance", "network-interfaces", "0", "ip-aliases", "0")
        assert any(
            route in expected for route in routes
        ), f"alias ip {expected} does not exist, routes: {routes}"

    def _verify_ip_aliases(self) -> None:
        routes = self._google_routes(self._primary_interface_for_aliases())
        self._verify_alias_exists(routes)

    def validate_alias_after_reboot(self) -> None:
        if is_cos(self.image):
            raise SkipCheck("COS does not support IP aliases")

        if not os.path.exists(BOOT_MARKER):
            Path(BOOT_MARKER).touch()

        self._verify_ip_aliases()
        logger.info("validate_alias_after_reboot OK")

    def validate_alias_agent_restart(self) -> None:
        interface_name = self._primary_interface_for_aliases()
        before = self._google_routes(interface_name)
        restart_agent()
        after = self._google_routes(interface_name)
        assert before == after, f"routes are inconsistent after restart, before {before} after {after}"
        self._verify_alias_exists(after)
        logger.info("validate_alias_agent_restart OK: %r", after)

    def validate_alias_agent_restart_ip_forwarding_false(self) -> None:
        """Disabling ip_forwarding removes the alias routes on agent restart."""
        if "guest-agent-stable" in self.image or "guest-agent" not in self.image:
            raise SkipCheck(f"not expected to pass on previous guest agent versions: {self.image}")

        interface_name = self._primary_interface_for_aliases()
        before = self._google_routes(interface_name)

        config_path = Path(INSTANCE_CONFIGS)
        config_path.write_text(
            swap_ip_forwarding(config_path.read_text(encoding="utf-8"), "ip_forwarding = true"),
            encoding="utf-8",
        )
        try:
            restart_agent()
            time.sleep(ROUTE_SETTLE_SECONDS)
            after = get_google_routes(interface_name)
            assert not after, f"routes exist after restart, but should not: {after}"
            assert before != after, "routes are consistent after restart, but should not be"
        finally:
            config_path.write_text(
                swap_ip_forwarding(config_path.read_text(encoding="utf-8"), "ip_forwarding = false"),
                encoding="utf-8",
            )
            restart_agent()

        logger.info("validate_alias_agent_restart_ip_forwarding_false OK")

    def validate_aliases(self) -> None:
        self._verify_ip_aliases()
        logger.info("validate_aliases OK")

    def validate_default_mtu(self) -> None:
        interface = get_interface(0)
        mtu = int(Path(SYS_CLASS_NET, interface.name, "mtu").read_text(encoding="utf-8").strip())
        assert mtu == GCE_MTU, f"expected MTU {GCE_MTU} on interface {interface.name}, got MTU {mtu}"
        logger.info("validate_default_mtu OK: %s=%d", interface.name, mtu)

    def validate_dhcp(self) -> None:
        """The primary address was obtained over DHCP."""
        if any(name in self.image for name in ("debian-10", "debian-11", "debian-12")):
            raise SkipCheck(f"DHCP check not supported on {self.image}")

        candidates: List[Tuple[str, List[str], Tuple[str, ...]]] = [
            ("networkctl", ["networkctl", "status"], ("DHCPV4",)),
            ("nmcli", ["nmcli", "device", "show"], ("IP4.ADDRESS",)),
            ("wicked", ["wicked", "show", "all"], ("IPV4", "DHCP")),
        ]
        for tool, cmd, markers in candidates:
            if command_exists(tool) and has_dhcp_address(unchecked_run(cmd), *markers):
                logger.info("validate_dhcp OK: found DHCP address with %s", tool)
                return

        secondary = get_interface(1)
        processes = run(["ps", "x"])
        assert any(
            "dhclient" in line and secondary.name in line for line in processes.splitlines()
        ), f"failed finding dhclient process for {secondary.name}"
        logger.info("validate_dhcp OK: dhclient running for %s", secondary.name)

    def validate_ggactl_command(self) -> None:
        """ggactl_plugin restores deleted alias routes."""
        if not command_exists("ggactl_plugin"):
            raise SkipCheck("ggactl_plugin executable not found")

        interface_name = self._primary_interface_for_aliases()
        before = self._google_routes(interface_name)
        for route in before:
            run(f"ip route delete to local {route} scope host dev {interface_name} proto 66".split())

        run(["ggactl_plugin", "routes", "setup"])
        after = self._google_routes(interface_name)
        assert before == after, f"routes are inconsistent after ggactl trigger, before {before} after {after}"
        logger.info("validate_ggactl_command OK: %r", after)

    def validate_gvnic(self) -> None:
        interface = get_interface(0)
        driver = get_interface_driver(interface.name)
        assert driver in GVNIC_DRIVERS, f"interface {interface.name} uses driver {driver}, want one of {GVNIC_DRIVERS}"
        logger.info("validate_gvnic OK: %s uses %s", interface.name, driver)

    def validate_local_cloud_dns(self) -> None:
        """Names in a private zone resolve and resolv.conf has no "local" search."""
        time.sleep(5)
        addresses = {info[4][0] for info in socket.getaddrinfo(DNS_RECORD_NAME, None)}
        assert DNS_RECORD_IP in addresses, f"{DNS_RECORD_NAME} resolved to {addresses}, want {DNS_RECORD_IP}"

        contents = Path(RESOLV_CONF).read_text(encoding="utf-8")
        search_path = read_search_path(contents)
        assert " local " not in search_path, f"{RESOLV_CONF} contains local in search path: {search_path!r}\n{contents}"
        logger.info("validate_local_cloud_dns OK: %r", addresses)

    def validate_network_manager_restart(self) -> None:
        """Alias routes survive a restart of the network manager."""
        if is_windows(self.image):
            raise SkipCheck("Linux only")
        if is_ubuntu(self.image):
            raise SkipCheck("routes are not restored by the agent on Ubuntu after a network manager restart")

        interface_name = self._primary_interface_for_aliases()
        before = self._google_routes(interface_name)

        errors = []
        for manager in ("systemd-networkd", "NetworkManager"):
            proc = subprocess.run(
                ["systemctl", "restart", manager], capture_output=True, text=True, check=False
            )
            if proc.returncode == 0:
                break
            errors.append(f"failed to restart {manager}: {proc.stderr.strip()}")
        else:
            raise SkipCheck(f"no known network manager found: {errors}")

        time.sleep(65 - ROUTE_SETTLE_SECONDS)
        after = self._google_routes(interface_name)
        assert before == after, f"routes are inconsistent after restart, before {before} after {after}"
        logger.info("validate_network_manager_restart OK: %r", after)

    def validate_ntp(self) -> None:
        service = ntp_service_name(self.image)
        if command_exists("chronyc"):
            cmd = ["chronyc", "-c", "sources"]
        elif command_exists("ntpq"):
            cmd = ["ntpq", "-np"]
        elif command_exists("timedatectl"):
            cmd = ["timedatectl", "show-timesync", "--property=FallbackNTPServers"]
        else:
            raise AssertionError("failed to find timedatectl, chronyc or ntpq")

        output = run(cmd)
        assert any(name in output for name in NTP_SERVER_NAMES), f"could not find metadata ntp server in: {output}"

        proc = subprocess.run(["systemctl", "is-active", service], capture_output=True, text=True, check=False)
        assert proc.returncode == 0, f"{service} service is not running"
        logger.info("validate_ntp OK: %s", service)

    def validate_send_ping(self) -> None:
        """Reach the ping2 listener over both networks."""
        deadline = time.time() + PING_TIMEOUT_SECONDS
        primary_ip = get_metadata("instance", "network-interfaces", "0", "ip")
        secondary_ip = get_metadata("instance", "network-interfaces", "1", "ip")

        target = get_real_vm_name(PING_TARGET_NAME)
        ping_target(primary_ip, target, deadline)
        if not is_cos(self.image):
            ping_target(secondary_ip, PING_TARGET_IP, deadline)

        logger.info("validate_send_ping OK: %s, %s", target, PING_TARGET_IP)

    def validate_static_ip(self) -> None:
        """Each interface holds the address assigned in metadata."""
        indexes = [
            entry.rstrip("/")
            for entry in get_metadata("instance", "network-interfaces").splitlines()
            if entry.rstrip("/")
        ]
        for index in indexes:
            expected_ip = get_metadata("instance", "network-interfaces", index, "ip")
            mac = get_metadata("instance", "network-interfaces", index, "mac")
            interface = get_interface_by_mac(mac)
            addresses = get_ipv4_addresses(interface.name)
            assert expected_ip in addresses, f"no address for interface {index} with ip {expected_ip}, found {addresses}"

        logger.info("validate_static_ip OK: %d interfaces", len(indexes))

    def validate_wait_for_ping(self) -> None:
        """Serve the ping listener until the peer reached both networks."""
        if os.path.exists(PING_MARKER):
            logger.info("validate_wait_for_ping OK: already pinged")
            return

        want_pings = 1 if is_cos(self.image) else 2
        server = ping_listener(PING_PORT)
        try:
            wait_for_pings(server, want_pings, time.monotonic() + PING_TIMEOUT_SECONDS)
        finally:
            server.server_close()

        Path(PING_MARKER).touch()
        logger.info("validate_wait_for_ping OK: %d pings", want_pings)
