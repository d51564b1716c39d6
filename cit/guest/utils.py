# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Helpers shared by the guest checks.

Everything in this package runs on the test VM from a zipapp, so only the
standard library (and the bundled PyYAML) may be imported here.
"""

import json
import logging
import os
import shutil
import subprocess
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger("cit")

# pylint: disable=line-too-long

METADATA_URL_PREFIX = "http://metadata.google.internal/computeMetadata/v1/"
COMPUTE_URL_PREFIX = "https://compute.googleapis.com/compute/v1/"
HTTP_TIMEOUT = 30
SYS_CLASS_NET = "/sys/class/net"
IFF_LOOPBACK = 0x8
SKIP_INTERFACES = ["isatap", "teredo"]

GUEST_AGENT_CORE_PLUGIN_CONFIG = "/etc/google-guest-agent/core-plugin-enabled"
GGACTL_PLUGIN = "/usr/bin/ggactl_plugin"
GGACTL_PLUGIN_CLEANUP = "/usr/bin/ggactl_plugin_cleanup"


class SkipCheck(Exception):
    """Raised by a check that does not apply to this VM."""


class MetadataNotFoundError(Exception):
    """Metadata server returned 404 for the requested entry."""


def unchecked_run(cmd: List[str]) -> str:
    """Run a command without checking the return code and return stripped output."""
    result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    return result.stdout.strip()


def run(cmd: List[str]) -> str:
    """Run a command and return its output, raising on failure."""
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=True,
        )
        logger.debug("%s output: %r", cmd[0], proc)
        return proc.stdout
    except subprocess.CalledProcessError as error:
        logger.error("error running %s: %r stderr=%s", cmd, error, error.stderr)
        raise


def _metadata_request(
    url: str, *, method: str = "GET", data: Optional[str] = None
) -> str:
    body = data.encode("utf-8") if data is not None else None
    req = urllib.request.Request(
        url, data=body, method=method, headers={"Metadata-Flavor": "Google"}
    )

    last_error: Optional[Exception] = None
    for attempt in range(1, 6):
        try:
            with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as response:
                return response.read().decode("utf-8")
        except urllib.error.HTTPError as error:
            if error.code == 404:
                last_error = MetadataNotFoundError(f"no metadata entry found: {url}")
            else:
                last_error = error
        except urllib.error.URLError as error:
            last_error = error

        logger.debug("metadata %s %s attempt %d failed: %r", method, url, attempt, last_error)
        time.sleep(attempt)

    if isinstance(last_error, MetadataNotFoundError):
        raise last_error
    raise RuntimeError(f"failed to {method} metadata {url}: {last_error}")


def get_metadata(*elems: str) -> str:
    """Fetch a metadata entry, e.g. get_metadata("instance", "name")."""
    return _metadata_request(METADATA_URL_PREFIX + "/".join(elems))


def put_metadata(path: str, data: str) -> None:
    """Write a metadata entry, used for guest attributes."""
    _metadata_request(METADATA_URL_PREFIX + path, method="PUT", data=data)


def get_image() -> str:
    """Full image resource the VM booted from."""
    return get_metadata("instance", "image")


def get_instance_name() -> str:
    return get_metadata("instance", "name")


def get_project_zone() -> Tuple[str, str]:
    """Project and zone of the VM, from projects/<num>/zones/<zone>."""
    project = get_metadata("project", "project-id")
    zone = get_metadata("instance", "zone").split("/")[-1]
    return project, zone


def get_real_vm_name(name: str, instance_name: Optional[str] = None) -> str:
    """Real instance name of a sibling VM declared as `name` in the same test."""
    if instance_name is None:
        instance_name = get_instance_name()

    parts = instance_name.split("-", 2)
    if len(parts) != 3:
        raise ValueError(f"instance name {instance_name!r} doesn't match scheme")

    return "-".join([name, parts[1], parts[2]])


def is_accelerator(image: str) -> bool:
    return "nvidia" in image


def is_cos(image: str) -> bool:
    return "cos" in image


def is_debian(image: str) -> bool:
    return "debian" in image


def is_el(image: str) -> bool:
    """Enterprise Linux family: CentOS, RHEL, Rocky, AlmaLinux and Oracle."""
    return any(
        name in image for name in ("centos", "rhel", "rocky", "almalinux", "oracle")
    )


def is_rocky(image: str) -> bool:
    return "rocky" in image


def is_sles(image: str) -> bool:
    return "sles" in image


def is_suse(image: str) -> bool:
    return "suse" in image


def is_ubuntu(image: str) -> bool:
    return "ubuntu" in image


def is_windows(image: str) -> bool:
    return "windows" in image


@dataclass
class Interface:
    """Network interface as seen from sysfs."""

    name: str
    mac: str
    flags: int = 0

    @property
    def is_loopback(self) -> bool:
        return bool(self.flags & IFF_LOOPBACK)


def list_interfaces() -> List[Interface]:
    """List all interfaces found under /sys/class/net."""
    interfaces = []
    for name in sorted(os.listdir(SYS_CLASS_NET)):
        sys_path = Path(SYS_CLASS_NET, name)
        mac = (sys_path / "address").read_text(encoding="utf-8").strip()
        flags = int((sys_path / "flags").read_text(encoding="utf-8").strip(), 16)
        interfaces.append(Interface(name=name, mac=mac, flags=flags))

    return interfaces


def filter_loopback_tunnel_interfaces(interfaces: List[Interface]) -> List[Interface]:
    """Keep only actual NICs."""
    return [
        interface
        for interface in interfaces
        if not interface.is_loopback
        and not any(skip in interface.name.lower() for skip in SKIP_INTERFACES)
    ]


def get_interface_by_mac(mac: str) -> Interface:
    for interface in list_interfaces():
        if interface.mac.lower() == mac.strip().lower():
            return interface

    raise LookupError(f"no interface found with MAC {mac}")


def get_interface(index: int) -> Interface:
    """Interface matching the metadata network-interfaces entry at index."""
    mac = get_metadata("instance", "network-interfaces", str(index), "mac")
    return get_interface_by_mac(mac)


def get_ipv4_addresses(interface_name: str) -> List[str]:
    """IPv4 addresses (without prefix length) assigned to an interface."""
    output = run(["ip", "-4", "-o", "addr", "show", "dev", interface_name])
    addresses = []
    for line in output.splitlines():
        fields = line.split()
        if "inet" in fields:
            addresses.append(fields[fields.index("inet") + 1].split("/")[0])

    return addresses


def get_interface_driver(interface_name: str) -> str:
    link = os.readlink(Path(SYS_CLASS_NET, interface_name, "device", "driver"))
    return os.path.basename(link)


def get_google_routes(interface_name: str) -> List[str]:
    """Routes the guest agent installed for the interface (proto 66)."""
    output = run(
        f"ip route list table local type local scope host dev {interface_name} proto 66".split()
    )
    routes = []
    for line in output.splitlines():
        fields = line.split(" ")
        if len(fields) >= 2:
            logger.debug("found route %r", fields[1])
            routes.append(fields[1])

    return routes


def command_exists(cmd: str) -> bool:
    return shutil.which(cmd) is not None


def is_core_disabled() -> bool:
    """Whether the guest agent core plugin is disabled."""
    try:
        content = Path(GUEST_AGENT_CORE_PLUGIN_CONFIG).read_text(encoding="utf-8")
    except FileNotFoundError:
        # Only older agents without the config file ship the cleanup binary.
        return os.path.isfile(GGACTL_PLUGIN_CLEANUP)

    return "enabled=false" in content


def restart_agent() -> None:
    """Restart the guest agent, through the plugin manager when available."""
    cmd = ["systemctl", "restart", "google-guest-agent"]
    wait = False
    if os.path.isfile(GGACTL_PLUGIN) and not is_core_disabled():
        cmd = [GGACTL_PLUGIN, "coreplugin", "restart"]
        wait = True

    proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if proc.returncode != 0:
        raise RuntimeError(
            f"could not restart agent: rc={proc.returncode} output={proc.stdout}{proc.stderr}"
        )

    if wait:
        # The plugin manager restarts the core plugin asynchronously.
        time.sleep(10)


def install_package(*packages: str) -> None:
    """Install packages with whichever package manager the image has."""
    if not packages:
        raise ValueError("no packages to install")

    for manager, args in (
        ("apt", ["install", "-y"]),
        ("yum", ["install", "-y"]),
        ("dnf", ["install", "-y"]),
        ("zypper", ["--non-interactive", "install"]),
    ):
        if command_exists(manager):
            run([manager, *args, *packages])
            return

    raise RuntimeError("no supported package managers found")


class ComputeClient:
    """Minimal compute/v1 REST client authorized with the VM service account."""

    def __init__(self, project: str, zone: str, endpoint: Optional[str] = None):
        self.project = project
        self.zone = zone
        self.endpoint = (endpoint or COMPUTE_URL_PREFIX).rstrip("/") + "/"

    @classmethod
    def from_metadata(cls) -> "ComputeClient":
        project, zone = get_project_zone()
        try:
            endpoint = get_metadata("instance", "attributes", "_compute_endpoint")
        except MetadataNotFoundError:
            endpoint = ""
        return cls(project, zone, endpoint or None)

    @staticmethod
    def _token() -> str:
        token = json.loads(
            get_metadata("instance", "service-accounts", "default", "token")
        )
        return token["access_token"]

    def _request(self, method: str, path: str, body: Optional[Dict] = None) -> Dict:
        url = urllib.parse.urljoin(self.endpoint, path)
        data = json.dumps(body).encode("utf-8") if body is not None else None
        req = urllib.request.Request(
            url,
            data=data,
            method=method,
            headers={
                "Authorization": f"Bearer {self._token()}",
                "Content-Type": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=HTTP_TIMEOUT) as response:
                payload = response.read().decode("utf-8")
        except urllib.error.HTTPError as error:
            logger.error("compute %s %s failed: %r %s", method, url, error, error.read())
            raise

        return json.loads(payload) if payload else {}

    def _zonal(self, path: str) -> str:
        return f"projects/{self.project}/zones/{self.zone}/{path}"

    def get_instance(self, name: str) -> Dict:
        return self._request("GET", self._zonal(f"instances/{name}"))

    def get_instance_metadata(self, name: str) -> Dict[str, str]:
        metadata = self.get_instance(name).get("metadata", {})
        return {item["key"]: item.get("value", "") for item in metadata.get("items", [])}

    def set_instance_metadata(self, name: str, metadata: Dict) -> None:
        operation = self._request(
            "POST", self._zonal(f"instances/{name}/setMetadata"), metadata
        )
        self.wait_zone_operation(operation)

    def upsert_metadata(self, name: str, key: str, value: str) -> None:
        """Insert or update a single metadata item on a running instance."""
        metadata = self.get_instance(name).get("metadata", {})
        items = metadata.setdefault("items", [])
        for item in items:
            if item["key"] == key:
                item["value"] = value
                break
        else:
            items.append({"key": key, "value": value})

        self.set_instance_metadata(name, metadata)

    def create_snapshot(self, disk: str, snapshot: str, *, guest_flush: bool) -> None:
        operation = self._request(
            "POST",
            self._zonal(f"disks/{disk}/createSnapshot?guestFlush={str(guest_flush).lower()}"),
            {"name": snapshot},
        )
        self.wait_zone_operation(operation)

    def delete_snapshot(self, snapshot: str) -> None:
        operation = self._request(
            "DELETE", f"projects/{self.project}/global/snapshots/{snapshot}"
        )
        self._request(
            "POST",
            f"projects/{self.project}/global/operations/{operation['name']}/wait",
        )

    def wait_zone_operation(self, operation: Dict) -> None:
        deadline = time.time() + 600
        while operation.get("status") != "DONE":
            if time.time() > deadline:
                raise TimeoutError(f"operation {operation.get('name')} did not finish")
            operation = self._request(
                "POST", self._zonal(f"operations/{operation['name']}/wait")
            )

        if operation.get("error"):
            raise RuntimeError(f"operation {operation['name']} failed: {operation['error']}")


class Validator:
    """Base class for the guest checks of a suite.

    Each check is a method named validate_<check>. Checks assert on the
    observed state and raise SkipCheck when they do not apply to the image.
    """

    def __init__(self, image: Optional[str] = None) -> None:
        self.image = image if image is not None else get_image()

    @classmethod
    def checks(cls) -> List[str]:
        """Names of all checks, without the validate_ prefix, sorted."""
        return sorted(
            name[len("validate_") :]
            for name in dir(cls)
            if name.startswith("validate_") and callable(getattr(cls, name))
        )


def read_os_release() -> str:
    try:
        return Path("/etc/os-release").read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.debug("/etc/os-release not found")
        return ""


def get_machine_type() -> str:
    """Machine type name of the VM, e.g. n2-standard-2."""
    return get_metadata("instance", "machine-type").split("/")[-1]
