# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""License validation suite.

The licenses an image must carry are derived from its name and family. The
guest compares them with the licenses reported by the image and the license
codes reported by the metadata server.
"""

import re
from typing import List

from ..workflow import Image, TestWorkflow

DEFAULT_BASE_URL = "https://www.googleapis.com/compute/v1/"
LICENSE_PATH = "projects/{project}/global/licenses/{license}"

IMAGE_SUFFIX_REGEX = re.compile(r"-(arm|amd|x86_)64$")
SQL_WINDOWS_VERSION_REGEX = re.compile(r"windows-[0-9]{4}-dc")
SQL_VERSION_REGEX = re.compile(r"sql-[0-9]{4}-(express|enterprise|standard|web)")
RHEL_SAP_VERSION_REGEX = re.compile(r"-[0-9]+-sap-(ha|byos)$")
NVIDIA_VERSION_REGEX = re.compile(r"nvidia-([0-9]{3}|latest)")

SKIPPED_IMAGES = ["windows-server-2025", "windows-11", "windows-10", "opensuse-leap"]


def _search(pattern: str, text: str) -> str:
    match = re.search(pattern, text)
    return match.group(0) if match else ""


def debian_codename(image_name: str) -> str:
    """Rightmost dash separated part made only of lowercase letters."""
    for segment in reversed(image_name.split("-")):
        if re.fullmatch(r"[a-z]*", segment):
            return segment
    return ""


def required_license_list(image: Image, base_url: str = DEFAULT_BASE_URL) -> List[str]:
    """License URLs expected on the image."""
    if not base_url or base_url == "https://compute.googleapis.com/compute/v1/":
        base_url = DEFAULT_BASE_URL
    if not base_url.endswith("/"):
        base_url += "/"

    def url(project: str, license_name: str) -> str:
        return base_url + LICENSE_PATH.format(project=project, license=license_name)

    name = image.name
    family_license = IMAGE_SUFFIX_REGEX.sub("", image.family)

    if "debian" in name:
        return [url("debian-cloud", family_license) + "-" + debian_codename(name)]

    if "rhel" in name and "sap" in name:
        suffix = "-sap-byos" if "byos" in name else "-sap"
        return [url("rhel-sap-cloud", RHEL_SAP_VERSION_REGEX.sub(suffix, family_license))]

    if "rhel" in name:
        license_url = url("rhel-cloud", family_license)
        if "byos" not in name:
            license_url += "-server"
        return [license_url.replace("-c3m", "")]

    if "centos" in name:
        license_url = url("centos-cloud", family_license)
        if image.family == "centos-stream-8":
            # centos-stream-8 has no -8 suffix
            license_url = license_url[:-2]
        return [license_url]

    if "rocky" in name and "nvidia" in name:
        rocky_version = _search(r"rocky-linux-[0-9]", name).replace("rocky-linux-", "")
        driver_version = _search(NVIDIA_VERSION_REGEX.pattern, name).replace("nvidia-", "")
        return [
            url("rocky-linux-accelerator-cloud", f"nvidia-{driver_version}"),
            url("rocky-linux-accelerator-cloud", f"rocky-linux-{rocky_version}-accelerated"),
            url("rocky-linux-cloud", f"rocky-linux-{rocky_version}-optimized-gcp"),
        ]

    if "rocky-linux" in name:
        return [url("rocky-linux-cloud", family_license)]

    if "almalinux" in name:
        return [url("almalinux-cloud", family_license)]

    if "opensuse" in name:
        # The -42 suffix does not follow the opensuse version.
        return [url("opensuse-cloud", family_license) + "-42"]

    if "sles" in name and "sap" in name:
        return [url("suse-sap-cloud", family_license)]

    if "sles" in name:
        license_url = url("suse-cloud", family_license)
        if license_url.endswith("-sp5"):
            license_url = license_url[: -len("-sp5")]
        return [license_url]

    if "ubuntu" in name and "nvidia" in name:
        ubuntu_version = _search(r"ubuntu-accelerator-[0-9]{4}", name).replace("ubuntu-accelerator-", "")
        if ubuntu_version.endswith("04"):
            ubuntu_version += "-lts"
        driver_version = _search(NVIDIA_VERSION_REGEX.pattern, name).replace("nvidia-", "")
        return [
            url("ubuntu-os-cloud", f"ubuntu-{ubuntu_version}"),
            url("ubuntu-os-accelerator-images", f"ubuntu-{ubuntu_version}-accelerated"),
            url("ubuntu-os-accelerator-images", f"nvidia-{driver_version}"),
        ]

    if "ubuntu-pro" in name or "ubuntu-minimal-pro" in name:
        return [url("ubuntu-os-pro-cloud", family_license)]

    if "ubuntu" in name:
        return [url("ubuntu-os-cloud", family_license)]

    if "windows" in name and "sql" in name:
        return [
            url("windows-sql-cloud", _search(SQL_VERSION_REGEX.pattern, name).replace("sql-", "sql-server-")),
            url("windows-cloud", _search(SQL_WINDOWS_VERSION_REGEX.pattern, name).replace("windows-", "windows-server-")),
        ]

    if "windows" in name:
        version = _search(r"[0-9]{4}(-r[0-9])?", image.family)
        licenses = [url("windows-cloud", f"windows-server-{version}-dc")]
        if "core" in name:
            licenses.append(url("windows-cloud", "windows-server-core"))
        elif "bios" in name:
            licenses.append(url("google.com:windows-internal", "internal-windows"))
        return licenses

    raise ValueError(f"cannot tell which project holds the licenses of {name}")


def setup(workflow: TestWorkflow) -> None:
    for name in SKIPPED_IMAGES:
        if name in workflow.image.name:
            workflow.skip(f"license check is not run on {name} images")

    vm = workflow.create_test_vm("licensevm")
    vm.add_metadata("expected-licenses", ",".join(required_license_list(workflow.image)))
    vm.add_metadata("actual-licenses", ",".join(workflow.image.licenses))
    vm.add_metadata("expected-license-codes", ",".join(workflow.image.license_codes))
    vm.run_checks("licenses")
