# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from ..workflow import Image
from .licensevalidation import debian_codename, required_license_list

LICENSES = "https://www.googleapis.com/compute/v1/projects/{}/global/licenses/{}"


def license_url(project, name):
    return LICENSES.format(project, name)


@pytest.mark.parametrize(
    "name,family,expected",
    [
        (
            "debian-12-bookworm-v20240110",
            "debian-12",
            [license_url("debian-cloud", "debian-12-bookworm")],
        ),
        (
            "debian-12-bookworm-arm64-v20240110",
            "debian-12-arm64",
            [license_url("debian-cloud", "debian-12-bookworm")],
        ),
        (
            "rhel-9-v20240110",
            "rhel-9",
            [license_url("rhel-cloud", "rhel-9-server")],
        ),
        (
            "rhel-9-byos-v20240110",
            "rhel-9-byos",
            [license_url("rhel-cloud", "rhel-9-byos")],
        ),
        (
            "rhel-8-6-sap-ha-v20240110",
            "rhel-8-6-sap-ha",
            [license_url("rhel-sap-cloud", "rhel-8-sap")],
        ),
        (
            "rhel-8-6-sap-byos-v20240110",
            "rhel-8-6-sap-byos",
            [license_url("rhel-sap-cloud", "rhel-8-sap-byos")],
        ),
        (
            "centos-stream-8-v20240110",
            "centos-stream-8",
            [license_url("centos-cloud", "centos-stream")],
        ),
        (
            "rocky-linux-9-optimized-gcp-v20240110",
            "rocky-linux-9-optimized-gcp",
            [license_url("rocky-linux-cloud", "rocky-linux-9-optimized-gcp")],
        ),
        (
            "rocky-linux-8-optimized-gcp-nvidia-latest-v20240110",
            "rocky-linux-8-optimized-gcp-nvidia-latest",
            [
                license_url("rocky-linux-accelerator-cloud", "nvidia-latest"),
                license_url("rocky-linux-accelerator-cloud", "rocky-linux-8-accelerated"),
                license_url("rocky-linux-cloud", "rocky-linux-8-optimized-gcp"),
            ],
        ),
        (
            "almalinux-9-v20240110",
            "almalinux-9",
            [license_url("almalinux-cloud", "almalinux-9")],
        ),
        (
            "sles-15-sp5-v20240110",
            "sles-15-sp5",
            [license_url("suse-cloud", "sles-15")],
        ),
        (
            "sles-15-sp5-sap-v20240110",
            "sles-15-sp5-sap",
            [license_url("suse-sap-cloud", "sles-15-sp5-sap")],
        ),
        (
            "ubuntu-2204-jammy-v20240110",
            "ubuntu-2204-lts",
            [license_url("ubuntu-os-cloud", "ubuntu-2204-lts")],
        ),
        (
            "ubuntu-pro-2204-jammy-v20240110",
            "ubuntu-pro-2204-lts",
            [license_url("ubuntu-os-pro-cloud", "ubuntu-pro-2204-lts")],
        ),
        (
            "ubuntu-accelerator-2204-amd64-with-nvidia-550-v20240110",
            "ubuntu-accelerator-2204-amd64-with-nvidia-550",
            [
                license_url("ubuntu-os-cloud", "ubuntu-2204-lts"),
                license_url("ubuntu-os-accelerator-images", "ubuntu-2204-lts-accelerated"),
                license_url("ubuntu-os-accelerator-images", "nvidia-550"),
            ],
        ),
        (
            "windows-server-2022-dc-v20240110",
            "windows-2022",
            [license_url("windows-cloud", "windows-server-2022-dc")],
        ),
        (
            "windows-server-2022-dc-core-v20240110",
            "windows-2022-core",
            [
                license_url("windows-cloud", "windows-server-2022-dc"),
                license_url("windows-cloud", "windows-server-core"),
            ],
        ),
        (
            "sql-2019-standard-windows-2022-dc-v20240110",
            "sql-std-2019-win-2022",
            [
                license_url("windows-sql-cloud", "sql-server-2019-standard"),
                license_url("windows-cloud", "windows-server-2022-dc"),
            ],
        ),
    ],
)
def test_required_license_list(name, family, expected):
    image = Image(name=name, project="test-project", family=family)
    assert required_license_list(image) == expected


def test_required_license_list_unknown_image():
    with pytest.raises(ValueError):
        required_license_list(Image(name="freebsd-14-0", project="test-project", family="freebsd-14"))


@pytest.mark.parametrize(
    "base_url",
    ["https://compute.googleapis.com/compute/v1/", "", "https://www.googleapis.com/compute/v1"],
)
def test_required_license_list_default_base_url(base_url):
    image = Image(name="almalinux-9-v20240110", project="test-project", family="almalinux-9")
    assert required_license_list(image, base_url) == [license_url("almalinux-cloud", "almalinux-9")]


def test_required_license_list_custom_base_url():
    image = Image(name="almalinux-9-v20240110", project="test-project", family="almalinux-9")
    assert required_license_list(image, "https://compute.example.com/compute/beta") == [
        "https://compute.example.com/compute/beta/projects/almalinux-cloud/global/licenses/almalinux-9"
    ]


@pytest.mark.parametrize(
    "name,codename",
    [
        ("debian-12-bookworm-v20240110", "bookworm"),
        ("debian-11-bullseye-arm64-v20240110", "bullseye"),
        ("debian-13-trixie-v20250101", "trixie"),
    ],
)
def test_debian_codename(name, codename):
    assert debian_codename(name) == codename
