# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .interfacenaming import is_valid_interface_name


@pytest.mark.parametrize(
    "name,image,expected",
    [
        ("ens4", "debian-12-bookworm-v20240101", True),
        ("enp0s4", "ubuntu-2204-jammy-v20240101", True),
        ("eth0", "debian-11-bullseye-v20240101", True),
        ("eth1", "rhel-9-v20240101", True),
        ("eth0", "cos-stable-109", True),
        ("eth0", "debian-12-bookworm-v20240101", False),
        ("eth0", "ubuntu-2404-noble-v20240101", False),
        ("wlan0", "debian-12-bookworm-v20240101", False),
    ],
)
def test_is_valid_interface_name(name, image, expected):
    assert is_valid_interface_name(name, image) is expected
