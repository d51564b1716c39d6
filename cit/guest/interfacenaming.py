# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import logging
import re

from .utils import Validator, get_interface_by_mac, get_metadata

logger = logging.getLogger("cit")

# Images that still name their NICs ethN.
ETH_NAME_IMAGES = [
    "cos",
    "debian-11",
    "suse",
    "sles",
    "rhel-8",
    "rhel-9",
    "centos-stream-8",
    "centos-stream-9",
    "almalinux-8",
    "almalinux-9",
    "rocky-linux-8",
    "rocky-linux-9",
]
ETH_NAME_REGEX = re.compile(r"^eth[0-9]+")
# See man systemd.net-naming-scheme
PREDICTABLE_NAME_REGEX = re.compile(r"^en.*")


def can_have_eth_names(image: str) -> bool:
    return any(name in image for name in ETH_NAME_IMAGES)


def is_valid_interface_name(name: str, image: str) -> bool:
    if ETH_NAME_REGEX.match(name):
        return can_have_eth_names(image)
    return bool(PREDICTABLE_NAME_REGEX.match(name))


class InterfaceNamingValidator(Validator):
    def validate_interface_naming(self) -> None:
        indexes = [
            entry.rstrip("/")
            for entry in get_metadata("instance", "network-interfaces").splitlines()
            if entry.rstrip("/")
        ]
        names = []
        for index in indexes:
            mac = get_metadata("instance", "network-interfaces", index, "mac")
            name = get_interface_by_mac(mac).name
            assert is_valid_interface_name(name, self.image), f"NIC name {name!r} does not match predictable name scheme {PREDICTABLE_NAME_REGEX.pattern!r} on image {self.image}"
            names.append(name)

        logger.info("validate_interface_naming OK: %r", names)
