# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Image name matching with optional OS version constraints.

Versions are taken from the first integer part of the image basename, e.g.
"ubuntu-2204-jammy-v20240101" has version 2204 and "debian-11" has 11.
"""

import operator
import os
import re
from dataclasses import dataclass
from typing import List, Literal

IMAGE_UBUNTU = "ubuntu.*"
IMAGE_UBUNTU_MINIMAL = "ubuntu-minimal.*"
IMAGE_UBUNTU_NO_MINIMAL = "ubuntu-[0-9]+.*"
IMAGE_COS = "cos.*"
IMAGE_SLES = "sles.*"
IMAGE_DEBIAN = "debian.*"
IMAGE_RHEL = "rhel.*"
IMAGE_RHEL_SAP = "rhel.*sap.*"
IMAGE_ORACLE = "oracle-linux.*"
IMAGE_ROCKY = "rocky-linux.*"
IMAGE_CENTOS = "centos.*"
IMAGE_WINDOWS = "windows.*"
IMAGE_SQL = "sql.*"
IMAGE_ALMALINUX = "almalinux.*"

IMAGE_EL = "(" + "|".join(
    [IMAGE_RHEL, IMAGE_RHEL_SAP, IMAGE_ROCKY, IMAGE_CENTOS, IMAGE_ORACLE, IMAGE_ALMALINUX]
) + ")"
IMAGE_ALL_WINDOWS = "(" + "|".join([IMAGE_WINDOWS, IMAGE_SQL]) + ")"

_COMPARATORS = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "lt": operator.lt,
    "ge": operator.ge,
    "le": operator.le,
}


@dataclass(eq=True, repr=True)
class ImageException:
    """Version constraint on images matching a regex.

    A version of 0 applies to every version of the matched OS.
    """

    match: str = ""
    version: int = 0
    compare: Literal["eq", "ne", "gt", "lt", "ge", "le"] = "eq"

    def check(self, version: int) -> bool:
        return _COMPARATORS[self.compare](version, self.version)


def parse_version(image: str) -> int:
    """First integer-parsable dash separated part of the image basename."""
    for part in os.path.basename(image).split("-"):
        if part.isdigit():
            return int(part)

    return 0


def match_all(image: str, base: str, *exceptions: ImageException) -> bool:
    """Image matches base and every exception's version constraint."""
    image = os.path.basename(image)
    if not re.search(base, image):
        return False

    if not exceptions:
        return True

    version = parse_version(image)
    for exception in exceptions:
        if exception.version == 0:
            return True

        if not exception.check(version):
            return False

    return True


def has_match(image: str, exceptions: List[ImageException]) -> bool:
    """Any exception matches the image name and its version constraint."""
    image = os.path.basename(image)
    version = parse_version(image)
    for exception in exceptions:
        if not re.search(exception.match, image):
            continue

        if exception.version == 0 or exception.check(version):
            return True

    return False
