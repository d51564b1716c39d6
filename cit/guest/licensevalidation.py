# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import logging
from typing import List

from .utils import Validator, get_metadata

logger = logging.getLogger("cit")


def split_list(value: str) -> List[str]:
    return sorted(value.split(","))


def get_license_codes() -> List[str]:
    codes = []
    for entry in get_metadata("instance", "licenses").splitlines():
        entry = entry.strip().rstrip("/")
        if entry:
            codes.append(get_metadata("instance", "licenses", entry, "id").strip())
    return sorted(codes)


class LicenseValidator(Validator):
    def validate_licenses(self) -> None:
        """License codes and URLs attached to the image match the expected ones."""
        expected_codes = split_list(get_metadata("instance", "attributes", "expected-license-codes"))
        actual_codes = get_license_codes()
        assert actual_codes == expected_codes, f"unexpected license codes: got {actual_codes} want {expected_codes}"

        expected = split_list(get_metadata("instance", "attributes", "expected-licenses"))
        actual = split_list(get_metadata("instance", "attributes", "actual-licenses"))
        assert actual == expected, f"unexpected licenses: got {actual} want {expected}"

        logger.info("validate_licenses OK: %r", actual)
