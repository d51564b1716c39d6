# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .licensevalidation import LicenseValidator, get_license_codes, split_list

DEBIAN_LICENSE = "https://www.googleapis.com/compute/v1/projects/debian-cloud/global/licenses/debian-12-bookworm"
CLOUD_LICENSE = "https://www.googleapis.com/compute/v1/projects/cloud-licenses/global/licenses/cloud-licenses-x86"


def license_metadata(codes, expected_codes, expected, actual):
    metadata = {
        ("instance", "licenses"): "".join(f"{i}/\n" for i in range(len(codes))),
        ("instance", "attributes", "expected-license-codes"): expected_codes,
        ("instance", "attributes", "expected-licenses"): expected,
        ("instance", "attributes", "actual-licenses"): actual,
    }
    for i, code in enumerate(codes):
        metadata[("instance", "licenses", str(i), "id")] = f"{code}\n"
    return metadata


@pytest.fixture
def metadata(monkeypatch):
    entries = {}
    monkeypatch.setattr("cit.guest.licensevalidation.get_metadata", lambda *elems: entries[elems])
    return entries


def test_split_list_sorted():
    assert split_list("2,10,1") == ["1", "10", "2"]


def test_split_list_single():
    assert split_list("7883559014960410759") == ["7883559014960410759"]


def test_get_license_codes_sorted(metadata):
    metadata.update(license_metadata(["9", "10", "1"], "", "", ""))
    assert get_license_codes() == ["1", "10", "9"]


def test_validate_licenses_ignores_order(metadata):
    metadata.update(
        license_metadata(
            ["2", "1"],
            "1,2",
            f"{DEBIAN_LICENSE},{CLOUD_LICENSE}",
            f"{CLOUD_LICENSE},{DEBIAN_LICENSE}",
        )
    )
    LicenseValidator(image="debian-12").validate_licenses()


def test_validate_licenses_code_mismatch(metadata):
    metadata.update(license_metadata(["1"], "1,2", DEBIAN_LICENSE, DEBIAN_LICENSE))
    with pytest.raises(AssertionError, match="unexpected license codes"):
        LicenseValidator(image="debian-12").validate_licenses()


def test_validate_licenses_url_mismatch(metadata):
    metadata.update(license_metadata(["1"], "1", f"{DEBIAN_LICENSE},{CLOUD_LICENSE}", DEBIAN_LICENSE))
    with pytest.raises(AssertionError, match="unexpected licenses"):
        LicenseValidator(image="debian-12").validate_licenses()
