# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .imagematch import (
    IMAGE_EL,
    IMAGE_SLES,
    IMAGE_UBUNTU,
    ImageException,
    has_match,
    match_all,
    parse_version,
)


@pytest.mark.parametrize(
    "image,expected",
    [
        ("ubuntu-2204-jammy-v20240101", 2204),
        ("projects/ubuntu-os-cloud/global/images/ubuntu-1804-bionic-v20230101", 1804),
        ("sles-12-sp5-v20240101", 12),
        ("cos-stable", 0),
    ],
)
def test_parse_version(image, expected):
    assert parse_version(image) == expected


def test_match_all_base_only():
    assert match_all("projects/x/global/images/ubuntu-2204-jammy-v1", IMAGE_UBUNTU)
    assert not match_all("debian-12-bookworm-v1", IMAGE_UBUNTU)


def test_match_all_version_constraint():
    assert match_all("ubuntu-1804-bionic-v1", IMAGE_UBUNTU, ImageException(version=1804))
    assert not match_all("ubuntu-2204-jammy-v1", IMAGE_UBUNTU, ImageException(version=1804))


def test_match_all_every_constraint_must_hold():
    newer = ImageException(version=2000, compare="gt")
    older = ImageException(version=2404, compare="lt")

    assert match_all("ubuntu-2204-jammy-v1", IMAGE_UBUNTU, newer, older)
    assert not match_all("ubuntu-2404-noble-v1", IMAGE_UBUNTU, newer, older)


def test_match_all_any_version():
    assert match_all("rhel-8-v20240101", IMAGE_EL, ImageException())


def test_has_match():
    exceptions = [
        ImageException(match=IMAGE_SLES, version=12),
        ImageException(match="rhel-(?:9-0|8-6)-sap-ha"),
    ]

    assert has_match("sles-12-sp5-v20240101", exceptions)
    assert not has_match("sles-15-sp5-v20240101", exceptions)
    assert has_match("rhel-8-6-sap-ha-v20240101", exceptions)
    assert not has_match("rhel-9-4-sap-ha-v20240101", exceptions)
    assert not has_match("debian-12-bookworm-v20240101", exceptions)
