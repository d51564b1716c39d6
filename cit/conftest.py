# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""pytest hooks shared by the image tests and the unit tests."""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import pytest

# pylint: disable=unused-argument

ARTIFACTS_ENV = "CIT_ARTIFACTS_PATH"
INTERRUPTED = 2


def pytest_sessionstart(session):
    """Flags read by the image tests to decide on cleanup."""
    session.aborted = False
    session.failed = False


def pytest_sessionfinish(session, exitstatus):
    session.aborted = exitstatus == INTERRUPTED
    session.failed = exitstatus not in (0, INTERRUPTED)


def _artifacts_dir() -> Path:
    """Artifacts directory shared by the controller and its xdist workers.

    The controller picks /tmp/cit-<timestamp> unless CIT_ARTIFACTS_PATH is set
    and exports it, so workers inherit the same directory.
    """
    if "PYTEST_XDIST_WORKER" not in os.environ and not os.getenv(ARTIFACTS_ENV):
        os.environ[ARTIFACTS_ENV] = f"/tmp/cit-{datetime.now():%Y%m%d%H%M%S%f}"

    path = os.getenv(ARTIFACTS_ENV)
    assert path, f"{ARTIFACTS_ENV} must be set"
    return Path(path)


def pytest_configure(config):
    """Send all logs of this process to <artifacts>/<worker>.log."""
    artifacts_dir = _artifacts_dir()
    artifacts_dir.mkdir(parents=True, exist_ok=True)

    worker = os.environ.get("PYTEST_XDIST_WORKER", "main")
    if worker == "main":
        print(f"artifacts={artifacts_dir.as_posix()}", file=sys.stderr)

    logging.basicConfig(
        format="%(asctime)s %(threadName)s [%(levelname)s] %(name)s: %(message)s",
        filename=artifacts_dir / f"{worker}.log",
        level=logging.DEBUG,
    )


@pytest.hookimpl(tryfirst=True)
def pytest_collection_modifyitems(config, items):
    """Keep the tests of a suite on one pytest-xdist worker."""
    for item in items:
        callspec = getattr(item, "callspec", None)
        suite = callspec.params.get("suite") if callspec else None
        if suite:
            item.add_marker(pytest.mark.xdist_group(suite))
