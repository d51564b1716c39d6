# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Build the guest checks into a single executable zipapp.

The archive holds cit/guest as the cit_guest package and a pure Python copy
of PyYAML, so the guest only needs a python3 interpreter.
"""

import logging
import shutil
import tempfile
import zipapp
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

GUEST_DIR = Path(__file__).parent / "guest"
GUEST_PACKAGE = "cit_guest"
BUNDLE_MAIN = f"from {GUEST_PACKAGE}.runner import main\n\nmain()\n"
BUNDLE_IGNORE = shutil.ignore_patterns("test_*.py", "__pycache__", "*.pyc", "*.so", "*.pyd")


def build_bundle(target: Path) -> Path:
    """Write the guest zipapp to target and return its path."""
    with tempfile.TemporaryDirectory() as staging:
        staging_path = Path(staging)
        shutil.copytree(GUEST_DIR, staging_path / GUEST_PACKAGE, ignore=BUNDLE_IGNORE)
        # Compiled libyaml bindings cannot be imported from a zip, yaml falls back to pure Python.
        shutil.copytree(Path(yaml.__file__).parent, staging_path / "yaml", ignore=BUNDLE_IGNORE)
        (staging_path / "__main__.py").write_text(BUNDLE_MAIN, encoding="utf-8")

        target.parent.mkdir(parents=True, exist_ok=True)
        zipapp.create_archive(staging_path, target, interpreter="/usr/bin/env python3")

    logger.debug("built guest bundle %s", target.as_posix())
    return target
