# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Run the guest checks of a suite on the test VM."""

import argparse
import logging
import re
import sys
import traceback
from typing import Dict, List, Type

from .accelerator import AcceleratorConfigValidator, NcclValidator, RdmaValidator
from .disk import DiskValidator, LssdValidator
from .guestagent import GuestAgentValidator
from .interfacenaming import InterfaceNamingValidator
from .licensevalidation import LicenseValidator
from .network import NetworkValidator
from .networkperf import NetworkPerfValidator
from .nicsetup import NicSetupValidator
from .utils import SkipCheck, Validator

logger = logging.getLogger("cit")

VALIDATORS: Dict[str, Type[Validator]] = {
    "acceleratorconfig": AcceleratorConfigValidator,
    "acceleratornccl": NcclValidator,
    "acceleratorrdma": RdmaValidator,
    "acceleratorrdmabandwidth": RdmaValidator,
    "acceleratorrdmanetwork": RdmaValidator,
    "acceleratorrdmawriteimmediate": RdmaValidator,
    "disk": DiskValidator,
    "guestagent": GuestAgentValidator,
    "licensevalidation": LicenseValidator,
    "lssd": LssdValidator,
    "network": NetworkValidator,
    "networkinterfacenaming": InterfaceNamingValidator,
    "networkperf": NetworkPerfValidator,
    "nicsetup": NicSetupValidator,
}


def select_checks(validator_class: Type[Validator], regex: str) -> List[str]:
    pattern = re.compile(regex)
    return [name for name in validator_class.checks() if pattern.search(name)]


def run_checks(validator: Validator, checks: List[str]) -> Dict[str, str]:
    """Run each check and return its status: OK, SKIPPED or FAILED."""
    results = {}
    for name in checks:
        check = getattr(validator, f"validate_{name}")
        logger.info("validate_%s...", name)
        try:
            check()
            results[name] = "OK"
        except SkipCheck as error:
            logger.warning("validate_%s SKIPPED: %s", name, error)
            results[name] = "SKIPPED"
        except Exception as error:  # pylint: disable=broad-exception-caught
            logger.error("validate_%s FAILED: %r\n%s", name, error, traceback.format_exc())
            results[name] = "FAILED"

    return results


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Cloud image guest checks.")
    parser.add_argument(
        "--suite",
        choices=sorted(VALIDATORS),
        required=True,
        help="Suite whose checks to run",
    )
    parser.add_argument(
        "--run",
        default=".*",
        help="Regex selecting the checks to run",
    )
    parser.add_argument(
        "--list",
        action="store_true",
        help="List the suite's checks and exit",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    if args.debug:
        logging.basicConfig(format="[%(asctime)s] %(message)s", level=logging.DEBUG)
    else:
        logging.basicConfig(format="[%(asctime)s] %(message)s", level=logging.INFO)

    validator_class = VALIDATORS[args.suite]
    checks = select_checks(validator_class, args.run)
    if args.list:
        print("\n".join(checks))
        return

    if not checks:
        logger.error("no %s checks match %r", args.suite, args.run)
        sys.exit(1)

    results = run_checks(validator_class(), checks)
    logger.info("%s results: %r", args.suite, results)
    if "FAILED" in results.values():
        sys.exit(1)


if __name__ == "__main__":
    main()
