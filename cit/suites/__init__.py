# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Suite setup functions, keyed by suite name."""

from typing import Callable, Dict

from ..workflow import TestWorkflow
from . import (
    accelerator,
    acceleratornccl,
    disk,
    guestagent,
    licensevalidation,
    network,
    networkinterfacenaming,
    networkperf,
    nicsetup,
)

SUITES: Dict[str, Callable[[TestWorkflow], None]] = {
    "acceleratorconfig": accelerator.setup_config,
    "acceleratornccl": acceleratornccl.setup,
    "acceleratorrdma": accelerator.setup_rdma,
    "acceleratorrdmabandwidth": accelerator.setup_rdma,
    "acceleratorrdmanetwork": accelerator.setup_rdma,
    "acceleratorrdmawriteimmediate": accelerator.setup_rdma,
    "disk": disk.setup,
    "guestagent": guestagent.setup,
    "licensevalidation": licensevalidation.setup,
    "lssd": disk.setup_lssd,
    "network": network.setup,
    "networkinterfacenaming": networkinterfacenaming.setup,
    "networkperf": networkperf.setup,
    "nicsetup": nicsetup.setup,
}

# Suites needing CIT_ACCELERATOR_TYPE, which only run when it is set.
ACCELERATOR_SUITES = [name for name in SUITES if name.startswith("accelerator")]
