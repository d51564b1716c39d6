# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Network performance checks.

The iperf runs themselves happen in the client's startup script, which
publishes the SUM lines as guest attributes testing/results-<i>. These
checks only compare the published results against the target.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List

from .network import GVNIC_DRIVERS
from .utils import (
    MetadataNotFoundError,
    Validator,
    get_interface,
    get_interface_driver,
    get_machine_type,
    get_metadata,
)

logger = logging.getLogger("cit")

RESULT_TIMEOUT = 4 * 60
RESULT_POLL_INTERVAL = 5
# Line rate is rarely achievable, accept 85% of it.
EXPECTED_PERF_FACTOR = 0.85


@dataclass(eq=True, repr=True)
class NetworkPerfAttributes:
    num_interfaces: int
    machine_type: str
    network_tier: str
    want_throughput: float


def extract_iperf_result(raw_result: str) -> float:
    """Gbit/s from a squeezed iperf SUM line, e.g.
    "[SUM] 0.0000-30.0 sec 34.5 GBytes 9.87 Gbits/sec".
    """
    fields = raw_result.split(" ")
    if len(fields) < 7:
        raise ValueError(f"invalid result format: {raw_result!r}")

    result = float(fields[5])
    if not fields[6].startswith("G"):
        raise ValueError(f"unknown unit of measurement {fields[6]!r}")

    return result


def query_test_attributes() -> NetworkPerfAttributes:
    return NetworkPerfAttributes(
        num_interfaces=int(get_metadata("instance", "attributes", "num-parallel-tests")),
        machine_type=get_machine_type(),
        network_tier=get_metadata("instance", "attributes", "network-tier"),
        want_throughput=EXPECTED_PERF_FACTOR
        * float(get_metadata("instance", "attributes", "expectedperf")),
    )


def wait_for_result(index: int, deadline: float) -> str:
    while True:
        try:
            return get_metadata("instance", "guest-attributes", "testing", f"results-{index}")
        except (MetadataNotFoundError, RuntimeError) as error:
            if time.time() > deadline:
                raise TimeoutError(
                    f"timeout waiting for iperf results on interface {index}: {error}"
                ) from error
            logger.debug("no iperf results for interface %d yet: %r", index, error)
        time.sleep(RESULT_POLL_INTERVAL)


def wait_for_results(num_interfaces: int) -> List[str]:
    deadline = time.time() + RESULT_TIMEOUT
    with ThreadPoolExecutor(max_workers=max(num_interfaces, 1)) as executor:
        futures = [
            executor.submit(wait_for_result, index, deadline)
            for index in range(num_interfaces)
        ]
        return [future.result() for future in futures]


class NetworkPerfValidator(Validator):
    def validate_gvnic_exists(self) -> None:
        interface = get_interface(0)
        driver = get_interface_driver(interface.name)
        assert driver in GVNIC_DRIVERS, f"interface {interface.name} uses driver {driver}, want one of {GVNIC_DRIVERS}"
        logger.info("validate_gvnic_exists OK: %s uses %s", interface.name, driver)

    def validate_network_performance(self) -> None:
        attrs = query_test_attributes()
        results = wait_for_results(attrs.num_interfaces)

        failures = []
        for index, raw_result in enumerate(results):
            result = extract_iperf_result(raw_result)
            if result < attrs.want_throughput:
                failures.append(
                    f"interface {index}: got {result} Gbps, want {attrs.want_throughput} Gbps"
                )
            else:
                logger.info(
                    "machine type %s interface %d: got %s Gbps, want %s Gbps",
                    attrs.machine_type,
                    index,
                    result,
                    attrs.want_throughput,
                )

        assert not failures, f"did not meet performance expectation for {attrs.machine_type} with network tier {attrs.network_tier}: {failures}"
        logger.info("validate_network_performance OK: %r", attrs)
