# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Guest agent behavior checks."""

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import List, Tuple

from .utils import (
    ComputeClient,
    SkipCheck,
    Validator,
    get_instance_name,
    get_metadata,
    is_cos,
    is_sles,
    is_ubuntu,
    restart_agent,
    run,
)

logger = logging.getLogger("cit")

# pylint: disable=line-too-long

TELEMETRY_KEY = "disable-guest-telemetry"
TELEMETRY_SCHEDULED = "Successfully scheduled job telemetryJobID"
TELEMETRY_NOT_SCHEDULED = "Failed to schedule job telemetryJobID"

SNAPSHOTS_DIR = "/etc/google/snapshots"
INSTANCE_CONFIGS = "/etc/default/instance_configs.cfg"
SNAPSHOTS_CONFIG = "[Snapshots]\nenabled = true\ntimeout_in_seconds = 300\n"

AFTER_DEPENDENCIES = ["network-online.target", "NetworkManager.service", "systemd-networkd.service"]
AGENT_SERVICES = ["google-guest-agent-manager", "google-guest-agent", "google-guest-compat-manager"]


def get_agent_output() -> str:
    return run(["journalctl", "-o", "cat", "-eu", "google-guest-agent"])


def telemetry_markers(disabled: bool) -> str:
    return TELEMETRY_NOT_SCHEDULED if disabled else TELEMETRY_SCHEDULED


def agent_services(image: str) -> List[str]:
    # Older agent packages on these images only ship google-guest-agent.
    if "guest-agent" not in image and (is_cos(image) or is_ubuntu(image) or is_sles(image)):
        return ["google-guest-agent"]
    return AGENT_SERVICES


def missing_dependencies(after: str) -> List[str]:
    return [dependency for dependency in AFTER_DEPENDENCIES if dependency not in after]


def current_hour() -> Tuple[int, str]:
    hour = int(run(["date", "+%H"]).strip())
    return hour, run(["date"]).strip()


def write_snapshot_scripts() -> None:
    os.makedirs(SNAPSHOTS_DIR, mode=0o770, exist_ok=True)
    for script, output in (("pre.sh", "pre-snapshot-write"), ("post.sh", "post-snapshot-write")):
        path = Path(SNAPSHOTS_DIR, script)
        path.write_text(f"#!/bin/bash\ndate>>{SNAPSHOTS_DIR}/{output}\n", encoding="utf-8")
        path.chmod(0o770)

    config_path = Path(INSTANCE_CONFIGS)
    config = config_path.read_text(encoding="utf-8") if config_path.exists() else ""
    config_path.write_text(config + SNAPSHOTS_CONFIG, encoding="utf-8")
    config_path.chmod(0o640)


class GuestAgentValidator(Validator):
    """Validate guest agent features driven by metadata and config files."""

    def validate_clock_drift(self) -> None:
        run(["timedatectl", "set-timezone", "America/Los_Angeles"])
        before_hour, before = current_hour()
        logger.debug("date before setting rtc to local: %s", before)

        run(["timedatectl", "set-local-rtc", "true"])
        restart_agent()
        # Give the agent time to run its clock sync.
        time.sleep(10)

        after_hour, after = current_hour()
        logger.debug("date after setting rtc to local: %s", after)

        drift = abs(after_hour - before_hour)
        assert drift <= 1, f"clock drift detected: {drift} hours, before: {before}, after: {after}"
        logger.info("validate_clock_drift OK: drift=%d", drift)

    def validate_diagnostic(self) -> None:
        raise SkipCheck("diagnostics collection is only supported on Windows")

    def validate_service_config(self) -> None:
        """Agent services start after the network is online."""
        services = agent_services(self.image)
        failures = []
        for service in services:
            proc = subprocess.run(
                ["systemctl", "show", service, "-p", "After", "--value", "--no-pager"],
                capture_output=True,
                text=True,
                check=False,
            )
            if proc.returncode != 0:
                failures.append(f"failed to get service {service} status: {proc.stderr.strip()}")
                continue

            missing = missing_dependencies(proc.stdout.strip())
            if missing:
                failures.append(f"service {service} is missing dependencies: {missing}")

        assert not failures, f"service config failures: {failures}"
        logger.info("validate_service_config OK: %r", services)

    def validate_snapshot_scripts(self) -> None:
        """Pre and post snapshot scripts run exactly once per snapshot."""
        write_snapshot_scripts()
        restart_agent()
        # Wait for the agent to connect to the snapshot service.
        time.sleep(5)

        instance = get_instance_name()
        snapshot = f"snapshot-{instance}"
        client = ComputeClient.from_metadata()
        client.create_snapshot(instance, snapshot, guest_flush=True)
        client.delete_snapshot(snapshot)

        for output in ("pre-snapshot-write", "post-snapshot-write"):
            lines = Path(SNAPSHOTS_DIR, output).read_text(encoding="utf-8").count("\n")
            assert lines == 1, f"unexpected number of executions recorded in {output}, want 1 got {lines}"

        logger.info("validate_snapshot_scripts OK: %s", snapshot)

    def validate_telemetry(self) -> None:
        """Flipping disable-guest-telemetry toggles telemetry job scheduling."""
        initial_output = get_agent_output()
        initially_disabled = get_metadata("instance", "attributes", TELEMETRY_KEY).strip().lower() == "true"

        instance = get_instance_name()
        ComputeClient.from_metadata().upsert_metadata(
            instance, TELEMETRY_KEY, str(not initially_disabled).lower()
        )
        restart_agent()
        time.sleep(1)

        total_output = get_agent_output()
        if "telemetry" not in total_output:
            raise SkipCheck("agent does not support telemetry")

        final_output = total_output[len(initial_output) :] if total_output.startswith(initial_output) else total_output
        want_initial = telemetry_markers(initially_disabled)
        want_final = telemetry_markers(not initially_disabled)
        assert want_initial in initial_output, f"expected {want_initial!r} with {TELEMETRY_KEY}={initially_disabled}, agent logs: {initial_output}"
        assert want_final in final_output, f"expected {want_final!r} with {TELEMETRY_KEY}={not initially_disabled}, agent logs: {final_output}"
        logger.info("validate_telemetry OK: %s=%s -> %s", TELEMETRY_KEY, initially_disabled, not initially_disabled)
