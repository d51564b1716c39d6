# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

"""Accelerator topology, RDMA and NCCL checks for 8-GPU machine types."""

import glob
import json
import logging
import os
import re
import shutil
import subprocess
import time
import xml.etree.ElementTree as ET
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

from .utils import (
    SkipCheck,
    Validator,
    command_exists,
    get_interface_by_mac,
    get_machine_type,
    get_metadata,
    get_real_vm_name,
    install_package,
    is_rocky,
    is_ubuntu,
    read_os_release,
    run,
)

logger = logging.getLogger("cit")

# pylint: disable=line-too-long

EXPECTED_GPU_COUNT = 8
EXPECTED_RDMA_NIC_COUNT = 8
EXPECTED_GID_COUNT = 32
NIC_DEVICE_ID = "15b3:101e"
GPU_DEVICE_IDS = {
    "a4-highgpu-8g": "10de:2901",
    "a3-ultragpu-8g": "10de:2335",
}
LINE_RATE_GBPS = 400
EXPECTED_MIN_BANDWIDTH_GBPS = LINE_RATE_GBPS * 0.8

RDMA_HOST_NAME = "rdmahost"
RDMA_NIC_PREFIXES = ("roce", "mlx5")
PERFTEST_REPO = "https://github.com/linux-rdma/perftest"
MLNX_TOOLS_REPO = "https://github.com/Mellanox/mlnx-tools.git"
WORK_DIR = "/var/lib/cit"

PREDICTABLE_NIC_NAME = re.compile(r"^en.*")
RDMA_NIC_NAME = re.compile(r"^gpu[0-9]+rdma[0-9]+$")

IB_WRITE_BW_ARGS = [
    "--report_gbits",
    "--iters=10000",
    "--size=65536",
    "--perform_warm_up",
]
PING_PONG_ARGS = ["--gid-idx=3"]
WRITE_WITH_IMMEDIATE_ARGS = ["--write_with_imm", "--size=64"]

NCCL_REPO = "https://github.com/NVIDIA/nccl.git"
NCCL_TESTS_REPO = "https://github.com/NVIDIA/nccl-tests.git"
NCCL_TESTS = ["alltoall_perf", "all_gather_perf", "all_reduce_perf"]
NCCL_TEST_ARGS = ["--minbytes", "8", "--maxbytes", "8G", "--stepfactor", "2", "--ngpus", "1"]
# One process per GPU, all on this node.
MPI_ARGS = ["-np", "8", "-N", "8"]
MPI_GLOB = "/usr/mpi/gcc/openmpi-*/bin/"
NCCL_BUS_BANDWIDTH = re.compile(r"^#\s*Avg bus bandwidth\s*:\s*([\d.]+)", re.MULTILINE)


def is_rocky_linux() -> bool:
    """Rocky Linux ships the RDMA userspace tools preinstalled."""
    return "rocky" in read_os_release()


def parse_attached_gpus(xml_output: str) -> int:
    """Number of attached GPUs from `nvidia-smi -x -q`."""
    attached = ET.fromstring(xml_output).findtext("attached_gpus")
    assert attached is not None, f"attached_gpus missing in nvidia-smi output: {xml_output}"
    return int(attached.strip())


def count_rdma_devices(json_output: str) -> int:
    """Number of `rdma -j dev` entries bound to an interface."""
    return sum(1 for item in json.loads(json_output) if "ifindex" in item)


def expected_nic_numa_node(index: int) -> str:
    return "0" if index == 0 or 1 < index < 6 else "1"


def split_ibv_devices(output: str) -> List[str]:
    """Split `ibv_devinfo --verbose` into one chunk per device."""
    devices = output.split("hca_id:")
    if devices and devices[0] == "":
        devices = devices[1:]
    return devices


def validate_gid_table(gid_table: str) -> None:
    """Assert the show_gids table holds 32 GIDs, 8 per index 0..3."""
    assert (
        f"n_gids_found={EXPECTED_GID_COUNT}" in gid_table
    ), f"gid table does not contain n_gids_found={EXPECTED_GID_COUNT}: {gid_table!r}"

    index_counts: Counter = Counter()
    for line in gid_table.splitlines():
        row = line.split()
        if len(row) < 3 or not row[2].isdigit():
            continue

        index = int(row[2])
        assert 0 <= index <= 3, f"gid index {index} is out of the range [0, 3]"
        index_counts[index] += 1

    for index, count in index_counts.items():
        assert count == 8, f"wanted 8 GID entries for index {index}, got {count}"


def filter_pcie_topology(lspci_output: str, gpu_device_id: str) -> List[str]:
    return [
        line
        for line in lspci_output.splitlines()
        if gpu_device_id in line or NIC_DEVICE_ID in line
    ]


def validate_pcie_topology(lines: List[str], gpu_device_id: str) -> None:
    """Each PCIe subtree holds two GPUs followed by two NICs."""
    assert len(lines) == 16, f"expected 16 GPU and NIC devices, got {len(lines)}: {lines}"

    for i in range(0, 16, 4):
        assert gpu_device_id in lines[i], f"expected GPU {gpu_device_id} first in subtree: {lines[i]}"
        assert gpu_device_id in lines[i + 1], f"expected GPU {gpu_device_id} second in subtree: {lines[i + 1]}"
        assert NIC_DEVICE_ID in lines[i + 2], f"expected NIC {NIC_DEVICE_ID} third in subtree: {lines[i + 2]}"
        assert NIC_DEVICE_ID in lines[i + 3], f"expected NIC {NIC_DEVICE_ID} fourth in subtree: {lines[i + 3]}"


def validate_nvidia_topology(topology: str, gpu_count: int = EXPECTED_GPU_COUNT) -> None:
    """Check `nvidia-smi topo -m` has a fully NVLink connected GPU matrix."""
    rows = [line.split() for line in topology.splitlines() if re.match(r"^GPU\d+\s", line)]
    assert len(rows) == gpu_count, f"expected {gpu_count} GPU rows, got {len(rows)}:\n{topology}"

    for i, row in enumerate(rows):
        links = row[1 : gpu_count + 1]
        assert len(links) == gpu_count, f"short topology row for {row[0]}: {row}"
        for j, link in enumerate(links):
            if i == j:
                assert link == "X", f"{row[0]} diagonal entry is {link!r}, expected 'X'"
            else:
                assert re.match(r"^NV\d+$", link), f"{row[0]} -> GPU{j} link is {link!r}, expected NVLink"


def find_rdma_nics(ibv_devinfo_list: str) -> List[str]:
    """RDMA devices from `ibv_devinfo --list`."""
    nics = [
        line.strip()
        for line in ibv_devinfo_list.splitlines()
        if line.strip().startswith(RDMA_NIC_PREFIXES)
    ]
    assert (
        len(nics) == EXPECTED_RDMA_NIC_COUNT
    ), f"expected {EXPECTED_RDMA_NIC_COUNT} RDMA NICs, found {len(nics)}: {nics}"
    return nics


def extract_perftest_average_bandwidth(output: str) -> float:
    """Average bandwidth column of the perftest result table."""
    for line in output.splitlines():
        if not line.strip() or not re.match(r"^[\s\d.]+$", line):
            continue

        values = line.split()
        if len(values) != 5:
            logger.debug("line %r has %d columns, expected 5", line, len(values))
            continue

        try:
            return float(values[3])
        except ValueError:
            logger.debug("failed to parse average bandwidth %r", values[3])

    raise ValueError(f"no average bandwidth result found in output:\n{output}")


def install_ibverbs_utils() -> None:
    if is_rocky_linux():
        return

    run(["apt", "update"])
    run(["apt", "install", "-y", "ibverbs-utils"])


def combined_output(cmd: List[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None) -> str:
    """Run a command, log its combined output and raise on failure."""
    proc = subprocess.run(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        check=False,
        cwd=cwd,
        env=env,
    )
    logger.info("%s output:\n%s", " ".join(cmd), proc.stdout)
    if proc.returncode != 0:
        raise RuntimeError(f"{' '.join(cmd)} failed with rc={proc.returncode}")
    return proc.stdout


def run_rdma_client_command(cmd: List[str], cwd: Optional[str] = None, timeout: int = 1800) -> str:
    """Run a client command against the host VM, retrying until it listens."""
    target = get_real_vm_name(RDMA_HOST_NAME)
    full_cmd = cmd + [target]
    deadline = time.time() + timeout
    while True:
        proc = subprocess.run(
            full_cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
            cwd=cwd,
        )
        if proc.returncode == 0:
            logger.info("%s output:\n%s", " ".join(full_cmd), proc.stdout)
            return proc.stdout

        if f"Couldn't connect to {target}" in proc.stdout and time.time() < deadline:
            time.sleep(1)
            continue

        logger.error("%s output:\n%s", " ".join(full_cmd), proc.stdout)
        raise RuntimeError(f"{' '.join(full_cmd)} failed with rc={proc.returncode}")


def setup_perftest(*, cuda: bool) -> str:
    """Clone and build perftest, returning the build directory."""
    if command_exists("yum"):
        run(
            [
                "yum", "install", "-y", "git", "cuda-toolkit", "perftest", "libtool",
                "automake", "autoconf", "make", "libibverbs-devel", "librdmacm-devel",
                "libibumad-devel", "pciutils-devel",
            ]
        )
    elif command_exists("apt"):
        if cuda:
            run(["add-nvidia-repositories", "-y"])
        run(
            [
                "apt", "install", "-y", "git", "ibverbs-utils", "cuda-toolkit", "perftest",
                "libtool", "automake", "autoconf", "libibverbs-dev", "librdmacm-dev",
                "libibumad-dev", "libpci-dev", "make",
            ]
        )
    else:
        raise RuntimeError("unknown package manager, can't install build deps")

    os.makedirs(WORK_DIR, exist_ok=True)
    build_dir = os.path.join(WORK_DIR, "perftest")
    if not os.path.isdir(build_dir):
        combined_output(["git", "clone", "--depth=1", PERFTEST_REPO, build_dir])

    combined_output(["./autogen.sh"], cwd=build_dir)
    configure = ["./configure"]
    if cuda:
        configure = ["env", "CUDA_H_PATH=/usr/local/cuda/include/cuda.h", "./configure"]
    combined_output(configure, cwd=build_dir)
    combined_output(["make"], cwd=build_dir)
    return build_dir


def find_mpi_binary(command: str) -> str:
    """Path of an MPI command, also searching the versioned openmpi directories of Rocky Linux."""
    path = shutil.which(command)
    if path:
        return path

    matches = sorted(glob.glob(MPI_GLOB + command))
    if not matches:
        raise RuntimeError(f"could not find mpi binary {command!r} in PATH or {MPI_GLOB}")
    return matches[-1]


def parse_mpi_home(showme_output: str) -> str:
    """MPI_HOME is the parent of the first include path of `mpicc --showme`."""
    for field in showme_output.split():
        if field.startswith("-I"):
            return os.path.dirname(field[2:])

    raise ValueError(f"no include path in mpicc --showme output: {showme_output!r}")


def extract_nccl_bus_bandwidth(output: str) -> float:
    """Average bus bandwidth in GB/s from the summary of an nccl-tests run."""
    match = NCCL_BUS_BANDWIDTH.search(output)
    if match is None:
        raise ValueError(f"no average bus bandwidth found in output:\n{output}")
    return float(match.group(1))


def setup_nccl_tests() -> Dict[str, str]:
    """Build nccl and nccl-tests, returning the environment to run the tests with."""
    if command_exists("yum"):
        run(["yum", "install", "-y", "git", "gcc", "gcc-c++", "make", "cuda-toolkit"])
    elif command_exists("apt"):
        run(["add-nvidia-repositories", "-y"])
        run(["apt", "install", "-y", "git", "build-essential", "libopenmpi-dev", "cuda-toolkit"])
    else:
        raise RuntimeError("unknown package manager, can't install build deps")

    os.makedirs(WORK_DIR, exist_ok=True)
    nccl_dir = os.path.join(WORK_DIR, "nccl")
    if not os.path.isdir(nccl_dir):
        combined_output(["git", "clone", "--depth=1", NCCL_REPO, nccl_dir])
    combined_output(["make", "-j", "src.build"], cwd=nccl_dir)
    nccl_build = os.path.join(nccl_dir, "build")

    env = dict(os.environ)
    env["LD_LIBRARY_PATH"] = f"{nccl_build}/lib:{env.get('LD_LIBRARY_PATH', '')}"

    tests_dir = os.path.join(WORK_DIR, "nccl-tests")
    if not os.path.isdir(tests_dir):
        combined_output(["git", "clone", "--depth=1", NCCL_TESTS_REPO, tests_dir])
    mpi_home = parse_mpi_home(combined_output([find_mpi_binary("mpicc"), "--showme"]))
    combined_output(
        ["make", "-j8", "MPI=1", f"MPI_HOME={mpi_home}", f"NCCL_HOME={nccl_build}"],
        cwd=tests_dir,
        env=env,
    )

    env["OMPI_ALLOW_RUN_AS_ROOT"] = "1"
    env["OMPI_ALLOW_RUN_AS_ROOT_CONFIRM"] = "1"
    return env


class AcceleratorConfigValidator(Validator):
    """Validate GPU and RDMA NIC topology of accelerator machine types."""

    def _interface_name(self, index: int) -> Optional[str]:
        mac = get_metadata("instance", "network-interfaces", str(index), "mac")
        try:
            return get_interface_by_mac(mac).name
        except LookupError:
            logger.warning("no interface for NIC index %d (%s)", index, mac)
            return None

    def validate_gids(self) -> None:
        """Validate the RoCE GID table, also after rebuilding it three times."""
        if is_rocky_linux():
            show_gids = ["show_gids"]
        else:
            install_package("git")
            mlnx_tools = os.path.join(WORK_DIR, "mlnx-tools")
            os.makedirs(WORK_DIR, exist_ok=True)
            if not os.path.isdir(mlnx_tools):
                combined_output(["git", "clone", "--depth=1", MLNX_TOOLS_REPO, mlnx_tools])
            show_gids = [os.path.join(mlnx_tools, "sbin", "show_gids")]

        validate_gid_table(combined_output(show_gids))

        service = "NetworkManager.service" if is_rocky_linux() else "systemd-networkd.service"
        for _ in range(3):
            logger.info("restarting %s to trigger a GID table rebuild", service)
            run(["systemctl", "restart", service])

            deadline = time.time() + 10
            gid_table = combined_output(show_gids)
            while time.time() < deadline and f"n_gids_found={EXPECTED_GID_COUNT}" not in gid_table:
                time.sleep(0.1)
                gid_table = combined_output(show_gids)

            validate_gid_table(gid_table)

        logger.info("validate_gids OK")

    def validate_gpu_count(self) -> None:
        count = parse_attached_gpus(run(["nvidia-smi", "-x", "-q"]))
        assert count == EXPECTED_GPU_COUNT, f"got {count} GPUs, want {EXPECTED_GPU_COUNT}"
        logger.info("validate_gpu_count OK: %d", count)

    def validate_gpu_numa_mapping(self) -> None:
        """First four GPUs are on NUMA node 0, the rest on node 1."""
        for i in range(EXPECTED_GPU_COUNT):
            numa_node = Path(f"/sys/class/drm/card{i}/device/numa_node").read_text(encoding="utf-8").strip()
            logger.debug("card %d NUMA node: %s", i, numa_node)
            want = "0" if i < 4 else "1"
            assert numa_node == want, f"GPU {i} has numa node {numa_node}, want {want}"

        logger.info("validate_gpu_numa_mapping OK")

    def validate_ibv_devinfo(self) -> None:
        install_ibverbs_utils()
        devices = split_ibv_devices(run(["ibv_devinfo", "--verbose"]))
        assert len(devices) == EXPECTED_RDMA_NIC_COUNT, f"expected {EXPECTED_RDMA_NIC_COUNT} devices, got {len(devices)}"

        for i, device in enumerate(devices):
            assert "PORT_ACTIVE" in device, f"device {i} is not PORT_ACTIVE:\n{device}"
            assert "LINK_UP" in device, f"device {i} is not LINK_UP:\n{device}"

        logger.info("validate_ibv_devinfo OK: %d devices", len(devices))

    def validate_nic_count(self) -> None:
        count = count_rdma_devices(run(["rdma", "-j", "dev"]))
        assert count == EXPECTED_RDMA_NIC_COUNT, f"got {count} RDMA NICs, want {EXPECTED_RDMA_NIC_COUNT}"
        logger.info("validate_nic_count OK: %d", count)

    def validate_nic_naming(self) -> None:
        """GVNICs use predictable names, RDMA NICs the gpuXrdmaY scheme."""
        for i in range(10):
            name = self._interface_name(i)
            if name is None:
                continue

            if i < 2 or RDMA_NIC_NAME.match(name) is None:
                if i >= 2 and not (is_ubuntu(self.image) or is_rocky(self.image)):
                    raise AssertionError(f"NIC name {name!r} does not match rdma name scheme {RDMA_NIC_NAME.pattern}")
                assert PREDICTABLE_NIC_NAME.match(name), f"NIC name {name!r} does not match predictable name scheme"

        logger.info("validate_nic_naming OK")

    def validate_nic_numa_mapping(self) -> None:
        for i in range(10):
            name = self._interface_name(i)
            assert name is not None, f"no interface for NIC index {i}"
            numa_node = Path(f"/sys/class/net/{name}/device/numa_node").read_text(encoding="utf-8").strip()
            want = expected_nic_numa_node(i)
            assert numa_node == want, f"{name} (index {i}) has numa node {numa_node}, want {want}"

        logger.info("validate_nic_numa_mapping OK")

    def validate_nvidia_topology(self) -> None:
        validate_nvidia_topology(run(["nvidia-smi", "topo", "-m"]))
        logger.info("validate_nvidia_topology OK")

    def validate_pcie_topology(self) -> None:
        machine_type = get_machine_type()
        gpu_device_id = GPU_DEVICE_IDS.get(machine_type)
        if gpu_device_id is None:
            raise SkipCheck(f"unsupported machine type {machine_type}")

        lines = filter_pcie_topology(run(["lspci", "-tv", "-n"]), gpu_device_id)
        validate_pcie_topology(lines, gpu_device_id)
        logger.info("validate_pcie_topology OK")


class RdmaValidator(Validator):
    """RDMA traffic checks run pairwise between the rdmahost and rdmaclient VMs."""

    def _gpudirect_args(self) -> List[str]:
        args = ["--report_gbits", "--use_cuda=0", "--all", "--qp=200"]
        if "rocky-linux-8" in self.image:
            run(["modprobe", "nvidia-peermem"])
        else:
            args.append("--use_cuda_dmabuf")
        return args

    def validate_gpudirect_rdma_client(self) -> None:
        build_dir = setup_perftest(cuda=True)
        run_rdma_client_command(["./ib_write_bw"] + self._gpudirect_args(), cwd=build_dir)
        logger.info("validate_gpudirect_rdma_client OK")

    def validate_gpudirect_rdma_host(self) -> None:
        build_dir = setup_perftest(cuda=True)
        combined_output(["./ib_write_bw"] + self._gpudirect_args(), cwd=build_dir)
        logger.info("validate_gpudirect_rdma_host OK")

    def validate_ib_write_bw_client(self) -> None:
        install_ibverbs_utils()
        build_dir = setup_perftest(cuda=False)
        nics = find_rdma_nics(run(["ibv_devinfo", "--list"]))
        for nic in nics:
            args = ["./ib_write_bw"] + IB_WRITE_BW_ARGS + [f"--ib-dev={nic}"]
            # The first run warms up the link, only the second one is measured.
            run_rdma_client_command(args, cwd=build_dir)
            bandwidth = extract_perftest_average_bandwidth(run_rdma_client_command(args, cwd=build_dir))
            logger.info("average bandwidth for device %s: %.2f gbps", nic, bandwidth)
            assert (
                bandwidth >= EXPECTED_MIN_BANDWIDTH_GBPS
            ), f"average bandwidth for {nic} is {bandwidth} gbps, below {EXPECTED_MIN_BANDWIDTH_GBPS} gbps (80% of {LINE_RATE_GBPS} gbps)"

        logger.info("validate_ib_write_bw_client OK")

    def validate_ib_write_bw_host(self) -> None:
        install_ibverbs_utils()
        build_dir = setup_perftest(cuda=False)
        for nic in find_rdma_nics(run(["ibv_devinfo", "--list"])):
            for _ in range(2):
                combined_output(["./ib_write_bw"] + IB_WRITE_BW_ARGS + [f"--ib-dev={nic}"], cwd=build_dir)

        logger.info("validate_ib_write_bw_host OK")

    def validate_rdma_network_client(self) -> None:
        install_ibverbs_utils()
        run_rdma_client_command(["ibv_rc_pingpong"] + PING_PONG_ARGS)
        logger.info("validate_rdma_network_client OK")

    def validate_rdma_network_host(self) -> None:
        install_ibverbs_utils()
        combined_output(["ibv_rc_pingpong"] + PING_PONG_ARGS)
        logger.info("validate_rdma_network_host OK")

    def validate_write_with_immediate_client(self) -> None:
        build_dir = setup_perftest(cuda=False)
        run_rdma_client_command(["./ib_write_lat"] + WRITE_WITH_IMMEDIATE_ARGS, cwd=build_dir)
        logger.info("validate_write_with_immediate_client OK")

    def validate_write_with_immediate_host(self) -> None:
        build_dir = setup_perftest(cuda=False)
        combined_output(["./ib_write_lat"] + WRITE_WITH_IMMEDIATE_ARGS, cwd=build_dir)
        logger.info("validate_write_with_immediate_host OK")


class NcclValidator(Validator):
    """NCCL collectives over all GPUs of the VM."""

    def validate_nccl(self) -> None:
        env = setup_nccl_tests()
        tests_dir = os.path.join(WORK_DIR, "nccl-tests")
        mpirun = find_mpi_binary("mpirun")

        failed = []
        for test in NCCL_TESTS:
            cmd = [mpirun] + MPI_ARGS + [f"./build/{test}"] + NCCL_TEST_ARGS
            try:
                bandwidth = extract_nccl_bus_bandwidth(combined_output(cmd, cwd=tests_dir, env=env))
            except (RuntimeError, ValueError) as error:
                logger.error("%s failed: %s", test, error)
                failed.append(test)
                continue

            logger.info("%s average bus bandwidth: %.2f GB/s", test, bandwidth)
            if bandwidth <= 0:
                failed.append(test)

        assert not failed, f"NCCL tests failed: {failed}"
        logger.info("validate_nccl OK")
