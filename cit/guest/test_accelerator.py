# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import json

import pytest

from .accelerator import (
    NIC_DEVICE_ID,
    count_rdma_devices,
    expected_nic_numa_node,
    extract_nccl_bus_bandwidth,
    extract_perftest_average_bandwidth,
    filter_pcie_topology,
    find_mpi_binary,
    find_rdma_nics,
    parse_attached_gpus,
    parse_mpi_home,
    split_ibv_devices,
    validate_gid_table,
    validate_nvidia_topology,
    validate_pcie_topology,
)

GPU_DEVICE_ID = "10de:2901"

IB_WRITE_BW_OUTPUT = """
---------------------------------------------------------------------------------------
                    RDMA_Write BW Test
 Dual-port       : OFF          Device         : mlx5_0
---------------------------------------------------------------------------------------
 #bytes     #iterations    BW peak[Gb/sec]    BW average[Gb/sec]   MsgRate[Mpps]
 65536      10000            391.42             390.87               0.745528
---------------------------------------------------------------------------------------
"""


def gid_table(indexes_per_device=4, devices=8):
    lines = ["DEV\tPORT\tINDEX\tGID\t\t\t\t\tIPv4  \t\tVER\tDEV", "---\t----\t-----\t---"]
    for device in range(devices):
        for index in range(indexes_per_device):
            lines.append(f"mlx5_{device}\t1\t{index}\tfe80:0000:0000:0000:0000:0000:0000:0001\t\tv1\tgpu{device}rdma0")
    lines.append(f"n_gids_found={indexes_per_device * devices}")
    return "\n".join(lines)


def topology(links="NV18"):
    header = "\t" + "\t".join(f"GPU{i}" for i in range(8)) + "\tCPU Affinity\tNUMA Affinity"
    rows = [header]
    for i in range(8):
        cells = ["X" if i == j else links for j in range(8)]
        rows.append(f"GPU{i}\t" + "\t".join(cells) + "\t0-55\t0")
    rows.append("")
    rows.append("Legend:")
    return "\n".join(rows)


def test_parse_attached_gpus():
    xml_output = "<?xml version=\"1.0\" ?><nvidia_smi_log><attached_gpus>8</attached_gpus></nvidia_smi_log>"
    assert parse_attached_gpus(xml_output) == 8


def test_parse_attached_gpus_missing():
    with pytest.raises(AssertionError):
        parse_attached_gpus("<nvidia_smi_log></nvidia_smi_log>")


def test_count_rdma_devices():
    devices = [{"ifindex": i, "ifname": f"mlx5_{i}"} for i in range(8)]
    devices.append({"ifname": "unbound"})
    assert count_rdma_devices(json.dumps(devices)) == 8


@pytest.mark.parametrize(
    "index,node",
    [(0, "0"), (1, "1"), (2, "0"), (5, "0"), (6, "1"), (9, "1")],
)
def test_expected_nic_numa_node(index, node):
    assert expected_nic_numa_node(index) == node


def test_split_ibv_devices():
    output = "hca_id:\tmlx5_0\n\tport: 1\nhca_id:\tmlx5_1\n\tport: 1\n"
    devices = split_ibv_devices(output)
    assert len(devices) == 2
    assert "mlx5_0" in devices[0]
    assert "mlx5_1" in devices[1]


def test_validate_gid_table():
    validate_gid_table(gid_table())


def test_validate_gid_table_wrong_count():
    with pytest.raises(AssertionError):
        validate_gid_table(gid_table(devices=7))


def test_validate_gid_table_index_out_of_range():
    with pytest.raises(AssertionError):
        validate_gid_table(gid_table(indexes_per_device=5, devices=8).replace("n_gids_found=40", "n_gids_found=32"))


def test_pcie_topology():
    lspci = []
    for _ in range(4):
        lspci += [
            f" +-01.0-[01]----00.0  NVIDIA Corporation Device [{GPU_DEVICE_ID}]",
            f" +-02.0-[02]----00.0  NVIDIA Corporation Device [{GPU_DEVICE_ID}]",
            f" +-03.0-[03]----00.0  Mellanox Technologies MT2910 [{NIC_DEVICE_ID}]",
            f" +-04.0-[04]----00.0  Mellanox Technologies MT2910 [{NIC_DEVICE_ID}]",
            " +-05.0  Intel Corporation Device [8086:0b25]",
        ]

    lines = filter_pcie_topology("\n".join(lspci), GPU_DEVICE_ID)
    assert len(lines) == 16
    validate_pcie_topology(lines, GPU_DEVICE_ID)


def test_pcie_topology_wrong_order():
    lines = [f"[{GPU_DEVICE_ID}]", f"[{NIC_DEVICE_ID}]", f"[{GPU_DEVICE_ID}]", f"[{NIC_DEVICE_ID}]"] * 4
    with pytest.raises(AssertionError):
        validate_pcie_topology(lines, GPU_DEVICE_ID)


def test_validate_nvidia_topology():
    validate_nvidia_topology(topology())


def test_validate_nvidia_topology_without_nvlink():
    with pytest.raises(AssertionError):
        validate_nvidia_topology(topology(links="SYS"))


def test_find_rdma_nics():
    listing = "    device                 node GUID\n    ------              ----------------\n"
    listing += "\n".join(f"    mlx5_{i}              0000000000000000" for i in range(8))
    assert find_rdma_nics(listing) == [f"mlx5_{i}              0000000000000000" for i in range(8)]


def test_find_rdma_nics_missing():
    with pytest.raises(AssertionError):
        find_rdma_nics("    mlx5_0    0000000000000000\n")


def test_extract_perftest_average_bandwidth():
    assert extract_perftest_average_bandwidth(IB_WRITE_BW_OUTPUT) == pytest.approx(390.87)


def test_extract_perftest_average_bandwidth_no_result():
    with pytest.raises(ValueError):
        extract_perftest_average_bandwidth("Couldn't connect to rdmahost\n")


NCCL_ALL_REDUCE_OUTPUT = """
# nThread 1 nGpus 1 minBytes 8 maxBytes 8589934592 step: 2(factor) warmup iters: 5 iters: 20 agg iters: 1 validation: 1 graph: 0
#
#                                                              out-of-place                       in-place
#       size         count      type   redop    root     time   algbw   busbw #wrong     time   algbw   busbw #wrong
#        (B)    (elements)                               (us)  (GB/s)  (GB/s)            (us)  (GB/s)  (GB/s)
  8589934592    2147483648     float     sum      -1    48211  178.17  311.80      0    48190  178.25  311.94      0
# Out of bounds values : 0 OK
# Avg bus bandwidth    : 103.527 
#
"""


def test_extract_nccl_bus_bandwidth():
    assert extract_nccl_bus_bandwidth(NCCL_ALL_REDUCE_OUTPUT) == pytest.approx(103.527)


def test_extract_nccl_bus_bandwidth_no_summary():
    with pytest.raises(ValueError):
        extract_nccl_bus_bandwidth("NCCL WARN Cuda failure 'no CUDA-capable device is detected'\n")


def test_parse_mpi_home():
    showme = "gcc -I/usr/lib/x86_64-linux-gnu/openmpi/include -pthread -L/usr/lib/x86_64-linux-gnu/openmpi/lib -lmpi"
    assert parse_mpi_home(showme) == "/usr/lib/x86_64-linux-gnu/openmpi"


def test_parse_mpi_home_without_include():
    with pytest.raises(ValueError):
        parse_mpi_home("gcc -pthread -lmpi")


def test_find_mpi_binary_in_path(monkeypatch):
    monkeypatch.setattr("cit.guest.accelerator.shutil.which", lambda command: f"/usr/bin/{command}")
    assert find_mpi_binary("mpirun") == "/usr/bin/mpirun"


def test_find_mpi_binary_versioned_openmpi(monkeypatch):
    monkeypatch.setattr("cit.guest.accelerator.shutil.which", lambda command: None)
    monkeypatch.setattr(
        "cit.guest.accelerator.glob.glob",
        lambda pattern: [pattern.replace("*", "4.1.7a1"), pattern.replace("*", "4.1.5")],
    )
    assert find_mpi_binary("mpirun") == "/usr/mpi/gcc/openmpi-4.1.7a1/bin/mpirun"


def test_find_mpi_binary_missing(monkeypatch):
    monkeypatch.setattr("cit.guest.accelerator.shutil.which", lambda command: None)
    monkeypatch.setattr("cit.guest.accelerator.glob.glob", lambda pattern: [])
    with pytest.raises(RuntimeError):
        find_mpi_binary("mpicc")
