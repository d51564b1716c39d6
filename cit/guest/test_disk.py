# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .disk import get_root_disk, write_and_read_back


def fake_run(outputs):
    """Stand in for run(), answering each command from outputs by its first word."""
    calls = []

    def _run(cmd):
        calls.append(cmd)
        return outputs[cmd[0]]

    return _run, calls


@pytest.mark.parametrize(
    "source,parent,root_disk",
    [
        ("/dev/sda1\n", "sda\n", "/dev/sda"),
        ("/dev/nvme0n1p2\n", "nvme0n1\n", "/dev/nvme0n1"),
        ("/dev/sda2\n", "sda\n", "/dev/sda"),
        ("/dev/mapper/rootvg-root\n", "\n", "/dev/mapper/rootvg-root"),
    ],
)
def test_get_root_disk(monkeypatch, source, parent, root_disk):
    run, calls = fake_run({"findmnt": source, "lsblk": parent})
    monkeypatch.setattr("cit.guest.disk.run", run)

    assert get_root_disk() == root_disk
    assert calls == [
        ["findmnt", "-n", "-o", "SOURCE", "--nofsroot", "/"],
        ["lsblk", "-n", "-o", "PKNAME", source.strip()],
    ]


def test_write_and_read_back(tmp_path):
    path = tmp_path / "file.txt"
    write_and_read_back(str(path), "disk read write test\n")
    assert path.read_text(encoding="utf-8") == "disk read write test\n"
