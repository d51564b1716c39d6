# --------------------------------------------------------------------------
# Copyright (c) Microsoft Corporation. All rights reserved.
# Licensed under the MIT License. See LICENSE in the project root for license information.
# --------------------------------------------------------------------------

import pytest

from .networkperf import extract_iperf_result


def test_extract_iperf_result():
    assert extract_iperf_result("[SUM] 0.0000-30.0 sec 34.5 GBytes 9.87 Gbits/sec") == pytest.approx(9.87)


@pytest.mark.parametrize(
    "raw_result",
    [
        "[SUM] 0.0000-30.0 sec 3.45 GBytes 987 Mbits/sec",
        "[SUM] 0.0000-30.0 sec",
        "",
    ],
)
def test_extract_iperf_result_invalid(raw_result):
    with pytest.raises(ValueError):
        extract_iperf_result(raw_result)
