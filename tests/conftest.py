"""Shared fixtures and scripted probes for ifspeedtest tests."""

import pytest

from ifspeedtest.fake_collector import FakeProbe
from ifspeedtest.models import Direction, EgressBinding, LatencyMetrics, Target
from ifspeedtest.parsing import parse_latency
from ifspeedtest.runlog import RunLog

MTR_TABLE = """\
Start: 2026-10-17T10:00:00+0000
HOST: probe-host                  Loss%   Snt   Last   Avg  Best  Wrst StDev
  1.|-- 10.0.0.1                   0.0%    10    1.1   1.2   0.9   1.6   0.2
  2.|-- 203.0.113.1                0.0%    10    8.3   8.1   7.9   8.6   0.2
  3.|-- 192.0.2.10                 0.0%    10   12.1  12.0  11.5  12.9   0.4
"""

MTR_TABLE_UNDER_LOAD = """\
Start: 2026-10-17T10:00:05+0000
HOST: probe-host                  Loss%   Snt   Last   Avg  Best  Wrst StDev
  1.|-- 10.0.0.1                   0.0%    10    3.1   3.2   0.9   9.6   2.2
  2.|-- 203.0.113.1                0.0%    10   28.3  30.1   7.9  48.6   9.2
  3.|-- 192.0.2.10                 0.0%    10   44.1  45.5  11.5  70.9  12.4
"""

IPERF_OK = """\
Connecting to host 192.0.2.10, port 5202
[  5] local 10.0.0.2 port 50100 connected to 192.0.2.10 port 5202
[  7] local 10.0.0.2 port 50101 connected to 192.0.2.10 port 5202
- - - - - - - - - - - - - - - - - - - - - - - - -
[ ID] Interval           Transfer     Bitrate         Retr
[  5]   0.00-10.00  sec   560 MBytes   470.00 Mbits/sec    0             sender
[  5]   0.00-10.00  sec   558 MBytes   468.00 Mbits/sec                  receiver
[  7]   0.00-10.00  sec   561 MBytes   471.00 Mbits/sec    0             sender
[  7]   0.00-10.00  sec   559 MBytes   469.00 Mbits/sec                  receiver
[SUM]   0.00-10.00  sec  1121 MBytes   941.00 Mbits/sec    0             sender
[SUM]   0.00-10.00  sec  1117 MBytes   937.00 Mbits/sec                  receiver

iperf Done.
"""

IPERF_REFUSED = (
    "iperf3: error - unable to connect to server - server may have stopped running "
    "or use a different port, firewall issue, etc.: Connection refused\n"
)


def make_target(address: str = "192.0.2.10", note: str = "") -> Target:
    return Target(raw=address, address=address, family=4, label=address, note=note)


def make_binding(label: str = "default") -> EgressBinding:
    return EgressBinding(requested=None, device=None, source_address=None, label=label)


class ScriptedThroughput:
    """ThroughputCollector returning canned output per port."""

    def __init__(self, outputs: dict, default=(IPERF_OK, 0)):
        self.outputs = outputs
        self.default = default
        self.started: list[tuple[Direction, int | None]] = []
        self.handles: list[FakeProbe] = []

    @property
    def timeout(self) -> float:
        return 1.0

    def start(self, target, binding, direction, port):
        self.started.append((direction, port))
        output, returncode = self.outputs.get(port, self.default)
        command = ["iperf3", "-c", target.address] + ([] if port is None else ["-p", str(port)])
        handle = FakeProbe(command, output, returncode)
        self.handles.append(handle)
        return handle


class ScriptedLatency:
    """LatencyCollector with a canned baseline and canned load output."""

    def __init__(self, baseline_output: str = MTR_TABLE, load_output: str = MTR_TABLE_UNDER_LOAD):
        self.baseline_output = baseline_output
        self.load_output = load_output
        self.loads: list[FakeProbe] = []

    def measure(self, target, binding) -> LatencyMetrics:
        return self.parse(self.baseline_output, target)

    def start_load(self, target, binding, count):
        handle = FakeProbe(["mtr", "-c", str(count), target.address], self.load_output)
        self.loads.append(handle)
        return handle

    def load_timeout(self, count: int) -> float:
        return float(count)

    def parse(self, output, target) -> LatencyMetrics:
        return parse_latency(output, target.address, system="Linux")


@pytest.fixture
def target() -> Target:
    return make_target()


@pytest.fixture
def binding() -> EgressBinding:
    return make_binding()


@pytest.fixture
def run_log() -> RunLog:
    """Disabled run log."""
    return RunLog()


@pytest.fixture
def file_run_log(tmp_path) -> RunLog:
    return RunLog(tmp_path / "run.log")
