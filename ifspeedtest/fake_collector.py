"""Simulated mtr/iperf3 probes for ifspeedtest testing and demos.

The fake produces text in the same shapes the real tools print and feeds it
through the real parsers, so everything downstream of the process boundary
is exercised without spawning probes. Selected with IFSPEEDTEST_COLLECTOR=fake.
"""

import random
import shlex

from ifspeedtest.config import Settings
from ifspeedtest.models import Direction, EgressBinding, LatencyMetrics, Target
from ifspeedtest.parsing import parse_latency

REPORT_HEADER = "HOST: {host:<40} Loss%   Snt   Last   Avg  Best  Wrst StDev"
CONNECT_ERROR = "iperf3: error - unable to connect to server - server may have stopped running or use a different port, firewall issue, etc.: Connection refused"


class FakeProbe:
    """Finished-on-arrival probe handle holding canned output."""

    def __init__(self, command: list[str], output: str, returncode: int = 0):
        self.command = command
        self.output = output
        self.returncode = returncode
        self.stopped = False
        self.stop_grace: float | None = None
        self.released = False

    def wait(self, timeout: float | None = None, message: str | None = None) -> int:
        return self.returncode

    def stop(self, grace: float = 2.0) -> None:
        self.stopped = True
        self.stop_grace = grace

    def read_output(self) -> str:
        return self.output

    def release(self) -> None:
        self.released = True


class FakeCollector:
    """Generates realistic probe output for testing.

    Implements both the latency and the throughput collector protocols.
    """

    def __init__(self, seed: int | None = None, settings: Settings | None = None):
        """Initialize with optional random seed for deterministic behavior."""
        self._random = random.Random(seed)
        self.settings = settings if settings is not None else Settings()

        # Simulation parameters
        self.base_latency = 25.0  # Idle RTT in ms
        self.latency_variance = 3.0
        self.load_penalty = 20.0  # Extra RTT while a throughput test runs
        self.hop_count = 8
        self.base_mbps = 500.0
        self.mbps_variance = 50.0
        self.failing_ports: set[int] = set()
        self.unreachable: set[str] = set()

    @property
    def timeout(self) -> float:
        return float(self.settings.iperf_time)

    def mtr_report(self, address: str, count: int, extra_ms: float = 0.0) -> str:
        """Render an ``mtr -r -w -n`` report towards ``address``."""
        lines = ["Start: 2026-01-01T00:00:00+0000", REPORT_HEADER.format(host="fake")]
        six = ":" in address
        for hop in range(1, self.hop_count + 1):
            last = hop == self.hop_count
            host = address if last else (f"2001:db8::{hop}" if six else f"10.0.{hop}.1")
            if last and address in self.unreachable:
                host = "???"
                lines.append(self._row(hop, host, 100.0, count, 0.0, 0.0, 0.0, 0.0))
                continue
            rtt = (self.base_latency + extra_ms) * hop / self.hop_count
            best = max(0.1, rtt - abs(self._random.gauss(0, self.latency_variance)))
            worst = rtt + abs(self._random.gauss(0, self.latency_variance))
            avg = (best + worst) / 2
            stdev = (worst - best) / 4
            lines.append(self._row(hop, host, 0.0, count, avg, avg, best, worst, stdev))
        return "\n".join(lines) + "\n"

    @staticmethod
    def _row(hop, host, loss, sent, last, avg, best, worst, stdev=0.0) -> str:
        return (
            f"{hop:>3}.|-- {host:<40} {loss:5.1f}% {sent:5d} {last:6.1f} "
            f"{avg:6.1f} {best:6.1f} {worst:6.1f} {stdev:6.1f}"
        )

    def iperf_report(self, address: str, port: int | None, mbps: float) -> str:
        """Render ``iperf3 -f m`` client output with per-stream and SUM lines."""
        streams = max(1, self.settings.iperf_parallel)
        duration = self.settings.iperf_time
        lines = [f"Connecting to host {address}, port {port or 5201}"]
        lines.append("- - - - - - - - - - - - - - - - - - - - - - - - -")
        lines.append("[ ID] Interval           Transfer     Bitrate         Retr")
        per_stream = mbps / streams
        for stream in range(streams):
            sid = 5 + 2 * stream
            lines.append(self._iperf_line(f"[{sid:3d}]", duration, per_stream, "sender"))
            lines.append(self._iperf_line(f"[{sid:3d}]", duration, per_stream * 0.99, "receiver"))
        if streams > 1:
            lines.append(self._iperf_line("[SUM]", duration, mbps, "sender"))
            lines.append(self._iperf_line("[SUM]", duration, mbps * 0.99, "receiver"))
        lines.extend(["", "iperf Done."])
        return "\n".join(lines) + "\n"

    @staticmethod
    def _iperf_line(tag: str, duration: int, mbps: float, role: str) -> str:
        mbytes = mbps * duration / 8
        return f"{tag}   0.00-{duration:.2f}  sec  {mbytes:7.1f} MBytes  {mbps:7.2f} Mbits/sec    0   {role}"

    # LatencyCollector

    def measure(self, target: Target, binding: EgressBinding) -> LatencyMetrics:
        output = self.mtr_report(target.address, self.settings.mtr_count)
        return self.parse(output, target)

    def start_load(self, target: Target, binding: EgressBinding, count: int) -> FakeProbe:
        command = ["mtr", "-r", "-w", "-n", "-c", str(count), target.address]
        return FakeProbe(command, self.mtr_report(target.address, count, self.load_penalty))

    def load_timeout(self, count: int) -> float:
        return count * self.settings.mtr_interval

    def parse(self, output: str, target: Target) -> LatencyMetrics:
        return parse_latency(output, target.address, system="Linux")

    # ThroughputCollector

    def start(
        self,
        target: Target,
        binding: EgressBinding,
        direction: Direction,
        port: int | None,
    ) -> FakeProbe:
        command = shlex.split(f"iperf3 -c {target.address} -f m -t {self.settings.iperf_time}")
        if direction is Direction.DOWNLOAD:
            command.append("-R")
        if port is not None:
            command += ["-p", str(port)]

        if port in self.failing_ports or target.address in self.unreachable:
            return FakeProbe(command, CONNECT_ERROR + "\n", returncode=1)

        mbps = max(1.0, self._random.gauss(self.base_mbps, self.mbps_variance))
        return FakeProbe(command, self.iperf_report(target.address, port, round(mbps, 2)))
