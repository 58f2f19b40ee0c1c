"""Collector abstraction for ifspeedtest probes.

The orchestration code only talks to these protocols, so the real mtr/iperf3
collectors and the simulated ones in fake_collector are interchangeable.
"""

from typing import Protocol

from ifspeedtest.models import Direction, EgressBinding, LatencyMetrics, Target


class ProbeHandle(Protocol):
    """A probe running in the background."""

    command: list[str]

    def wait(self, timeout: float | None = None, message: str | None = None) -> int:
        """Block until exit; raise subprocess.TimeoutExpired after ``timeout``."""
        ...

    def stop(self, grace: float = 2.0) -> None:
        """Terminate the probe and anything it spawned."""
        ...

    def read_output(self) -> str:
        """Combined stdout/stderr produced so far."""
        ...

    def release(self) -> None:
        """Drop the captured output once it has been read and logged."""
        ...


class LatencyCollector(Protocol):
    """Path latency probe (mtr)."""

    def measure(self, target: Target, binding: EgressBinding) -> LatencyMetrics:
        """Run an idle baseline probe to completion."""
        ...

    def start_load(self, target: Target, binding: EgressBinding, count: int) -> ProbeHandle:
        """Start a background probe of ``count`` cycles to run under load."""
        ...

    def load_timeout(self, count: int) -> float:
        """Upper bound for waiting on a load probe of ``count`` cycles."""
        ...

    def parse(self, output: str, target: Target) -> LatencyMetrics:
        """Normalize raw probe output."""
        ...


class ThroughputCollector(Protocol):
    """Bandwidth probe (iperf3)."""

    @property
    def timeout(self) -> float:
        """Upper bound for one throughput attempt."""
        ...

    def start(
        self,
        target: Target,
        binding: EgressBinding,
        direction: Direction,
        port: int | None,
    ) -> ProbeHandle:
        """Start a throughput test; ``port`` None uses the server default."""
        ...
