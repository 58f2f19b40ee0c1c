"""Data models for ifspeedtest measurements."""

import math
from dataclasses import dataclass, field
from enum import Enum

from ifspeedtest.errors import FailureKind


class Direction(Enum):
    """Throughput test direction."""

    UPLOAD = "upload"
    DOWNLOAD = "download"

    @property
    def role(self) -> str:
        """iperf3 summary role holding the figure for this direction."""
        return "sender" if self is Direction.UPLOAD else "receiver"


@dataclass(frozen=True)
class ProbeFailure:
    """A classified, human-readable reason for a failed probe."""

    kind: FailureKind
    reason: str


@dataclass(frozen=True)
class Target:
    """A resolved probe target. Immutable once resolved."""

    raw: str
    address: str
    family: int  # 4 or 6
    label: str
    note: str = ""
    reverse_name: str | None = None


@dataclass(frozen=True)
class EgressBinding:
    """Egress interface binding for one (target, interface) run.

    ``source_address`` is None when the run is unbound (default route).
    ``device`` is None when the latency probe must not be pinned to a device.
    """

    requested: str | None
    device: str | None
    source_address: str | None
    label: str
    warnings: tuple[str, ...] = ()

    @property
    def unbound(self) -> bool:
        return self.source_address is None


def _positive(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


@dataclass
class LatencyMetrics:
    """Latency probe summary for the hop matching the probed target.

    None marks a metric as unavailable. The RTT fields are only kept when the
    whole record is valid: destination reached, probes sent, loss below 100%
    and strictly positive best/avg/worst. Otherwise best/avg/worst/jitter are
    forced to None while hops and loss stay, since they explain the failure.
    """

    best_ms: float | None = None
    avg_ms: float | None = None
    worst_ms: float | None = None
    jitter_ms: float | None = None
    hops: int | None = None
    loss_pct: float | None = None
    sent: int = 0
    destination_reached: bool = False
    failure: ProbeFailure | None = None

    def __post_init__(self):
        """Collapse RTT fields when the record violates the validity rules."""
        if not self._rtt_valid():
            self.best_ms = None
            self.avg_ms = None
            self.worst_ms = None
            self.jitter_ms = None

    def _rtt_valid(self) -> bool:
        if not self.destination_reached or self.sent <= 0:
            return False
        if self.loss_pct is None or not math.isfinite(self.loss_pct) or self.loss_pct >= 100:
            return False
        return all(_positive(v) for v in (self.best_ms, self.avg_ms, self.worst_ms))

    @property
    def is_valid(self) -> bool:
        """True when the RTT metrics survived validation."""
        return self.avg_ms is not None

    @classmethod
    def unavailable(cls, failure: ProbeFailure | None = None) -> "LatencyMetrics":
        """Build a record where every metric is unavailable."""
        return cls(failure=failure)


@dataclass
class ThroughputResult:
    """Outcome of one throughput direction after port fallback."""

    direction: Direction
    mbps: float | None = None
    port: int | None = None  # None means the tool's default port
    failure: ProbeFailure | None = None
    failed_ports: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not _positive(self.mbps):
            self.mbps = None

    @property
    def available(self) -> bool:
        """True when a positive throughput figure was measured."""
        return self.mbps is not None


def delta_ms(baseline: float | None, loaded: float | None) -> float | None:
    """Return ``loaded - baseline`` when both operands are numbers, else None."""
    if baseline is None or loaded is None:
        return None
    return round(loaded - baseline, 3)


@dataclass
class RunResult:
    """Everything measured for one (target, interface) pair."""

    target: Target
    binding: EgressBinding
    baseline: LatencyMetrics | None = None
    upload: ThroughputResult | None = None
    download: ThroughputResult | None = None
    upload_load: LatencyMetrics | None = None
    download_load: LatencyMetrics | None = None
    notices: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def throughput(self, direction: Direction) -> ThroughputResult | None:
        """Throughput outcome for ``direction``; None when iperf3 was not run."""
        return self.upload if direction is Direction.UPLOAD else self.download

    def load_metrics(self, direction: Direction) -> LatencyMetrics | None:
        """Latency measured while ``direction`` was under load; None when not measured."""
        return self.upload_load if direction is Direction.UPLOAD else self.download_load

    def delta_latency(self, direction: Direction) -> float | None:
        """Latency increase under load (bufferbloat indicator)."""
        loaded = self.load_metrics(direction)
        if self.baseline is None or loaded is None:
            return None
        return delta_ms(self.baseline.avg_ms, loaded.avg_ms)

    def delta_jitter(self, direction: Direction) -> float | None:
        """Jitter increase under load."""
        loaded = self.load_metrics(direction)
        if self.baseline is None or loaded is None:
            return None
        return delta_ms(self.baseline.jitter_ms, loaded.jitter_ms)
