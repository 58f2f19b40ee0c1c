"""Cross-run "best of" scorecard with tie tracking."""

import logging
import math
import threading
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping

from ifspeedtest.models import RunResult

logger = logging.getLogger(__name__)


class MetricKind(Enum):
    MIN_LATENCY = "min_latency"
    MIN_HOPS = "min_hops"
    MAX_UPLOAD = "max_upload"
    MAX_DOWNLOAD = "max_download"


# Display precision; ties are decided on the rounded display value.
DISPLAY_DIGITS = {
    MetricKind.MIN_LATENCY: 3,
    MetricKind.MIN_HOPS: 0,
    MetricKind.MAX_UPLOAD: 2,
    MetricKind.MAX_DOWNLOAD: 2,
}
LOWER_IS_BETTER = frozenset({MetricKind.MIN_LATENCY, MetricKind.MIN_HOPS})


@dataclass(frozen=True)
class ScorecardEntry:
    """Current best for one metric.

    ``ties`` holds ``(interface label, target address)`` pairs in the order
    they reached the best display value.
    """

    kind: MetricKind
    best_value: float
    ties: tuple[tuple[str, str], ...]

    @property
    def display_value(self) -> float:
        return round(self.best_value, DISPLAY_DIGITS[self.kind])


def _usable(value: float | None) -> bool:
    return value is not None and math.isfinite(value) and value > 0


class ScorecardAggregator:
    """Folds RunResults into best-of-four metrics.

    fold() is the only writer and holds a lock, so folding from worker
    threads is safe. Readers get an immutable snapshot.
    """

    def __init__(self):
        self._entries: dict[MetricKind, ScorecardEntry] = {}
        self._notes: dict[str, str] = {}
        self._runs = 0
        self._lock = threading.Lock()

    @property
    def run_count(self) -> int:
        """Runs folded so far, including runs with no usable metric."""
        return self._runs

    def should_render(self) -> bool:
        """Only worth printing when more than one run was compared."""
        return self._runs > 1

    def fold(self, run: RunResult) -> None:
        """Offer every usable metric of ``run`` to the scorecard."""
        who = (run.binding.label, run.target.address)
        candidates = self._candidates(run)
        with self._lock:
            self._runs += 1
            if run.target.note:
                self._notes.setdefault(run.target.address, run.target.note)
            for kind, value in candidates.items():
                self._offer(kind, value, who)

    def snapshot(self) -> Mapping[MetricKind, ScorecardEntry]:
        """Read-only view of the current best entries.

        Returns:
            Mapping from MetricKind to its ScorecardEntry; kinds nobody
            offered a usable value for are absent
        """
        with self._lock:
            return MappingProxyType(dict(self._entries))

    def note_for(self, address: str) -> str:
        """First targets-file note seen for ``address``, or ""."""
        with self._lock:
            return self._notes.get(address, "")

    @staticmethod
    def _candidates(run: RunResult) -> dict[MetricKind, float]:
        candidates: dict[MetricKind, float] = {}
        baseline = run.baseline
        if baseline is not None and _usable(baseline.avg_ms):
            candidates[MetricKind.MIN_LATENCY] = baseline.avg_ms
            # Hops only count for a path that actually reached the target.
            if (
                baseline.destination_reached
                and baseline.loss_pct is not None
                and baseline.loss_pct < 100
                and baseline.hops
            ):
                candidates[MetricKind.MIN_HOPS] = float(baseline.hops)
        if run.upload is not None and _usable(run.upload.mbps):
            candidates[MetricKind.MAX_UPLOAD] = run.upload.mbps
        if run.download is not None and _usable(run.download.mbps):
            candidates[MetricKind.MAX_DOWNLOAD] = run.download.mbps
        return candidates

    def _offer(self, kind: MetricKind, value: float, who: tuple[str, str]) -> None:
        current = self._entries.get(kind)
        digits = DISPLAY_DIGITS[kind]

        if current is not None and round(value, digits) == round(current.best_value, digits):
            self._entries[kind] = ScorecardEntry(kind, current.best_value, current.ties + (who,))
            logger.debug("Scorecard tie: kind=%s, value=%s, who=%s", kind.value, value, who)
            return

        if current is None or self._better(kind, value, current.best_value):
            self._entries[kind] = ScorecardEntry(kind, value, (who,))
            logger.debug("Scorecard best: kind=%s, value=%s, who=%s", kind.value, value, who)

    @staticmethod
    def _better(kind: MetricKind, value: float, best: float) -> bool:
        return value < best if kind in LOWER_IS_BETTER else value > best
