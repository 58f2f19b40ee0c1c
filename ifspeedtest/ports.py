"""Throughput port fallback.

A port spec is ``N``, ``A-B`` (inclusive) or a comma separated list of
either, e.g. ``5201-5203,5300``. Candidates are tried strictly in spec order
until one attempt yields a usable throughput figure; a load latency probe
runs next to every attempt so a failed port never stalls the next one.
"""

import logging
import subprocess
from dataclasses import dataclass, field

from ifspeedtest.collector import LatencyCollector, ProbeHandle, ThroughputCollector
from ifspeedtest.errors import FailureKind, ToolNotFound
from ifspeedtest.models import (
    Direction,
    EgressBinding,
    LatencyMetrics,
    ProbeFailure,
    Target,
    ThroughputResult,
)
from ifspeedtest.parsing import classify_throughput_failure, parse_throughput_mbps
from ifspeedtest.runlog import RunLog

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


def _port(token: str, spec: str) -> int:
    if not token.isdigit():
        raise ValueError(f"invalid port '{token}' in port spec '{spec}'")
    value = int(token)
    if not MIN_PORT <= value <= MAX_PORT:
        raise ValueError(f"port out of range ({MIN_PORT}-{MAX_PORT}): {value}")
    return value


def expand_port_spec(spec: str | None) -> list[int]:
    """Expand a port spec into concrete ports, in order.

    Args:
        spec: e.g. ``"5201"``, ``"5201-5203"`` or ``"5201,5300-5301"``.
            Whitespace is ignored. Empty means the tool default.

    Returns:
        Ports in the order given. Empty list for an empty spec.

    Raises:
        ValueError: on bad tokens, out-of-range ports or inverted ranges
    """
    compact = "".join((spec or "").split())
    if not compact:
        return []

    ports: list[int] = []
    for token in compact.split(","):
        if not token:
            raise ValueError(f"empty entry in port spec '{spec}'")
        if "-" in token:
            start_raw, _, end_raw = token.partition("-")
            start = _port(start_raw, spec)
            end = _port(end_raw, spec)
            if start > end:
                raise ValueError(f"invalid port range '{token}' (start > end)")
            ports.extend(range(start, end + 1))
        else:
            ports.append(_port(token, spec))
    return ports


def port_label(port: int | None) -> str:
    """Display form of a candidate port.

    Examples:
        >>> port_label(5201)
        '5201'
        >>> port_label(None)
        'default'
    """
    return "default" if port is None else str(port)


@dataclass
class FallbackOutcome:
    """One direction after port fallback."""

    result: ThroughputResult
    load_metrics: LatencyMetrics | None = None
    notices: list[str] = field(default_factory=list)


class PortFallbackController:
    """Drives the throughput probe across candidate ports.

    Args:
        throughput: collector that starts throughput attempts
        latency: collector for the concurrent load probe, or None when
            latency probing is disabled
        run_log: sink for commands and raw output of every attempt
        ports: ordered candidates; empty means the tool's default port
        load_count: probe cycles for the load latency probe
        grace: seconds between SIGTERM and SIGKILL when an attempt or its
            load probe has to be stopped
    """

    def __init__(
        self,
        throughput: ThroughputCollector,
        latency: LatencyCollector | None,
        run_log: RunLog,
        ports: list[int],
        load_count: int = 1,
        grace: float = 2.0,
    ):
        self.throughput = throughput
        self.latency = latency
        self.run_log = run_log
        self.candidates: list[int | None] = list(ports) or [None]
        self.load_count = load_count
        self.grace = grace

    def run(self, target: Target, binding: EgressBinding, direction: Direction) -> FallbackOutcome:
        """Try each candidate in order until one succeeds.

        Raises:
            ToolNotFound: if a probe binary is missing
        """
        failed: list[str] = []
        last_failure: ProbeFailure | None = None

        for port in self.candidates:
            load = self._start_load(target, binding, direction)
            try:
                handle = self.throughput.start(target, binding, direction, port)
            except ToolNotFound:
                if load is not None:
                    load.stop(self.grace)
                    load.release()
                raise

            message = self._progress_message(target, direction, port, failed)
            mbps, failure, output = self._attempt(handle, direction, message)

            if failure is None:
                self.run_log.record(handle.command, output, comment=f"iperf3 {direction.value}")
                handle.release()
                load_metrics = self._finish_load(load, target, direction)
                notices = []
                if len(self.candidates) > 1 and failed:
                    notices.append(
                        f"iperf3 {direction.value}: port fallback had failures "
                        f"(failed ports: {' '.join(failed)}; succeeded on {port_label(port)})"
                    )
                logger.info(
                    "iperf3 %s succeeded: target=%s, port=%s, mbps=%.2f",
                    direction.value, target.address, port_label(port), mbps,
                )
                result = ThroughputResult(
                    direction=direction, mbps=mbps, port=port, failed_ports=list(failed)
                )
                return FallbackOutcome(result=result, load_metrics=load_metrics, notices=notices)

            if load is not None:
                load.stop(self.grace)
                load.release()
            last_failure = failure
            failed.append(port_label(port))
            self.run_log.record(
                handle.command,
                output,
                comment=f"iperf3 {direction.value} port {port_label(port)} failed: {failure.reason}",
            )
            handle.release()
            logger.info(
                "iperf3 %s attempt failed: target=%s, port=%s, reason=%s",
                direction.value, target.address, port_label(port), failure.reason,
            )

        return FallbackOutcome(result=self._exhausted(direction, failed, last_failure))

    def _exhausted(
        self, direction: Direction, failed: list[str], last_failure: ProbeFailure
    ) -> ThroughputResult:
        failure = last_failure
        if len(self.candidates) > 1:
            failure = ProbeFailure(
                FailureKind.PORT_EXHAUSTED,
                f"all ports failed (failed ports: {' '.join(failed)}; last: {last_failure.reason})",
            )
        return ThroughputResult(direction=direction, failure=failure, failed_ports=list(failed))

    def _attempt(
        self, handle: ProbeHandle, direction: Direction, message: str
    ) -> tuple[float | None, ProbeFailure | None, str]:
        """Wait for one attempt and judge it."""
        try:
            returncode = handle.wait(timeout=self.throughput.timeout, message=message)
        except subprocess.TimeoutExpired:
            handle.stop(self.grace)
            return None, ProbeFailure(FailureKind.CONNECTION_FAILURE, "timed out"), handle.read_output()

        output = handle.read_output()
        failure = classify_throughput_failure(output)
        if failure is not None:
            return None, failure, output
        if returncode != 0:
            return None, ProbeFailure(FailureKind.CONNECTION_FAILURE, f"failed (exit {returncode})"), output

        mbps = parse_throughput_mbps(output, direction)
        if mbps is None:
            return None, ProbeFailure(
                FailureKind.PARSE_FAILURE, "no result (throughput parse failed)"
            ), output
        return mbps, None, output

    def _start_load(
        self, target: Target, binding: EgressBinding, direction: Direction
    ) -> ProbeHandle | None:
        if self.latency is None:
            return None
        try:
            return self.latency.start_load(target, binding, self.load_count)
        except OSError as exc:
            logger.warning("mtr during %s could not start: %s", direction.value, exc)
            return None

    def _finish_load(
        self, load: ProbeHandle | None, target: Target, direction: Direction
    ) -> LatencyMetrics | None:
        if load is None:
            return None if self.latency is None else LatencyMetrics.unavailable(
                ProbeFailure(FailureKind.PARSE_FAILURE, "load probe did not start")
            )
        message = f"mtr during {direction.value}: {target.address}..."
        try:
            load.wait(timeout=self.latency.load_timeout(self.load_count), message=message)
        except subprocess.TimeoutExpired:
            logger.warning("mtr during %s overran its window; stopping it", direction.value)
            load.stop(self.grace)
        output = load.read_output()
        self.run_log.record(load.command, output, comment=f"mtr during {direction.value}", minor=True)
        load.release()
        return self.latency.parse(output, target)

    @staticmethod
    def _progress_message(
        target: Target, direction: Direction, port: int | None, failed: list[str]
    ) -> str:
        message = f"iperf3 {direction.value}: {target.address}"
        if port is not None:
            message += f" (port {port})"
        if failed:
            message += f"; port {failed[-1]} failed, trying next"
        return message + "..."
