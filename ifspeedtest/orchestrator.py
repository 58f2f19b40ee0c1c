"""Measurement sequence for one (target, interface) pair."""

import logging

from ifspeedtest.collector import LatencyCollector, ThroughputCollector
from ifspeedtest.config import Settings
from ifspeedtest.interfaces import InterfaceResolver
from ifspeedtest.models import Direction, LatencyMetrics, RunResult, Target
from ifspeedtest.ports import PortFallbackController, port_label
from ifspeedtest.runlog import RunLog

logger = logging.getLogger(__name__)


def _reason(metrics: LatencyMetrics) -> str:
    return metrics.failure.reason if metrics.failure is not None else "no result"


class RunOrchestrator:
    """Sequences baseline latency, upload and download for one pair.

    Order is fixed: the idle baseline always precedes throughput testing and
    upload always precedes download. Each throughput direction runs through
    the PortFallbackController with a concurrent load latency probe.
    """

    def __init__(
        self,
        settings: Settings,
        latency: LatencyCollector | None,
        throughput: ThroughputCollector | None,
        run_log: RunLog,
        interfaces: InterfaceResolver,
    ):
        self.settings = settings
        self.latency = latency if settings.run_latency else None
        self.throughput = throughput if settings.run_throughput else None
        self.run_log = run_log
        self.interfaces = interfaces

    def run(self, target: Target, interface: str | None = None) -> RunResult:
        """Measure ``target`` through ``interface`` (None for the default route).

        Raises:
            ToolNotFound: if a probe binary is missing
        """
        binding = self.interfaces.resolve(interface, target)
        result = RunResult(target=target, binding=binding)
        result.notices.extend(binding.warnings)
        logger.info("Run started: target=%s, egress=%s", target.address, binding.label)

        if self.latency is not None:
            result.baseline = self.latency.measure(target, binding)
            if not result.baseline.is_valid:
                result.errors.append(f"mtr: {_reason(result.baseline)}")

        if self.throughput is not None:
            self._run_throughput(result)

        logger.info("Run finished: target=%s, egress=%s", target.address, binding.label)
        return result

    def _run_throughput(self, result: RunResult) -> None:
        ports = self.settings.iperf_ports
        controller = PortFallbackController(
            throughput=self.throughput,
            latency=self.latency,
            run_log=self.run_log,
            ports=ports,
            load_count=self.settings.load_probe_count,
        )

        for direction in (Direction.UPLOAD, Direction.DOWNLOAD):
            outcome = controller.run(result.target, result.binding, direction)
            if direction is Direction.UPLOAD:
                result.upload = outcome.result
                result.upload_load = outcome.load_metrics
            else:
                result.download = outcome.result
                result.download_load = outcome.load_metrics

            result.notices.extend(outcome.notices)
            if not outcome.result.available:
                reason = outcome.result.failure.reason if outcome.result.failure else "no result"
                result.notices.append(f"iperf3 {direction.value}: {reason}")
            elif outcome.load_metrics is not None and not outcome.load_metrics.is_valid:
                result.notices.append(f"mtr during {direction.value}: {_reason(outcome.load_metrics)}")

        if len(ports) > 1:
            result.notices.append(
                "iperf3 port-range used: "
                f"upload {self._port_used(result, Direction.UPLOAD)}; "
                f"download {self._port_used(result, Direction.DOWNLOAD)}"
            )

    @staticmethod
    def _port_used(result: RunResult, direction: Direction) -> str:
        throughput = result.throughput(direction)
        if throughput is None or not throughput.available:
            return "failed"
        return port_label(throughput.port)
