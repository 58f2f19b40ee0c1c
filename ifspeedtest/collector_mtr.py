"""Path latency collector backed by the system mtr binary."""

import logging
import platform

from ifspeedtest.config import Settings
from ifspeedtest.errors import FailureKind, PrivilegeRequired
from ifspeedtest.models import EgressBinding, LatencyMetrics, ProbeFailure, Target
from ifspeedtest.parsing import is_permission_failure, parse_latency
from ifspeedtest.privilege import PrivilegeController, PrivilegeState
from ifspeedtest.process import ManagedProcess, ProbeOutcome, ProcessSupervisor
from ifspeedtest.runlog import RunLog

logger = logging.getLogger(__name__)

# mtr keeps waiting for late replies after the last cycle.
LOAD_GRACE_S = 10.0


class MtrCollector:
    """Runs mtr in report mode and normalizes its output.

    A classified permission failure on the idle probe triggers the single
    escalation attempt of the PrivilegeController, after which the same
    invocation is re-run with the sudo prefix. Load probes started later in
    the run reuse that prefix.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        settings: Settings,
        privilege: PrivilegeController,
        run_log: RunLog,
        binary: str = "mtr",
    ):
        self.supervisor = supervisor
        self.settings = settings
        self.privilege = privilege
        self.run_log = run_log
        self.binary = binary
        self.system = platform.system()

        logger.debug(
            "MtrCollector initialized: probe=%s, count=%d, interval=%s, mode=%s",
            settings.mtr_probe,
            settings.mtr_count,
            settings.mtr_interval,
            settings.mtr_output_mode,
        )

    def build_command(self, target: Target, binding: EgressBinding, count: int) -> list[str]:
        """Build the mtr invocation, without any privilege prefix.

        Args:
            target: resolved target; the literal address is probed
            binding: egress binding; ``-I`` is only passed for a bound device
            count: probe cycles

        Returns:
            List of command arguments for subprocess
        """
        settings = self.settings
        if settings.mtr_output_mode == "xml":
            cmd = [self.binary, "-rwxb", "-n"]
        else:
            cmd = [self.binary, "-r", "-w", "-n"]
        cmd += ["-i", f"{settings.mtr_interval:g}", "-c", str(count)]

        if settings.mtr_probe == "udp":
            cmd.append("-u")
        elif settings.mtr_probe == "tcp":
            cmd.append("-T")

        port = settings.effective_mtr_port
        if port is not None:
            cmd += ["-P", str(port)]

        if binding.device and not binding.unbound:
            cmd += ["-I", binding.device]

        cmd.append(target.address)
        return cmd

    def measure(self, target: Target, binding: EgressBinding) -> LatencyMetrics:
        """Run the idle baseline probe.

        Never raises for probe failures; the returned record carries the
        classified failure instead.
        """
        outcome = self._run(target, binding, comment="mtr idle")
        metrics = self.parse(outcome.output, target)
        if metrics.is_valid:
            return metrics

        if self.privilege.should_escalate(outcome.output):
            try:
                self.privilege.escalate()
            except PrivilegeRequired as exc:
                metrics.failure = ProbeFailure(FailureKind.PRIVILEGE_REQUIRED, str(exc))
                return metrics
            outcome = self._run(target, binding, comment="mtr idle (elevated retry)")
            metrics = self.parse(outcome.output, target)
            if metrics.is_valid:
                return metrics

        message = self._privilege_message(outcome.output)
        if message is not None:
            metrics.failure = ProbeFailure(FailureKind.PRIVILEGE_REQUIRED, message)
        return metrics

    def start_load(self, target: Target, binding: EgressBinding, count: int) -> ManagedProcess:
        """Start a background probe to run next to a throughput test."""
        cmd = self.privilege.prefix() + self.build_command(target, binding, count)
        return self.supervisor.run_background(cmd, name="mtr-load")

    def load_timeout(self, count: int) -> float:
        """Seconds to wait for a load probe of ``count`` cycles before stopping it."""
        return count * self.settings.mtr_interval + LOAD_GRACE_S

    def parse(self, output: str, target: Target) -> LatencyMetrics:
        return parse_latency(output, target.address, system=self.system)

    def _run(self, target: Target, binding: EgressBinding, comment: str) -> ProbeOutcome:
        cmd = self.privilege.prefix() + self.build_command(target, binding, self.settings.mtr_count)
        logger.debug("Executing mtr: target=%s, cmd=%s", target.address, cmd)
        outcome = self.supervisor.run_foreground(
            cmd, message=f"mtr: {target.address}...", name="mtr"
        )
        logger.debug("mtr completed: target=%s, returncode=%d", target.address, outcome.returncode)
        self.run_log.record(cmd, outcome.output, comment=comment)
        return outcome

    def _privilege_message(self, output: str) -> str | None:
        message = self.privilege.permission_error(output)
        if message is not None:
            return message
        if self.privilege.state is PrivilegeState.DENIED and is_permission_failure(output, self.system):
            return self.privilege.denied_message()
        return None
