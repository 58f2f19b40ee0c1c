"""Throughput collector backed by the system iperf3 client."""

import logging
import subprocess
from typing import Callable

from ifspeedtest.config import Settings
from ifspeedtest.models import Direction, EgressBinding, Target
from ifspeedtest.process import ManagedProcess, ProcessSupervisor

logger = logging.getLogger(__name__)

# Headroom on top of test duration and connect timeout before an attempt is abandoned.
ATTEMPT_GRACE_S = 10.0


class IperfCollector:
    """Starts iperf3 client runs in the background.

    ``--connect-timeout`` is only passed when the local iperf3 build lists it
    in its help text (older builds reject unknown options).
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        settings: Settings,
        binary: str = "iperf3",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.supervisor = supervisor
        self.settings = settings
        self.binary = binary
        self._runner = runner
        self._connect_timeout_supported: bool | None = None

    @property
    def timeout(self) -> float:
        """Seconds to wait for one attempt: test time, connect timeout and grace."""
        return (
            self.settings.iperf_time
            + self.settings.connect_timeout_ms / 1000.0
            + ATTEMPT_GRACE_S
        )

    def supports_connect_timeout(self) -> bool:
        """Probe ``iperf3 -h`` once per run for the --connect-timeout option."""
        if self._connect_timeout_supported is None:
            try:
                result = self._runner(
                    [self.binary, "-h"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                    check=False,
                )
                help_text = (result.stdout or "") + (result.stderr or "")
                self._connect_timeout_supported = "--connect-timeout" in help_text
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.debug("Could not inspect iperf3 options: %s", exc)
                self._connect_timeout_supported = False
            logger.debug(
                "iperf3 --connect-timeout supported: %s", self._connect_timeout_supported
            )
        return self._connect_timeout_supported

    def build_command(
        self,
        target: Target,
        binding: EgressBinding,
        direction: Direction,
        port: int | None,
    ) -> list[str]:
        """Build the iperf3 client invocation.

        Returns:
            List of command arguments for subprocess
        """
        settings = self.settings
        cmd = [
            self.binary,
            "-c", target.address,
            "-f", "m",
            "-t", str(settings.iperf_time),
            "-P", str(settings.iperf_parallel),
        ]
        if settings.connect_timeout_ms > 0 and self.supports_connect_timeout():
            cmd += ["--connect-timeout", str(settings.connect_timeout_ms)]
        if binding.source_address:
            cmd += ["-B", binding.source_address]
        if direction is Direction.DOWNLOAD:
            cmd.append("-R")
        if port is not None:
            cmd += ["-p", str(port)]
        return cmd

    def start(
        self,
        target: Target,
        binding: EgressBinding,
        direction: Direction,
        port: int | None,
    ) -> ManagedProcess:
        cmd = self.build_command(target, binding, direction, port)
        logger.debug("Executing iperf3 %s: target=%s, cmd=%s", direction.value, target.address, cmd)
        return self.supervisor.run_background(cmd, name=f"iperf3-{direction.value}")
