"""Privilege escalation for probes that need raw sockets.

State machine per probe type::

    UNPRIVILEGED --(permission failure)--> ESCALATE_REQUESTED --> ESCALATED
                                                              \\-> DENIED

The interactive sudo prompt is shown at most once per program run. Once
escalated, a background keepalive refreshes the sudo timestamp until stop().
"""

import logging
import os
import shutil
import subprocess
import sys
import threading
from enum import Enum
from typing import Callable

from ifspeedtest.errors import PrivilegeRequired
from ifspeedtest.parsing import is_permission_failure

logger = logging.getLogger(__name__)

SUDO_NONINTERACTIVE = ("-n",)
KEEPALIVE_INTERVAL_S = 60.0


class SudoMode(Enum):
    """How the controller may elevate."""

    AUTO = "auto"  # escalate once on a classified permission failure
    FORCE = "force"  # always run elevated
    NEVER = "never"  # never elevate; report permission failures


class PrivilegeState(Enum):
    UNPRIVILEGED = "unprivileged"
    ESCALATE_REQUESTED = "escalate_requested"
    ESCALATED = "escalated"
    DENIED = "denied"


class PrivilegeController:
    """Decides when a probe is re-run under sudo and keeps sudo alive."""

    def __init__(
        self,
        mode: SudoMode = SudoMode.AUTO,
        probe_name: str = "mtr",
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        is_root: bool | None = None,
        interactive: bool | None = None,
        sudo_path: str | None = None,
        keepalive_interval: float = KEEPALIVE_INTERVAL_S,
    ):
        self.mode = mode
        self.probe_name = probe_name
        self._runner = runner
        if is_root is None:
            is_root = hasattr(os, "geteuid") and os.geteuid() == 0
        self.is_root = is_root
        if interactive is None:
            interactive = sys.stdin is not None and sys.stdin.isatty()
        self._interactive = interactive
        self._sudo = sudo_path if sudo_path is not None else shutil.which("sudo")
        self._keepalive_interval = keepalive_interval

        self.state = PrivilegeState.UNPRIVILEGED
        self.prompt_count = 0
        self._keepalive: threading.Thread | None = None
        self._stop = threading.Event()

    @property
    def elevated(self) -> bool:
        return self.state is PrivilegeState.ESCALATED

    def prefix(self) -> list[str]:
        """Command prefix for elevated runs; empty when not elevated or root."""
        if self.elevated and not self.is_root:
            return [self._sudo or "sudo", *SUDO_NONINTERACTIVE]
        return []

    def prepare(self) -> None:
        """Escalate up front in FORCE mode.

        Raises:
            PrivilegeRequired: if sudo is unavailable or authentication failed
        """
        if self.mode is not SudoMode.FORCE or self.is_root or self.elevated:
            return
        if self.state is PrivilegeState.DENIED:
            raise PrivilegeRequired(
                f"--sudo requested but sudo auth failed or sudo is unavailable ({self.probe_name})."
            )
        self.escalate()

    def should_escalate(self, output: str) -> bool:
        """True when ``output`` warrants the one automatic escalation attempt."""
        return (
            self.mode is SudoMode.AUTO
            and not self.is_root
            and self.state is PrivilegeState.UNPRIVILEGED
            and is_permission_failure(output)
        )

    def escalate(self) -> None:
        """Obtain sudo credentials, prompting interactively at most once.

        Raises:
            PrivilegeRequired: if elevation was denied or is unavailable
        """
        self.state = PrivilegeState.ESCALATE_REQUESTED
        if self._acquire():
            self.state = PrivilegeState.ESCALATED
            logger.info("%s: running with elevated privileges", self.probe_name)
            self._start_keepalive()
            return

        self.state = PrivilegeState.DENIED
        logger.warning("%s: sudo not granted", self.probe_name)
        raise PrivilegeRequired(self.denied_message())

    def denied_message(self) -> str:
        return (
            f"{self.probe_name}: needs elevated privileges for ICMP here; sudo was not granted. "
            "Re-run with sudo (or pass --sudo) or try --mtr-probe tcp/udp."
        )

    def permission_error(self, output: str) -> str | None:
        """Reported error for a permission failure when elevation is disabled."""
        if self.mode is not SudoMode.NEVER or not is_permission_failure(output):
            return None
        return (
            f"{self.probe_name}: needs elevated privileges for ICMP here. "
            "Re-run with sudo (or pass --sudo) or try --mtr-probe tcp/udp."
        )

    def stop(self) -> None:
        """Stop the keepalive thread."""
        self._stop.set()
        if self._keepalive is not None:
            self._keepalive.join(timeout=1.0)
            self._keepalive = None

    def _acquire(self) -> bool:
        if self._sudo is None:
            return False
        if self._run([self._sudo, "-n", "true"]) == 0:
            return True
        if not self._interactive or self.prompt_count > 0:
            return False

        self.prompt_count += 1
        print(
            f"{self.probe_name} requires elevated privileges on some systems for ICMP probes.\n"
            f"You'll be prompted once for sudo; subsequent {self.probe_name} runs use sudo -n.",
            file=sys.stderr,
        )
        return self._run([self._sudo, "-v"], interactive=True) == 0

    def _run(self, cmd: list[str], interactive: bool = False) -> int:
        kwargs = {"check": False}
        if not interactive:
            kwargs.update(
                stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
            )
        try:
            return self._runner(cmd, **kwargs).returncode
        except OSError as exc:
            logger.debug("sudo invocation failed: %s", exc)
            return 1

    def _start_keepalive(self) -> None:
        if self.is_root or self._keepalive is not None or self._sudo is None:
            return
        self._stop.clear()
        self._keepalive = threading.Thread(
            target=self._keepalive_loop, name="sudo-keepalive", daemon=True
        )
        self._keepalive.start()

    def _keepalive_loop(self) -> None:
        while not self._stop.wait(self._keepalive_interval):
            if self._run([self._sudo, "-n", "true"]) != 0:
                logger.debug("sudo keepalive stopped: credentials expired")
                return
