"""Probe process supervision.

Every probe runs as a ManagedProcess in its own session so that a single
signal to the process group also reaches anything the probe spawned (mtr
forks mtr-packet, sudo forks the real tool). The supervisor keeps a registry
of live processes and the temp files of the current run, and tears both down
on every exit path: normal return, exception, SIGINT or SIGTERM.
"""

import atexit
import logging
import os
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from ifspeedtest.errors import ToolNotFound
from ifspeedtest.progress import Spinner

logger = logging.getLogger(__name__)

TEMP_PREFIX = "ifspeedtest_"
POLL_INTERVAL_S = 0.1


@dataclass(frozen=True)
class ProbeOutcome:
    """Captured result of a foreground probe run."""

    output: str
    returncode: int


class ManagedProcess:
    """A probe subprocess with combined stdout/stderr captured to a file.

    Termination is two-phase: SIGTERM to the process group, then SIGKILL to
    the group if it is still alive after the grace period.
    """

    def __init__(
        self,
        cmd: list[str],
        name: str,
        output_path: Path,
        spinner: Spinner | None = None,
        on_finish: Callable[["ManagedProcess"], None] | None = None,
        on_release: Callable[[Path], None] | None = None,
    ):
        self.command = list(cmd)
        self.name = name
        self.output_path = output_path
        self.process: subprocess.Popen | None = None
        self._spinner = spinner
        self._on_finish = on_finish
        self._on_release = on_release

    def start(self) -> None:
        """Spawn the process.

        Raises:
            ToolNotFound: if the executable is missing or not executable
        """
        try:
            with open(self.output_path, "wb") as sink:
                self.process = subprocess.Popen(
                    self.command,
                    stdin=subprocess.DEVNULL,
                    stdout=sink,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as exc:
            raise ToolNotFound(f"{self.command[0]}: command not found") from exc
        except PermissionError as exc:
            raise ToolNotFound(f"{self.command[0]}: cannot execute ({exc})") from exc

        logger.debug("Started %s: pid=%d, cmd=%s", self.name, self.process.pid, self.command)

    def is_running(self) -> bool:
        """True while the process has been started and not yet exited."""
        return self.process is not None and self.process.poll() is None

    def wait(self, timeout: float | None = None, message: str | None = None) -> int:
        """Block until the process exits, drawing the spinner if ``message`` is set.

        Raises:
            subprocess.TimeoutExpired: if ``timeout`` elapses first
        """
        if self.process is None:
            raise RuntimeError(f"{self.name} was never started")

        if message is None or self._spinner is None:
            returncode = self.process.wait(timeout)
        else:
            returncode = self._wait_with_spinner(timeout, message)

        self._finished()
        logger.debug("%s exited: pid=%d, returncode=%d", self.name, self.process.pid, returncode)
        return returncode

    def _wait_with_spinner(self, timeout: float | None, message: str) -> int:
        waited = 0.0
        try:
            while True:
                step = POLL_INTERVAL_S
                if timeout is not None:
                    step = min(step, max(timeout - waited, 0.0))
                try:
                    return self.process.wait(step)
                except subprocess.TimeoutExpired:
                    waited += step
                    if timeout is not None and waited >= timeout:
                        raise subprocess.TimeoutExpired(self.command, timeout) from None
                    self._spinner.tick(message)
        finally:
            self._spinner.clear()

    def stop(self, grace: float = 2.0) -> None:
        """Terminate the process group. Safe to call more than once."""
        if self.process is None:
            return

        # Unregister before signalling so a late interrupt cannot signal twice.
        self._finished()
        if self.process.poll() is not None:
            return

        self._signal_group(signal.SIGTERM)
        try:
            self.process.wait(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            logger.debug("%s ignored SIGTERM; killing: pid=%d", self.name, self.process.pid)

        self._signal_group(signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)
        try:
            self.process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning("%s did not exit after SIGKILL: pid=%d", self.name, self.process.pid)

    def _signal_group(self, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.process.pid, sig)
            else:
                self.process.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            # Group may contain children running as root under sudo.
            logger.debug("No permission to signal group of %s; signalling leader only", self.name)
            try:
                self.process.send_signal(sig)
            except (ProcessLookupError, PermissionError):
                pass

    def read_output(self) -> str:
        """Return everything the process wrote so far."""
        try:
            return self.output_path.read_bytes().decode("utf-8", errors="replace")
        except FileNotFoundError:
            return ""

    def release(self) -> None:
        """Remove the output file; read_output() returns "" afterwards."""
        if self._on_release is not None:
            self._on_release(self.output_path)
        else:
            self.output_path.unlink(missing_ok=True)

    def _finished(self) -> None:
        if self._on_finish is not None:
            self._on_finish(self)


class ProcessSupervisor:
    """Registry of live probe processes and temp files for the current run."""

    def __init__(self, spinner: Spinner | None = None, grace: float = 2.0):
        self.spinner = spinner if spinner is not None else Spinner()
        self.grace = grace
        self._processes: set[ManagedProcess] = set()
        self._temp_paths: set[Path] = set()
        # Reentrant: cleanup() may run from a signal handler inside a locked section.
        self._lock = threading.RLock()

    def __enter__(self) -> "ProcessSupervisor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    @property
    def active(self) -> list[ManagedProcess]:
        with self._lock:
            return list(self._processes)

    def temp_path(self, prefix: str) -> Path:
        """Create an empty temp file that is removed by cleanup()."""
        fd, name = tempfile.mkstemp(prefix=f"{TEMP_PREFIX}{prefix}.")
        os.close(fd)
        path = Path(name)
        with self._lock:
            self._temp_paths.add(path)
        return path

    def discard(self, path: Path) -> None:
        """Remove a temp file now instead of at cleanup."""
        with self._lock:
            self._temp_paths.discard(path)
        path.unlink(missing_ok=True)

    def run_background(self, cmd: list[str], name: str) -> ManagedProcess:
        """Start ``cmd`` without waiting and register it for cancellation."""
        proc = ManagedProcess(
            cmd,
            name=name,
            output_path=self.temp_path(name),
            spinner=self.spinner,
            on_finish=self._unregister,
            on_release=self.discard,
        )
        proc.start()
        with self._lock:
            self._processes.add(proc)
        return proc

    def run_foreground(self, cmd: list[str], message: str, name: str | None = None) -> ProbeOutcome:
        """Run ``cmd`` to completion with a spinner and return its output.

        The process is stopped if the wait is interrupted, and its temp file
        is removed once the output has been read.
        """
        proc = self.run_background(cmd, name or os.path.basename(cmd[0]))
        try:
            returncode = proc.wait(message=message)
        except BaseException:
            proc.stop(self.grace)
            raise
        output = proc.read_output()
        proc.release()
        return ProbeOutcome(output=output, returncode=returncode)

    def kill_all(self) -> None:
        """Stop every registered process. Safe to call multiple times."""
        procs = self.active
        if not procs:
            return
        logger.info("Stopping %d running probe process(es)", len(procs))
        for proc in procs:
            try:
                proc.stop(self.grace)
            except OSError as exc:
                logger.error("Error stopping %s: %s", proc.name, exc)

    def cleanup(self) -> None:
        """Stop all processes and remove all temp files of this run."""
        self.spinner.clear()
        self.kill_all()
        with self._lock:
            paths = list(self._temp_paths)
            self._temp_paths.clear()
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove temp file %s: %s", path, exc)

    def install_signal_handlers(self) -> None:
        """Clean up on SIGINT/SIGTERM and at interpreter exit."""

        def _handle(signum, frame):
            self.cleanup()
            raise SystemExit(128 + signum)

        signal.signal(signal.SIGINT, _handle)
        signal.signal(signal.SIGTERM, _handle)
        atexit.register(self.cleanup)

    def _unregister(self, proc: ManagedProcess) -> None:
        with self._lock:
            self._processes.discard(proc)
