"""Append-only run log of probe invocations and their raw output."""

import logging
import shlex
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

MAJOR_SEPARATOR = "=" * 82
MINOR_SEPARATOR = "-" * 82


class RunLog:
    """Diagnostic sink. A disabled log (path=None) accepts and drops entries.

    A write failure disables the log for the rest of the run with a single
    warning instead of failing the measurement.
    """

    def __init__(self, path: Path | None = None):
        self.path = path

    @property
    def enabled(self) -> bool:
        return self.path is not None

    @classmethod
    def create(cls, directory: Path, now: datetime | None = None) -> "RunLog":
        """Open a new timestamped log file in ``directory``."""
        stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
        try:
            directory.mkdir(parents=True, exist_ok=True)
            path = directory / f"log-ifspeedtest-{stamp}.txt"
            path.write_text(f"ifspeedtest run at {stamp}\n", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot write log file in '%s' (logging disabled): %s", directory, exc)
            return cls(None)
        return cls(path)

    def record(
        self,
        command: list[str] | str,
        output: str,
        comment: str | None = None,
        minor: bool = False,
    ) -> None:
        """Append one probe invocation and its raw output."""
        if self.path is None:
            return
        if not isinstance(command, str):
            command = shlex.join(command)
        lines = [MINOR_SEPARATOR if minor else MAJOR_SEPARATOR, f"# {command}"]
        if comment:
            lines.append(f"# {comment}")
        lines.append(output.rstrip("\n"))
        self._append("\n".join(lines) + "\n")

    def _append(self, text: str) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as sink:
                sink.write(text)
        except OSError as exc:
            logger.warning("Failed to append to log file '%s' (logging disabled): %s", self.path, exc)
            self.path = None
