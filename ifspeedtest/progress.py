"""Console progress indication while a probe is running."""

import sys
from typing import TextIO


class Spinner:
    """Single-line spinner redrawn in place. Silent when not attached to a TTY."""

    FRAMES = "|/-\\"

    def __init__(self, stream: TextIO | None = None, enabled: bool | None = None):
        self.stream = stream if stream is not None else sys.stderr
        if enabled is None:
            enabled = hasattr(self.stream, "isatty") and self.stream.isatty()
        self.enabled = enabled
        self._frame = 0
        self._onscreen = False

    def tick(self, message: str) -> None:
        """Draw the next frame with ``message``."""
        if not self.enabled:
            return
        char = self.FRAMES[self._frame % len(self.FRAMES)]
        self._frame += 1
        self.stream.write(f"\r\033[K[{char}] {message}")
        self.stream.flush()
        self._onscreen = True

    def clear(self) -> None:
        """Erase the spinner line if one is on screen."""
        if not self._onscreen:
            return
        self.stream.write("\r\033[K")
        self.stream.flush()
        self._onscreen = False
