"""Local terminal I/O for the viewer.

Puts stdin in raw mode so every keystroke (including control keys) is
forwarded as typed, writes remote output straight to stdout, and reports
window size changes. ``Ctrl+]`` detaches.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import shutil
import signal
import sys
import termios
import tty
from typing import Any, Callable, TextIO

logger = logging.getLogger(__name__)

DETACH_KEY = "\x1d"  # Ctrl+]


class Console:
    """Raw-mode keyboard reader and output writer."""

    def __init__(
        self,
        on_input: Callable[[str], Any],
        on_resize: Callable[[int, int], Any] | None = None,
        on_detach: Callable[[], Any] | None = None,
        stdin: TextIO = sys.stdin,
        stdout: TextIO = sys.stdout,
    ) -> None:
        self._on_input = on_input
        self._on_resize = on_resize
        self._on_detach = on_detach
        self._stdin = stdin
        self._stdout = stdout
        self._saved_attrs: list[Any] | None = None
        self._fd: int | None = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def size(self) -> tuple[int, int]:
        columns, lines = shutil.get_terminal_size()
        return columns, lines

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        fd = self._stdin.fileno()
        if os.isatty(fd):
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setraw(fd)
        self._fd = fd
        loop.add_reader(fd, self._on_readable)
        try:
            loop.add_signal_handler(signal.SIGWINCH, self._on_winch)
        except (NotImplementedError, RuntimeError):
            logger.debug("SIGWINCH not available, resize tracking disabled")

    def stop(self) -> None:
        if self._fd is None:
            return
        loop = asyncio.get_running_loop()
        loop.remove_reader(self._fd)
        try:
            loop.remove_signal_handler(signal.SIGWINCH)
        except (NotImplementedError, RuntimeError):
            pass
        if self._saved_attrs is not None:
            termios.tcsetattr(self._fd, termios.TCSADRAIN, self._saved_attrs)
            self._saved_attrs = None
        self._fd = None

    def write(self, text: str) -> None:
        self._stdout.write(text)
        self._stdout.flush()

    def status(self, text: str) -> None:
        """Print a status line without disturbing raw mode."""
        self.write(f"\r\n[termlink] {text}\r\n")

    def _on_readable(self) -> None:
        data = os.read(self._fd, 1024)
        if not data:
            if self._on_detach is not None:
                self._on_detach()
            return
        text = self._decoder.decode(data)
        if not text:
            return
        if DETACH_KEY in text:
            before = text.split(DETACH_KEY, 1)[0]
            if before:
                self._on_input(before)
            if self._on_detach is not None:
                self._on_detach()
            return
        self._on_input(text)

    def _on_winch(self) -> None:
        if self._on_resize is not None:
            self._on_resize(*self.size())
