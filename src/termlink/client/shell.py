"""Persistent shell session for the host.

Runs a long-lived shell on a pseudo-terminal and streams its raw output
(escape sequences included) to a callback, so the viewer's terminal can
render it exactly as a local one would.
"""

from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable

logger = logging.getLogger(__name__)

READ_CHUNK = 4096

# Grace period between SIGTERM and SIGKILL
TERMINATE_TIMEOUT = 0.5


class PersistentShell:
    """Interactive shell attached to a pty, driven by the event loop.

    Output is read with ``loop.add_reader`` and decoded incrementally, so a
    multi-byte character split across reads is delivered whole.

    Args:
        shell_command: Program to run, e.g. ``/bin/bash``.
        rows: Initial terminal height.
        cols: Initial terminal width.
        on_output: Called with each chunk of decoded output.
        on_exit: Called once when the shell process goes away.
    """

    def __init__(
        self,
        shell_command: str = "/bin/bash",
        rows: int = 30,
        cols: int = 80,
        on_output: Callable[[str], None] | None = None,
        on_exit: Callable[[], None] | None = None,
    ) -> None:
        self._shell_command = shell_command
        self._rows = rows
        self._cols = cols
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._is_alive = False
        self._fd: int | None = None
        self._pid: int | None = None

    @property
    def is_alive(self) -> bool:
        return self._is_alive

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    async def start(self) -> None:
        """Fork the shell on a new pty and start streaming its output."""
        env = dict(os.environ, TERM="xterm-256color", COLORTERM="truecolor")

        pid, fd = pty.fork()
        if pid == pty.CHILD:
            os.chdir(env.get("HOME", "/"))
            os.execvpe(self._shell_command, [self._shell_command], env)

        self._pid = pid
        self._fd = fd
        self._apply_winsize()
        os.set_blocking(fd, False)
        asyncio.get_running_loop().add_reader(fd, self._on_readable)
        self._is_alive = True
        logger.info("Started shell %s (pid=%d, %dx%d)", self._shell_command, pid, self._cols, self._rows)

    async def stop(self) -> None:
        """Terminate the shell, escalating to SIGKILL if it lingers."""
        self._close_fd()
        pid, self._pid = self._pid, None
        self._is_alive = False
        if pid is not None:
            await _terminate(pid)
            logger.info("Shell stopped")

    def send_input(self, data: str) -> None:
        """Write keystrokes to the pty."""
        if not self._is_alive or self._fd is None:
            raise ShellError("Shell is not alive")
        try:
            os.write(self._fd, data.encode())
        except OSError as e:
            raise ShellError(f"Failed to write to shell: {e}") from e

    def resize(self, cols: int, rows: int) -> None:
        """Change the pty window size; the shell receives SIGWINCH."""
        self._cols, self._rows = cols, rows
        if self._fd is not None:
            self._apply_winsize()
            logger.debug("Resized shell to %dx%d", cols, rows)

    def _apply_winsize(self) -> None:
        fcntl.ioctl(self._fd, termios.TIOCSWINSZ, struct.pack("HHHH", self._rows, self._cols, 0, 0))

    def _on_readable(self) -> None:
        try:
            chunk = os.read(self._fd, READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO: the child closed its side of the pty
            chunk = b""
        if not chunk:
            self._handle_exit()
            return
        text = self._decoder.decode(chunk)
        if text and self._on_output is not None:
            self._on_output(text)

    def _handle_exit(self) -> None:
        if not self._is_alive:
            return
        self._is_alive = False
        self._close_fd()
        if self._pid is not None:
            _reap(self._pid)
            self._pid = None
        logger.info("Shell process exited")
        if self._on_exit is not None:
            self._on_exit()

    def _close_fd(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(fd)
        except RuntimeError:
            pass
        try:
            os.close(fd)
        except OSError:
            pass


def _reap(pid: int) -> bool:
    """Collect ``pid`` if it has exited. Returns True once it is gone."""
    try:
        done, _ = os.waitpid(pid, os.WNOHANG)
    except ChildProcessError:
        return True
    return done != 0


async def _terminate(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        _reap(pid)
        return
    loop = asyncio.get_running_loop()
    deadline = loop.time() + TERMINATE_TIMEOUT
    while loop.time() < deadline:
        if _reap(pid):
            return
        await asyncio.sleep(0.05)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    try:
        os.waitpid(pid, 0)
    except ChildProcessError:
        pass


class ShellError(Exception):
    """Raised when shell operations fail."""
