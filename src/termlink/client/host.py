"""Host side: shares a local shell with a paired viewer."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from termlink.client.session import ClientSession
from termlink.client.shell import PersistentShell, ShellError
from termlink.domain.messages import (
    Paired,
    PairedDeviceDisconnected,
    PairingCodeExpired,
    Registered,
    SystemMessage,
    TerminalDimensions,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
)
from termlink.domain.models import TERMINAL_TRANSPORT_STATES, Role, TransportState

logger = logging.getLogger(__name__)

# How long to collect the shell's first output before announcing it
STARTUP_DELAY = 0.5

ShellFactory = Callable[..., PersistentShell]


class HostSession(ClientSession):
    """Runs the shell and streams it to the viewer.

    On pairing the host starts the shell (sized to the viewer's terminal
    when known) and offers a direct connection. When the pairing code
    expires or the viewer leaves, it registers again for a new pairing.
    """

    role = Role.HOST

    def __init__(
        self,
        *args: Any,
        shell_factory: ShellFactory = PersistentShell,
        startup_delay: float = STARTUP_DELAY,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        terminal = self._settings.terminal
        self._shell_factory = shell_factory
        self._startup_delay = startup_delay
        self._cols = terminal.cols
        self._rows = terminal.rows
        self._shell: PersistentShell | None = None
        self._startup_buffer: list[str] | None = None
        self.pairing_code: str | None = None
        self._handlers.update(
            {
                PairingCodeExpired: self.on_pairing_code_expired,
                TerminalInput: self.on_terminal_input,
                TerminalResize: self.on_terminal_resize,
                TerminalDimensions: self.on_terminal_resize,
                TerminalOutput: self._ignore,
            }
        )

    @property
    def shell(self) -> PersistentShell | None:
        return self._shell

    @property
    def size(self) -> tuple[int, int]:
        return self._cols, self._rows

    async def close(self) -> None:
        await self._stop_shell()
        await super().close()

    # ------------------------------------------------------------------
    # Envelope handlers
    # ------------------------------------------------------------------

    def on_registered(self, message: Registered) -> None:
        self.pairing_code = message.pairing_code
        if message.pairing_code:
            self.status(f"Pairing code: {message.pairing_code}")
        else:
            super().on_registered(message)

    def on_paired(self, message: Paired) -> None:
        super().on_paired(message)
        self.pairing_code = None
        self.spawn(self._start_terminal())
        self.spawn(self.negotiator.start())

    def on_pairing_code_expired(self, message: PairingCodeExpired) -> None:
        if self.peer_id is not None:
            return
        self.status(f"{message.message}, requesting a new one")
        self.register()

    def on_paired_device_disconnected(self, message: PairedDeviceDisconnected) -> None:
        super().on_paired_device_disconnected(message)
        if self.negotiator.state is TransportState.CONNECTED:
            self.status("Relay partner gone but the direct connection is still active")
            return
        self.spawn(self._release())

    def on_terminal_input(self, message: TerminalInput) -> None:
        if self._shell is None or not self._shell.is_alive:
            logger.debug("Dropping input, no shell running")
            return
        try:
            self._shell.send_input(message.data)
        except ShellError as e:
            logger.warning("Input dropped: %s", e)

    def on_terminal_resize(self, message: TerminalResize | TerminalDimensions) -> None:
        self._cols, self._rows = message.cols, message.rows
        logger.info("Viewer terminal is %dx%d", message.cols, message.rows)
        if self._shell is not None:
            self._shell.resize(message.cols, message.rows)

    def on_transport_state(self, state: TransportState) -> None:
        super().on_transport_state(state)
        # A direct link that outlived the relay pairing is the last tie to the viewer
        if state in TERMINAL_TRANSPORT_STATES and self.peer_id is None and self._shell is not None:
            self.spawn(self._release())

    # ------------------------------------------------------------------
    # Shell plumbing
    # ------------------------------------------------------------------

    async def _start_terminal(self) -> None:
        if self._shell is not None and self._shell.is_alive:
            return
        self._startup_buffer = []
        shell = self._shell_factory(
            shell_command=self._settings.terminal.shell_command,
            rows=self._rows,
            cols=self._cols,
            on_output=self._on_shell_output,
            on_exit=self._on_shell_exit,
        )
        self._shell = shell
        self.status("Starting terminal session")
        await shell.start()
        await asyncio.sleep(self._startup_delay)
        if self._shell is not shell:
            return
        buffered = "".join(self._startup_buffer or [])
        self._startup_buffer = None
        self.mux.send(SystemMessage(type="terminal_ready"))
        if buffered:
            self.mux.send(TerminalOutput(data=buffered))

    def _on_shell_output(self, text: str) -> None:
        if self._startup_buffer is not None:
            self._startup_buffer.append(text)
            return
        self.mux.send(TerminalOutput(data=text))

    def _on_shell_exit(self) -> None:
        self._shell = None
        self._startup_buffer = None
        self.status("Terminal process exited")
        if self.peer_id is not None or self.negotiator.state is TransportState.CONNECTED:
            self.mux.send(SystemMessage(type="terminal_exited"))

    async def _stop_shell(self) -> None:
        shell = self._shell
        self._shell = None
        self._startup_buffer = None
        if shell is not None:
            await shell.stop()
            self.status("Terminal session closed")

    async def _release(self) -> None:
        """Drop the direct link and the shell, then wait for a new viewer."""
        await self.negotiator.reset()
        await self._stop_shell()
        if self.peer_id is None:
            self.register()

    def _ignore(self, message: Any) -> None:
        logger.debug("Host ignoring %s", message.event)
