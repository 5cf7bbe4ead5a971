"""Viewer side: renders the host's terminal and forwards keystrokes."""

from __future__ import annotations

import logging
from typing import Any, Callable

from termlink.client.session import ClientSession
from termlink.domain.messages import (
    Error,
    Pair,
    Paired,
    PairedDeviceDisconnected,
    Registered,
    SystemMessage,
    TerminalDimensions,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
)
from termlink.domain.models import Role, TransportState
from termlink.transport.multiplexer import DeliveryPath

logger = logging.getLogger(__name__)


class ViewerSession(ClientSession):
    """Pairs with a host and mirrors its terminal.

    Args:
        code: Pairing code shown by the host. Not needed when both sides
            are logged in with the same account.
        output: Sink for terminal output text.
        size: Initial ``(cols, rows)`` of the local terminal.
    """

    role = Role.VIEWER

    def __init__(
        self,
        *args: Any,
        code: str | None = None,
        output: Callable[[str], None] | None = None,
        size: tuple[int, int] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(*args, **kwargs)
        terminal = self._settings.terminal
        self._code = code
        self._output = output
        self._cols, self._rows = size or (terminal.cols, terminal.rows)
        self.terminal_ready = False
        self._handlers.update(
            {
                TerminalOutput: self.on_terminal_output,
                TerminalDimensions: self._ignore,
                TerminalInput: self._ignore,
                TerminalResize: self._ignore,
            }
        )

    @property
    def size(self) -> tuple[int, int]:
        return self._cols, self._rows

    def send_input(self, data: str) -> DeliveryPath | None:
        if self.peer_id is None and self.negotiator.state is not TransportState.CONNECTED:
            return None
        return self.mux.send(TerminalInput(data=data))

    def resize(self, cols: int, rows: int) -> None:
        self._cols, self._rows = cols, rows
        if self.peer_id is not None:
            self.mux.send(TerminalResize(cols=cols, rows=rows))

    # ------------------------------------------------------------------
    # Envelope handlers
    # ------------------------------------------------------------------

    def on_registered(self, message: Registered) -> None:
        super().on_registered(message)
        if self._code and self.peer_id is None:
            self.status(f"Pairing with code {self._code}")
            self.send_relay(Pair(code=self._code, cols=self._cols, rows=self._rows))

    def on_paired(self, message: Paired) -> None:
        super().on_paired(message)
        # Pairs made through account discovery carried no size
        self.mux.send(TerminalResize(cols=self._cols, rows=self._rows))

    def on_error(self, message: Error) -> None:
        super().on_error(message)
        if self.peer_id is None and self._code:
            # Codes are single use; a retry on reconnect would fail the same way
            self._code = None

    def on_paired_device_disconnected(self, message: PairedDeviceDisconnected) -> None:
        super().on_paired_device_disconnected(message)
        self.terminal_ready = False
        if self.negotiator.state is not TransportState.CONNECTED:
            self.spawn(self.negotiator.reset())

    def on_system_message(self, message: SystemMessage) -> None:
        if message.type == "terminal_ready":
            self.terminal_ready = True
            self.status("Remote terminal ready")
        elif message.type == "terminal_exited":
            self.terminal_ready = False
            self.status("Remote terminal exited")
        else:
            super().on_system_message(message)

    def on_terminal_output(self, message: TerminalOutput) -> None:
        if self._output is not None:
            self._output(message.data)

    def _ignore(self, message: Any) -> None:
        logger.debug("Viewer ignoring %s", message.event)
