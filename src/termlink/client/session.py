"""Common client behaviour shared by the host and the viewer.

A session owns the relay connection, the direct transport negotiator and
the multiplexer that chooses between them. It registers on every
(re)connect, drives the external login flow, and dispatches inbound
envelopes to per-kind handlers that subclasses extend.
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from typing import Any, Awaitable, Callable
from urllib.parse import urljoin

from termlink.client.relay import RelayConnection
from termlink.client.store import DeviceStore
from termlink.config.settings import Settings
from termlink.domain.messages import (
    SIGNALING_EVENTS,
    TERMINAL_EVENTS,
    AuthError,
    Authenticated,
    Error,
    LoginRequired,
    Message,
    Paired,
    PairedDeviceDisconnected,
    Register,
    Registered,
    SystemMessage,
    WaitingForPeer,
)
from termlink.domain.models import Role, TransportState
from termlink.transport.multiplexer import IOMultiplexer
from termlink.transport.negotiator import TransportFactory, TransportNegotiator

logger = logging.getLogger(__name__)


class ClientSession:
    """Base class for host and viewer sessions.

    Args:
        settings: Client, transport and terminal configuration.
        store: Device id and token storage. Defaults to the configured
            state directory.
        relay: Relay connection to use. Built from settings when None;
            tests pass a stand-in with a ``send(message)`` method.
        transport_factory: Builds direct transports. Defaults to aiortc.
        on_status: Called with human-readable status lines.
        open_browser: Opens the login URL.
    """

    role: Role

    def __init__(
        self,
        settings: Settings,
        store: DeviceStore | None = None,
        relay: RelayConnection | None = None,
        transport_factory: TransportFactory | None = None,
        on_status: Callable[[str], None] | None = None,
        open_browser: Callable[[str], Any] = webbrowser.open,
    ) -> None:
        self._settings = settings
        self._store = store or DeviceStore(settings.client.state_dir)
        self._on_status = on_status
        self._open_browser = open_browser
        self._tasks: set[asyncio.Task[Any]] = set()
        self.device_id = self._store.device_id(self.role)
        self.peer_id: str | None = None

        if relay is None:
            relay = RelayConnection(
                settings.client.server_url,
                on_connect=self.on_connect,
                on_message=self.on_message,
                on_disconnect=self.on_disconnect,
                reconnect_delay=settings.client.reconnect_delay,
                reconnect_max_delay=settings.client.reconnect_max_delay,
            )
        self._relay = relay

        if transport_factory is None:
            from termlink.transport.webrtc import aiortc_transport_factory

            transport_factory = aiortc_transport_factory(
                settings.transport.ice_servers, settings.transport.channel_label
            )
        self.negotiator = TransportNegotiator(
            self.role,
            signal=self.send_relay,
            transport_factory=transport_factory,
            discovery_timeout=settings.transport.discovery_timeout,
            on_state_change=self.on_transport_state,
            on_channel_message=self._on_channel_message,
        )
        self.mux = IOMultiplexer(self.negotiator, self.send_relay, self.dispatch)

        self._handlers: dict[type[Message], Callable[[Any], None]] = {
            Registered: self.on_registered,
            LoginRequired: self.on_login_required,
            AuthError: self.on_auth_error,
            Authenticated: self.on_authenticated,
            WaitingForPeer: self.on_waiting_for_peer,
            Paired: self.on_paired,
            PairedDeviceDisconnected: self.on_paired_device_disconnected,
            Error: self.on_error,
            SystemMessage: self.on_system_message,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Run until the relay connection is closed."""
        await self._relay.run()

    async def close(self) -> None:
        await self.negotiator.close()
        await self._relay.close()
        for task in list(self._tasks):
            task.cancel()

    def register(self) -> None:
        """Announce this device, presenting a stored token if there is one."""
        self.send_relay(
            Register(role=self.role, device_id=self.device_id, credential=self._store.load_token())
        )

    def send_relay(self, message: Message) -> bool:
        return self._relay.send(message)

    # ------------------------------------------------------------------
    # Relay callbacks
    # ------------------------------------------------------------------

    def on_connect(self) -> None:
        self.status("Connected to relay server")
        self.register()

    def on_disconnect(self) -> None:
        self.peer_id = None
        self.status("Lost connection to relay server")

    def on_message(self, message: Message) -> None:
        """Entry point for every envelope received over the relay."""
        if message.event in SIGNALING_EVENTS:
            self.spawn(self.negotiator.handle(message))
        elif message.event in TERMINAL_EVENTS:
            self.mux.receive_from_relay(message)
        else:
            self.dispatch(message)

    def dispatch(self, message: Message) -> None:
        handler = self._handlers.get(type(message))
        if handler is None:
            logger.debug("No handler for %s", message.event)
            return
        handler(message)

    # ------------------------------------------------------------------
    # Envelope handlers
    # ------------------------------------------------------------------

    def on_registered(self, message: Registered) -> None:
        self.status(message.message or f"Registered as {self.role.value}")

    def on_login_required(self, message: LoginRequired) -> None:
        url = urljoin(self._settings.client.server_url, message.login_url)
        self.status(f"Login required, opening {url}")
        self._open_browser(url)

    def on_authenticated(self, message: Authenticated) -> None:
        # The server has already applied the identity to this connection
        self._store.save_token(message.token)
        who = message.user.email or message.user.name or message.user.id
        self.status(f"Logged in as {who}")

    def on_auth_error(self, message: AuthError) -> None:
        self.status(f"Authentication failed: {message.message}")
        self._store.clear_token()
        self.register()

    def on_waiting_for_peer(self, message: WaitingForPeer) -> None:
        self.status(message.message)

    def on_paired(self, message: Paired) -> None:
        self.peer_id = message.peer_id
        self.status(message.message or f"Paired with {message.peer_id}")

    def on_paired_device_disconnected(self, message: PairedDeviceDisconnected) -> None:
        self.peer_id = None
        self.status(message.message)

    def on_error(self, message: Error) -> None:
        self.status(f"Error: {message.message}")

    def on_system_message(self, message: SystemMessage) -> None:
        logger.debug("System message %s: %r", message.type, message.payload)

    def on_transport_state(self, state: TransportState) -> None:
        if state is TransportState.CONNECTED:
            self.status("Direct connection established")
        elif state in (TransportState.FAILED, TransportState.DISCONNECTED, TransportState.CLOSED):
            self.status(f"Direct connection {state.value}, using relay")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def status(self, text: str) -> None:
        logger.info(text)
        if self._on_status is not None:
            self._on_status(text)

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Session task failed: %s", error, exc_info=error)

    def _on_channel_message(self, data: str) -> None:
        self.mux.receive_from_direct(data)
