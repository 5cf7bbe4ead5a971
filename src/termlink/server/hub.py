"""Signaling hub: live control connections and effect application.

The hub owns the map of connection ids to WebSocket objects. It decodes
incoming envelopes, hands them to the registry (registration, pairing)
or the router (everything relayed), and applies the effects they return.
Sends are best-effort: a failed send is logged and dropped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from termlink.domain.messages import (
    AuthError,
    Error,
    GOING_AWAY_CLOSE_CODE,
    LoginRequired,
    Message,
    Pair,
    Register,
    SUPERSEDED_CLOSE_CODE,
    encode_envelope,
    parse_envelope,
)
from termlink.domain.models import Identity, Role
from termlink.server.effects import CancelExpiry, Close, Deliver, Effect, ScheduleExpiry
from termlink.server.registry import AuthRequired, NotRegistered, RegistryError, SessionRegistry
from termlink.server.router import MessageRouter

logger = logging.getLogger(__name__)


class SignalingHub:
    """Connects WebSocket sessions to the registry and router."""

    def __init__(self, registry: SessionRegistry, router: MessageRouter | None = None) -> None:
        self._registry = registry
        self._router = router or MessageRouter(registry)
        self._connections: dict[str, Any] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def attach(self, connection_id: str, websocket: Any) -> None:
        """Track a newly accepted control connection."""
        self._connections[connection_id] = websocket
        logger.info("Connection opened: %s", connection_id)

    async def detach(self, connection_id: str) -> None:
        """Forget a closed connection and unregister its device."""
        self._connections.pop(connection_id, None)
        device_id = self._registry.device_for_connection(connection_id)
        if device_id is not None:
            await self.apply(self._registry.unregister(device_id, connection_id))
        logger.info("Connection closed: %s", connection_id)

    async def handle(self, connection_id: str, raw: str | bytes) -> None:
        """Process one envelope received on ``connection_id``.

        Binary frames are accepted when they hold UTF-8 JSON and are relayed
        as text. Anything undecodable is dropped.
        """
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug("Dropping non UTF-8 frame from %s", connection_id)
                return
        message = parse_envelope(raw)
        if message is None:
            return
        device_id = self._registry.device_for_connection(connection_id)
        try:
            if isinstance(message, Register):
                effects = self._registry.register(
                    connection_id, message.device_id, message.role, message.credential
                )
            elif isinstance(message, Pair):
                if device_id is None:
                    raise NotRegistered("Device not registered")
                effects = self._registry.redeem(message.code, device_id, message.cols, message.rows)
            else:
                effects = self._router.route(device_id, message, raw)
        except AuthRequired as e:
            reply: Message
            if e.invalid:
                reply = AuthError(message=str(e))
            else:
                reply = LoginRequired(login_url=e.login_url)
            effects = [Deliver(connection_id=connection_id, message=reply)]
        except RegistryError as e:
            logger.info("Rejected %s from %s: %s", message.event, connection_id, e)
            effects = [Deliver(connection_id=connection_id, message=Error(message=str(e)))]
        await self.apply(effects)

    async def authenticate(self, device_id: str, identity: Identity, token: str) -> bool:
        """Push a token issued by the login callback to its device.

        Returns False if no connection is registered for ``device_id``.
        """
        try:
            effects = self._registry.authenticate(device_id, identity, token)
        except NotRegistered:
            logger.warning("Login completed for unknown device %s", device_id)
            return False
        await self.apply(effects)
        return True

    async def apply(self, effects: list[Effect]) -> None:
        """Carry out registry / router effects in order."""
        for effect in effects:
            if isinstance(effect, Deliver):
                await self._send(effect)
            elif isinstance(effect, Close):
                await self._close(effect.connection_id, effect.reason, SUPERSEDED_CLOSE_CODE)
            elif isinstance(effect, ScheduleExpiry):
                self._arm(effect.code, effect.delay)
            elif isinstance(effect, CancelExpiry):
                handle = self._timers.pop(effect.code, None)
                if handle is not None:
                    handle.cancel()

    def counts(self) -> dict[Role, int]:
        return self._registry.counts()

    async def close(self) -> None:
        """Close every connection and disarm all timers."""
        for connection_id in list(self._connections):
            await self._close(connection_id, "server shutdown", GOING_AWAY_CLOSE_CODE)
        await self.apply(self._registry.close())
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()

    async def _send(self, effect: Deliver) -> None:
        websocket = self._connections.get(effect.connection_id)
        if websocket is None:
            logger.debug("Dropping %s for gone connection %s", effect.message.event, effect.connection_id)
            return
        text = effect.raw if effect.raw is not None else encode_envelope(effect.message)
        try:
            await websocket.send_text(text)
        except Exception as e:
            logger.info(
                "Dropping %s for %s: %s", effect.message.event, effect.connection_id, e
            )

    async def _close(self, connection_id: str, reason: str, code: int) -> None:
        websocket = self._connections.pop(connection_id, None)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("Close of %s failed: %s", connection_id, e)

    def _arm(self, code: str, delay: float) -> None:
        previous = self._timers.pop(code, None)
        if previous is not None:
            previous.cancel()
        loop = asyncio.get_running_loop()
        self._timers[code] = loop.call_later(delay, self._on_code_expired, code)

    def _on_code_expired(self, code: str) -> None:
        self._timers.pop(code, None)
        effects = self._registry.expire_code(code)
        if not effects:
            return
        task = asyncio.get_running_loop().create_task(self.apply(effects))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
