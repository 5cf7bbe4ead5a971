"""FastAPI signaling server.

Hosts the control WebSocket that devices register on, the health check,
and the external login flow:

    GET  /health                      -> {"status": "ok", "deviceCounts": {...}}
    WS   /ws                          <-> JSON envelopes
    GET  /auth/{provider}?deviceId=&role=   -> redirect to the provider
    GET  /auth/{provider}/callback?code=&state=
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator
from urllib.parse import urlencode

import uvicorn
from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import HTMLResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from termlink.config.settings import Settings
from termlink.domain.models import Role
from termlink.server.auth import (
    GoogleIdentityProvider,
    IdentityProvider,
    IdentityProviderError,
    TokenIssuer,
)
from termlink.server.hub import SignalingHub
from termlink.server.registry import SessionRegistry

logger = logging.getLogger(__name__)


class DeviceCounts(BaseModel):
    host: int = 0
    viewer: int = 0


class HealthResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str = "ok"
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    device_counts: DeviceCounts = Field(default_factory=DeviceCounts)


_LOGIN_DONE_PAGE = """<!doctype html>
<html><body style="font-family: sans-serif; text-align: center; padding-top: 4em">
<h2>Login successful</h2><p>You can close this window and return to termlink.</p>
</body></html>"""


def create_app(
    settings: Settings | None = None,
    registry: SessionRegistry | None = None,
    issuer: TokenIssuer | None = None,
    providers: dict[str, IdentityProvider] | None = None,
) -> FastAPI:
    """Create the signaling server application.

    Args:
        settings: Server configuration; defaults are used if None.
        registry: Optional pre-built session registry (for testing).
        issuer: Optional token issuer / credential verifier.
        providers: Identity providers by name. When None, Google is
            configured if a client id is set.
    """
    settings = settings or Settings()
    server = settings.server

    if issuer is None:
        issuer = TokenIssuer(
            settings.auth.token_secret.get_secret_value(),
            ttl=settings.auth.token_ttl_days * 24 * 3600,
        )
    if providers is None:
        providers = {}
        if settings.auth.google_client_id:
            providers["google"] = GoogleIdentityProvider(
                settings.auth.google_client_id,
                settings.auth.google_client_secret.get_secret_value(),
            )
    default_provider = next(iter(providers), "google")

    def login_url(device_id: str, role: Role) -> str:
        return f"/auth/{default_provider}?" + urlencode({"deviceId": device_id, "role": role.value})

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        r = app.state.registry
        if r is None:
            r = SessionRegistry(
                verifier=issuer,
                code_ttl=server.pairing_code_ttl,
                allow_anonymous=server.allow_anonymous,
                login_url=login_url,
                fixed_code=server.debug_pairing_code,
            )
            app.state.registry = r
        app.state.hub = SignalingHub(r)
        if server.debug_pairing_code:
            logger.warning("Debug mode: fixed pairing code %s", server.debug_pairing_code)
        logger.info("Signaling server started")
        yield
        await app.state.hub.close()
        logger.info("Signaling server stopped")

    app = FastAPI(
        title="termlink relay",
        description="Rendezvous and relay server for termlink hosts and viewers",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.registry = registry
    app.state.hub = None

    @app.get("/health")
    async def health_check() -> HealthResponse:
        hub: SignalingHub | None = app.state.hub
        counts = hub.counts() if hub else {}
        return HealthResponse(
            device_counts=DeviceCounts(
                host=counts.get(Role.HOST, 0),
                viewer=counts.get(Role.VIEWER, 0),
            )
        )

    @app.websocket("/ws")
    async def control_channel(websocket: WebSocket) -> None:
        hub: SignalingHub = app.state.hub
        await websocket.accept()
        connection_id = uuid.uuid4().hex
        hub.attach(connection_id, websocket)
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(frame.get("code", 1000))
                raw = frame.get("text") or frame.get("bytes")
                if raw:
                    await hub.handle(connection_id, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await hub.detach(connection_id)

    def _get_provider(name: str) -> IdentityProvider:
        provider = providers.get(name)
        if provider is None:
            raise HTTPException(status_code=404, detail=f"Unknown identity provider: {name}")
        return provider

    def _callback_uri(name: str) -> str:
        return f"{server.public_url.rstrip('/')}/auth/{name}/callback"

    @app.get("/auth/{provider}")
    async def login(
        provider: str,
        device_id: str = Query(alias="deviceId", min_length=1),
        role: Role = Query(),
    ) -> RedirectResponse:
        p = _get_provider(provider)
        state = issuer.sign_state({"deviceId": device_id, "role": role.value})
        return RedirectResponse(p.authorization_url(state, _callback_uri(provider)))

    @app.get("/auth/{provider}/callback")
    async def login_callback(provider: str, code: str, state: str) -> HTMLResponse:
        p = _get_provider(provider)
        data = issuer.verify_state(state)
        if not data or not data.get("deviceId"):
            raise HTTPException(status_code=400, detail="Invalid login state")
        try:
            identity = await p.exchange(code, _callback_uri(provider))
        except IdentityProviderError as e:
            logger.warning("Login via %s failed: %s", provider, e)
            raise HTTPException(status_code=401, detail="Authentication failed") from e

        token = issuer.issue(identity)
        hub: SignalingHub = app.state.hub
        if not await hub.authenticate(data["deviceId"], identity, token):
            raise HTTPException(status_code=409, detail="Device is no longer connected")
        return HTMLResponse(_LOGIN_DONE_PAGE)

    return app


def main(settings: Settings | None = None) -> None:
    """Run the signaling server."""
    settings = settings or Settings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    main()
