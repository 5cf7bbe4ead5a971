"""Tests for the FastAPI signaling server routes."""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from termlink.config.settings import Settings
from termlink.domain.models import Identity
from termlink.server.app import create_app
from termlink.server.auth import IdentityProvider, IdentityProviderError, TokenIssuer
from termlink.server.registry import SessionRegistry


class FakeProvider(IdentityProvider):
    """Identity provider that accepts the code 'good'."""

    name = "fake"

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        return f"https://idp.example/login?state={state}&redirect_uri={redirect_uri}"

    async def exchange(self, code: str, redirect_uri: str) -> Identity:
        if code != "good":
            raise IdentityProviderError("bad code", provider=self.name)
        return Identity(subject="alice-sub", email="alice@example.com", name="Alice")


@pytest.fixture
def issuer() -> TokenIssuer:
    return TokenIssuer("test-secret")


@pytest.fixture
def client(registry: SessionRegistry, issuer: TokenIssuer) -> TestClient:
    app = create_app(Settings(), registry=registry, issuer=issuer, providers={"fake": FakeProvider()})
    with TestClient(app) as test_client:
        yield test_client


def _state_from(location: str) -> str:
    return parse_qs(urlparse(location).query)["state"][0]


class TestHealth:
    def test_health_reports_counts(self, client: TestClient) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["deviceCounts"] == {"host": 0, "viewer": 0}
        assert "timestamp" in data

    def test_health_counts_registered_devices(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "register", "role": "host", "deviceId": "host-1"})
            assert ws.receive_json()["event"] == "registered"
            data = client.get("/health").json()
            assert data["deviceCounts"] == {"host": 1, "viewer": 0}


class TestControlChannel:
    def test_code_pairing_and_relay(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as viewer:
            host.send_json({"event": "register", "role": "host", "deviceId": "host-1"})
            registered = host.receive_json()
            assert registered["event"] == "registered"
            code = registered["pairingCode"]

            viewer.send_json({"event": "register", "role": "viewer", "deviceId": "viewer-1"})
            assert viewer.receive_json()["event"] == "registered"
            viewer.send_json({"event": "pair", "code": code, "cols": 90, "rows": 20})

            assert viewer.receive_json() == {
                "event": "paired",
                "peerId": "host-1",
                "message": "Successfully paired with host",
            }
            assert host.receive_json() == {"event": "terminal:dimensions", "cols": 90, "rows": 20}
            assert host.receive_json()["event"] == "paired"

            viewer.send_json({"event": "terminal:input", "data": "ls\r"})
            assert host.receive_json() == {"event": "terminal:input", "data": "ls\r"}

    def test_binary_frames_keep_the_pairing(self, client: TestClient, registry: SessionRegistry) -> None:
        with client.websocket_connect("/ws") as host, client.websocket_connect("/ws") as viewer:
            host.send_json({"event": "register", "role": "host", "deviceId": "host-1"})
            code = host.receive_json()["pairingCode"]
            viewer.send_json({"event": "register", "role": "viewer", "deviceId": "viewer-1"})
            viewer.receive_json()
            viewer.send_json({"event": "pair", "code": code})
            assert viewer.receive_json()["event"] == "paired"
            assert host.receive_json()["event"] == "paired"

            viewer.send_bytes(b'{"event":"terminal:input","data":"x"}')
            assert host.receive_json() == {"event": "terminal:input", "data": "x"}

            viewer.send_bytes(b"\xff\xfe not json")
            viewer.send_json({"event": "terminal:input", "data": "ls\r"})
            assert host.receive_json() == {"event": "terminal:input", "data": "ls\r"}
            assert registry.partner_of("viewer-1").device_id == "host-1"

    def test_disconnect_notifies_partner(self, client: TestClient) -> None:
        with client.websocket_connect("/ws") as viewer:
            with client.websocket_connect("/ws") as host:
                host.send_json({"event": "register", "role": "host", "deviceId": "host-1"})
                code = host.receive_json()["pairingCode"]
                viewer.send_json({"event": "register", "role": "viewer", "deviceId": "viewer-1"})
                viewer.receive_json()
                viewer.send_json({"event": "pair", "code": code})
                assert viewer.receive_json()["event"] == "paired"
            assert viewer.receive_json() == {
                "event": "paired_device_disconnected",
                "message": "Paired host device disconnected",
            }


class TestLogin:
    def test_login_redirects_to_provider(self, client: TestClient, issuer: TokenIssuer) -> None:
        resp = client.get(
            "/auth/fake", params={"deviceId": "viewer-1", "role": "viewer"}, follow_redirects=False
        )
        assert resp.status_code in (302, 307)
        state = _state_from(resp.headers["location"])
        assert issuer.verify_state(state) == {"deviceId": "viewer-1", "role": "viewer"}

    def test_unknown_provider(self, client: TestClient) -> None:
        resp = client.get("/auth/nope", params={"deviceId": "d", "role": "host"}, follow_redirects=False)
        assert resp.status_code == 404

    def test_callback_rejects_forged_state(self, client: TestClient) -> None:
        resp = client.get("/auth/fake/callback", params={"code": "good", "state": "forged.state"})
        assert resp.status_code == 400

    def test_callback_rejects_bad_code(self, client: TestClient, issuer: TokenIssuer) -> None:
        state = issuer.sign_state({"deviceId": "viewer-1", "role": "viewer"})
        resp = client.get("/auth/fake/callback", params={"code": "bad", "state": state})
        assert resp.status_code == 401

    def test_callback_for_gone_device(self, client: TestClient, issuer: TokenIssuer) -> None:
        state = issuer.sign_state({"deviceId": "viewer-1", "role": "viewer"})
        resp = client.get("/auth/fake/callback", params={"code": "good", "state": state})
        assert resp.status_code == 409

    def test_callback_pushes_token_to_device(self, client: TestClient, issuer: TokenIssuer) -> None:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "register", "role": "viewer", "deviceId": "viewer-1"})
            assert ws.receive_json()["event"] == "registered"

            state = issuer.sign_state({"deviceId": "viewer-1", "role": "viewer"})
            resp = client.get("/auth/fake/callback", params={"code": "good", "state": state})
            assert resp.status_code == 200
            assert "Login successful" in resp.text

            authenticated = ws.receive_json()
            assert authenticated["event"] == "authenticated"
            assert authenticated["user"]["email"] == "alice@example.com"
            assert issuer.verify(authenticated["token"]).subject == "alice-sub"
            assert ws.receive_json()["event"] == "waiting_for_peer"
