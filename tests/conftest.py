"""Shared test fixtures for the termlink test suite.

Provides a controllable clock, a credential verifier with fixed tokens,
an in-memory peer transport, and a recording relay so the registry,
negotiator and client sessions can be exercised without any network.
"""

from __future__ import annotations

import asyncio

import pytest

from termlink.config.settings import Settings
from termlink.domain.messages import CandidatePayload, Message, SessionDescription
from termlink.domain.models import Identity
from termlink.server.auth import CredentialVerifier
from termlink.server.registry import SessionRegistry
from termlink.transport.base import PeerTransport, TransportError, TransportListener


# ---------------------------------------------------------------------------
# Server fixtures
# ---------------------------------------------------------------------------


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StaticVerifier(CredentialVerifier):
    """Accepts a fixed set of tokens."""

    def __init__(self, tokens: dict[str, Identity]) -> None:
        self.tokens = tokens

    def verify(self, credential: str) -> Identity | None:
        return self.tokens.get(credential)


ALICE = Identity(subject="alice-sub", email="alice@example.com", name="Alice")
BOB = Identity(subject="bob-sub", email="bob@example.com", name="Bob")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def verifier() -> StaticVerifier:
    return StaticVerifier({"alice-token": ALICE, "alice-token-2": ALICE, "bob-token": BOB})


@pytest.fixture
def registry(clock: FakeClock, verifier: StaticVerifier) -> SessionRegistry:
    """A registry with sequential pairing codes and a fake clock."""
    codes = iter(f"{n:06d}" for n in range(123456, 999999))
    return SessionRegistry(
        verifier=verifier,
        code_ttl=300.0,
        login_url=lambda device_id, role: f"/auth/google?deviceId={device_id}&role={role.value}",
        clock=clock,
        code_factory=lambda: next(codes),
    )


# ---------------------------------------------------------------------------
# Transport fixtures
# ---------------------------------------------------------------------------


class FakePeerTransport(PeerTransport):
    """In-memory transport that records every call."""

    def __init__(self, listener: TransportListener) -> None:
        self.listener = listener
        self.calls: list[str] = []
        self.applied: list[CandidatePayload] = []
        self.sent: list[str] = []
        self.closed = False
        self.open = False
        self.fail_send = False
        self.fail_create = False
        self.discovery = asyncio.Event()
        self.remote_gate: asyncio.Event | None = None
        self._local: SessionDescription | None = None

    async def create_offer(self) -> SessionDescription:
        self.calls.append("create_offer")
        if self.fail_create:
            raise TransportError("no network", backend="fake")
        return SessionDescription(sdp="v=0 offer", type="offer")

    async def create_answer(self) -> SessionDescription:
        self.calls.append("create_answer")
        return SessionDescription(sdp="v=0 answer", type="answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        self.calls.append("set_local")
        self._local = description

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.calls.append("set_remote")
        if self.remote_gate is not None:
            await self.remote_gate.wait()

    async def add_candidate(self, candidate: CandidatePayload) -> None:
        self.calls.append("add_candidate")
        self.applied.append(candidate)

    async def wait_for_discovery(self) -> None:
        await self.discovery.wait()

    @property
    def local_description(self) -> SessionDescription | None:
        return self._local

    @property
    def writable(self) -> bool:
        return self.open and not self.closed

    def send(self, data: str) -> None:
        if self.fail_send:
            raise TransportError("channel broken", backend="fake")
        self.sent.append(data)

    async def close(self) -> None:
        self.closed = True

    # Test helpers

    def finish_discovery(self, *candidates: str) -> None:
        for value in candidates:
            self.listener.on_candidate(
                CandidatePayload(candidate=value, sdp_mid="0", sdp_m_line_index=0)
            )
        self.discovery.set()

    def open_channel(self) -> None:
        self.open = True
        self.listener.on_channel_open()


class TransportFactoryRecorder:
    """Transport factory that keeps every transport it builds.

    ``instant_discovery``, ``remote_gate`` and ``fail_create`` configure
    the transports built afterwards.
    """

    def __init__(self) -> None:
        self.transports: list[FakePeerTransport] = []
        self.instant_discovery = True
        self.remote_gate: asyncio.Event | None = None
        self.fail_create = False

    def __call__(self, listener: TransportListener) -> FakePeerTransport:
        transport = FakePeerTransport(listener)
        if self.instant_discovery:
            transport.discovery.set()
        transport.remote_gate = self.remote_gate
        transport.fail_create = self.fail_create
        self.transports.append(transport)
        return transport

    @property
    def last(self) -> FakePeerTransport:
        return self.transports[-1]


@pytest.fixture
def transport_factory() -> TransportFactoryRecorder:
    return TransportFactoryRecorder()


# ---------------------------------------------------------------------------
# Client fixtures
# ---------------------------------------------------------------------------


class RecordingRelay:
    """Stands in for RelayConnection; keeps what the session sends."""

    def __init__(self) -> None:
        self.sent: list[Message] = []
        self.connected = True

    def send(self, message: Message) -> bool:
        if not self.connected:
            return False
        self.sent.append(message)
        return True

    def events(self) -> list[str]:
        return [m.event for m in self.sent]

    async def run(self) -> None:
        return None

    async def close(self) -> None:
        self.connected = False


@pytest.fixture
def relay() -> RecordingRelay:
    return RecordingRelay()


@pytest.fixture
def client_settings(tmp_path) -> Settings:
    settings = Settings()
    settings.client.state_dir = tmp_path / "state"
    settings.transport.discovery_timeout = 0.05
    settings.terminal.shell_command = "/bin/sh"
    return settings
