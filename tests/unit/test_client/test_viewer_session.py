"""Tests for the viewer session."""

from __future__ import annotations

import asyncio

import pytest

from termlink.client.viewer import ViewerSession
from termlink.domain.messages import (
    Error,
    Pair,
    Paired,
    PairedDeviceDisconnected,
    Registered,
    SessionDescription,
    SystemMessage,
    TerminalOutput,
    TerminalResize,
    WaitingForPeer,
    WebRTCOffer,
)
from termlink.domain.models import Role, TransportState
from termlink.transport.multiplexer import DeliveryPath

OFFER = WebRTCOffer(description=SessionDescription(sdp="v=0 offer", type="offer"))


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def screen() -> list[str]:
    return []


@pytest.fixture
def viewer(client_settings, relay, transport_factory, screen) -> ViewerSession:
    return ViewerSession(
        client_settings,
        relay=relay,
        transport_factory=transport_factory,
        open_browser=lambda url: None,
        code="123456",
        output=screen.append,
        size=(132, 43),
    )


class TestViewerPairing:
    @pytest.mark.asyncio
    async def test_redeems_code_with_size(self, viewer: ViewerSession, relay) -> None:
        viewer.on_connect()
        viewer.on_message(Registered(role=Role.VIEWER))
        assert relay.events() == ["register", "pair"]
        assert relay.sent[-1] == Pair(code="123456", cols=132, rows=43)

    @pytest.mark.asyncio
    async def test_no_code_waits_for_account_pairing(self, client_settings, relay, transport_factory) -> None:
        viewer = ViewerSession(client_settings, relay=relay, transport_factory=transport_factory)
        statuses: list[str] = []
        viewer._on_status = statuses.append
        viewer.on_message(Registered(role=Role.VIEWER))
        viewer.on_message(WaitingForPeer(message="Waiting for a host signed in as the same user..."))
        assert relay.events() == []
        assert statuses[-1].startswith("Waiting for a host")

    @pytest.mark.asyncio
    async def test_rejected_code_not_retried(self, viewer: ViewerSession, relay) -> None:
        viewer.on_message(Registered(role=Role.VIEWER))
        viewer.on_message(Error(message="Invalid or expired pairing code"))
        viewer.on_message(Registered(role=Role.VIEWER))
        assert relay.events() == ["pair"]

    @pytest.mark.asyncio
    async def test_paired_sends_size(self, viewer: ViewerSession, relay) -> None:
        viewer.on_message(Paired(peer_id="host-1", message="Successfully paired with host"))
        assert viewer.peer_id == "host-1"
        assert relay.sent[-1] == TerminalResize(cols=132, rows=43)


class TestViewerTerminal:
    @pytest.mark.asyncio
    async def test_relayed_output_rendered(self, viewer: ViewerSession, screen) -> None:
        viewer.on_message(Paired(peer_id="host-1"))
        viewer.on_message(SystemMessage(type="terminal_ready"))
        viewer.on_message(TerminalOutput(data="$ "))
        assert viewer.terminal_ready is True
        assert screen == ["$ "]

    @pytest.mark.asyncio
    async def test_input_requires_partner(self, viewer: ViewerSession, relay) -> None:
        assert viewer.send_input("ls") is None
        viewer.on_message(Paired(peer_id="host-1"))
        assert viewer.send_input("ls") is DeliveryPath.RELAY
        assert relay.events()[-1] == "terminal:input"

    @pytest.mark.asyncio
    async def test_resize_forwarded(self, viewer: ViewerSession, relay) -> None:
        viewer.resize(100, 20)
        assert relay.sent == []
        viewer.on_message(Paired(peer_id="host-1"))
        viewer.resize(90, 25)
        assert relay.sent[-1] == TerminalResize(cols=90, rows=25)
        assert viewer.size == (90, 25)

    @pytest.mark.asyncio
    async def test_answers_offer_and_switches_to_direct(
        self, viewer: ViewerSession, relay, transport_factory, screen
    ) -> None:
        viewer.on_message(Paired(peer_id="host-1"))
        viewer.on_message(OFFER)
        await _settle()
        assert "webrtc:answer" in relay.events()
        assert viewer.negotiator.state is TransportState.CONNECTING

        transport = transport_factory.last
        transport.open_channel()

        # Output now arrives on the direct channel; relayed copies are dropped
        transport.listener.on_channel_message('{"event":"terminal:output","data":"direct"}')
        viewer.on_message(TerminalOutput(data="direct"))
        assert screen == ["direct"]

        assert viewer.send_input("ls\r") is DeliveryPath.DIRECT
        assert transport.sent == ['{"event":"terminal:input","data":"ls\\r"}']
        await viewer.close()

    @pytest.mark.asyncio
    async def test_host_gone_resets_transport(self, viewer: ViewerSession, transport_factory) -> None:
        viewer.on_message(Paired(peer_id="host-1"))
        viewer.on_message(OFFER)
        await _settle()

        viewer.on_message(PairedDeviceDisconnected(message="Paired host device disconnected"))
        await _settle()

        assert viewer.peer_id is None
        assert viewer.negotiator.state is TransportState.IDLE
        assert transport_factory.last.closed
