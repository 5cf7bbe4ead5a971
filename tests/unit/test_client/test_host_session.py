"""Tests for the host session with a fake shell, relay and transport."""

from __future__ import annotations

import asyncio

import pytest

from termlink.client.host import HostSession
from termlink.client.store import DeviceStore
from termlink.domain.messages import (
    AuthError,
    Authenticated,
    LoginRequired,
    Paired,
    PairedDeviceDisconnected,
    PairingCodeExpired,
    Register,
    Registered,
    SessionDescription,
    TerminalDimensions,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
    UserInfo,
    WebRTCAnswer,
)
from termlink.domain.models import Role, TransportState


class FakeShell:
    """Stands in for PersistentShell."""

    def __init__(self, shell_command: str, rows: int, cols: int, on_output, on_exit) -> None:
        self.shell_command = shell_command
        self.rows = rows
        self.cols = cols
        self.on_output = on_output
        self.on_exit = on_exit
        self.inputs: list[str] = []
        self.is_alive = False
        self.stopped = False

    async def start(self) -> None:
        self.is_alive = True
        self.on_output("$ ")

    async def stop(self) -> None:
        self.is_alive = False
        self.stopped = True

    def send_input(self, data: str) -> None:
        self.inputs.append(data)

    def resize(self, cols: int, rows: int) -> None:
        self.cols, self.rows = cols, rows


async def _settle() -> None:
    for _ in range(20):
        await asyncio.sleep(0)


@pytest.fixture
def opened() -> list[str]:
    return []


@pytest.fixture
def host(client_settings, relay, transport_factory, opened) -> HostSession:
    return HostSession(
        client_settings,
        relay=relay,
        transport_factory=transport_factory,
        open_browser=opened.append,
        shell_factory=FakeShell,
        startup_delay=0,
    )


async def _pair(host: HostSession) -> None:
    host.on_connect()
    host.on_message(Registered(role=Role.HOST, pairing_code="123456"))
    host.on_message(TerminalDimensions(cols=120, rows=40))
    host.on_message(Paired(peer_id="viewer-1", message="Viewer connected"))
    await _settle()


async def _go_direct(host: HostSession, transport_factory) -> None:
    host.on_message(WebRTCAnswer(description=SessionDescription(sdp="v=0", type="answer")))
    await _settle()
    transport_factory.last.open_channel()
    assert host.negotiator.state is TransportState.CONNECTED


class TestHostRegistration:
    @pytest.mark.asyncio
    async def test_registers_on_connect(self, host: HostSession, relay) -> None:
        host.on_connect()
        assert relay.sent == [Register(role=Role.HOST, device_id=host.device_id)]

    @pytest.mark.asyncio
    async def test_pairing_code_shown(self, host: HostSession) -> None:
        statuses: list[str] = []
        host._on_status = statuses.append
        host.on_message(Registered(role=Role.HOST, pairing_code="654321"))
        assert host.pairing_code == "654321"
        assert statuses == ["Pairing code: 654321"]

    @pytest.mark.asyncio
    async def test_expired_code_reregisters(self, host: HostSession, relay) -> None:
        host.on_connect()
        host.on_message(PairingCodeExpired(message="Pairing code expired", expired_code="123456"))
        assert relay.events() == ["register", "register"]

    @pytest.mark.asyncio
    async def test_login_required_opens_browser(self, host: HostSession, opened) -> None:
        host.on_message(LoginRequired(login_url="/auth/google?deviceId=d&role=host"))
        assert opened == ["http://localhost:3000/auth/google?deviceId=d&role=host"]

    @pytest.mark.asyncio
    async def test_authenticated_token_used_next_time(self, host: HostSession, relay, client_settings) -> None:
        host.on_message(Authenticated(token="tok-1", user=UserInfo(id="u1", email="u1@example.com")))
        assert DeviceStore(client_settings.client.state_dir).load_token() == "tok-1"
        # No re-register: the server already applied the identity
        assert relay.sent == []
        host.on_connect()
        assert relay.sent[-1].credential == "tok-1"

    @pytest.mark.asyncio
    async def test_auth_error_clears_token_and_retries(self, host: HostSession, relay, client_settings) -> None:
        DeviceStore(client_settings.client.state_dir).save_token("stale")
        host.on_message(AuthError(message="Invalid or expired credential"))
        assert relay.sent == [Register(role=Role.HOST, device_id=host.device_id)]


class TestHostTerminal:
    @pytest.mark.asyncio
    async def test_pairing_starts_shell_and_offers(self, host: HostSession, relay) -> None:
        await _pair(host)

        shell = host.shell
        assert shell is not None and shell.is_alive
        assert (shell.cols, shell.rows) == (120, 40)
        events = relay.events()
        assert "webrtc:offer" in events
        ready = events.index("system:message")
        # Output produced during startup follows the ready notice
        assert events[ready + 1] == "terminal:output"
        assert relay.sent[ready + 1] == TerminalOutput(data="$ ")
        await host.close()

    @pytest.mark.asyncio
    async def test_relay_input_and_output(self, host: HostSession, relay) -> None:
        await _pair(host)
        host.on_message(TerminalInput(data="ls\r"))
        assert host.shell.inputs == ["ls\r"]

        host.shell.on_output("file.txt\r\n")
        assert relay.sent[-1] == TerminalOutput(data="file.txt\r\n")
        await host.close()

    @pytest.mark.asyncio
    async def test_resize_applies_to_shell(self, host: HostSession) -> None:
        await _pair(host)
        host.on_message(TerminalResize(cols=100, rows=30))
        assert (host.shell.cols, host.shell.rows) == (100, 30)
        await host.close()

    @pytest.mark.asyncio
    async def test_direct_channel_carries_terminal_io(self, host: HostSession, relay, transport_factory) -> None:
        await _pair(host)
        await _go_direct(host, transport_factory)
        relayed_before = len(relay.sent)

        host.shell.on_output("direct\r\n")
        assert transport_factory.last.sent == ['{"event":"terminal:output","data":"direct\\r\\n"}']
        assert len(relay.sent) == relayed_before

        # Relayed input is a duplicate while the direct channel is live
        host.on_message(TerminalInput(data="dup"))
        transport_factory.last.listener.on_channel_message('{"event": "terminal:input", "data": "pwd\\r"}')
        assert host.shell.inputs == ["pwd\r"]
        await host.close()


class TestHostPartnerLoss:
    @pytest.mark.asyncio
    async def test_viewer_gone_tears_down_and_reregisters(self, host: HostSession, relay, transport_factory) -> None:
        await _pair(host)
        shell = host.shell

        host.on_message(PairedDeviceDisconnected(message="Paired viewer device disconnected"))
        await _settle()

        assert shell.stopped
        assert host.shell is None
        assert host.negotiator.state is TransportState.IDLE
        assert transport_factory.last.closed
        assert relay.events()[-1] == "register"

    @pytest.mark.asyncio
    async def test_live_direct_channel_survives_relay_loss(self, host: HostSession, relay, transport_factory) -> None:
        await _pair(host)
        await _go_direct(host, transport_factory)
        registers = relay.events().count("register")

        host.on_message(PairedDeviceDisconnected(message="Paired viewer device disconnected"))
        await _settle()

        assert host.shell.is_alive
        assert host.negotiator.state is TransportState.CONNECTED
        assert relay.events().count("register") == registers

        # When the direct channel finally drops, the host starts over
        transport_factory.last.listener.on_channel_close()
        await _settle()
        assert host.shell is None
        assert relay.events().count("register") == registers + 1

    @pytest.mark.asyncio
    async def test_shell_exit_notifies_viewer(self, host: HostSession, relay) -> None:
        await _pair(host)
        host.shell.on_exit()
        assert host.shell is None
        assert relay.sent[-1].event == "system:message"
        assert relay.sent[-1].type == "terminal_exited"
