"""Tests for the envelope wire format."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from termlink.domain.messages import (
    DATA_PLANE_EVENTS,
    RELAYED_EVENTS,
    CandidatePayload,
    Pair,
    Register,
    Registered,
    SystemMessage,
    TerminalOutput,
    WebRTCIceCandidate,
    WebRTCOffer,
    encode_envelope,
    parse_envelope,
)
from termlink.domain.models import TRANSPORT_TRANSITIONS, Role, TransportState


class TestEnvelopes:
    def test_register_wire_form(self) -> None:
        raw = encode_envelope(Register(role=Role.HOST, device_id="d-1"))
        assert json.loads(raw) == {"event": "register", "role": "host", "deviceId": "d-1"}

    def test_parse_dispatches_on_event(self) -> None:
        message = parse_envelope('{"event": "registered", "role": "host", "pairingCode": "123456"}')
        assert isinstance(message, Registered)
        assert message.pairing_code == "123456"

    def test_candidate_fields_are_camel_case(self) -> None:
        message = WebRTCIceCandidate(
            candidate=CandidatePayload(candidate="candidate:1 1 udp 1 10.0.0.1 5000 typ host", sdp_mid="0", sdp_m_line_index=0)
        )
        data = json.loads(encode_envelope(message))
        assert data["candidate"] == {
            "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        }

    def test_offer_parses_description(self) -> None:
        message = parse_envelope(
            '{"event": "webrtc:offer", "description": {"type": "offer", "sdp": "v=0"}}'
        )
        assert isinstance(message, WebRTCOffer)
        assert message.description.type == "offer"

    def test_terminal_output_keeps_escape_sequences(self) -> None:
        text = "\x1b[32mok\x1b[0m\r\n"
        message = parse_envelope(encode_envelope(TerminalOutput(data=text)))
        assert message == TerminalOutput(data=text)

    def test_system_message_payload_is_opaque(self) -> None:
        message = parse_envelope('{"event": "system:message", "type": "terminal_ready", "payload": {"a": [1]}}')
        assert isinstance(message, SystemMessage)
        assert message.payload == {"a": [1]}

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            '{"event": "teleport"}',
            '{"event": "pair"}',
            '{"event": "register", "role": "admin", "deviceId": "x"}',
        ],
    )
    def test_malformed_envelopes_dropped(self, raw: str) -> None:
        assert parse_envelope(raw) is None

    def test_unknown_fields_ignored(self) -> None:
        message = parse_envelope('{"event": "terminal:output", "data": "x", "seq": 4}')
        assert message == TerminalOutput(data="x")

    def test_pair_dimensions_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            Pair(code="123456", cols=0, rows=10)

    def test_data_plane_is_relayed(self) -> None:
        assert DATA_PLANE_EVENTS <= RELAYED_EVENTS
        assert "register" not in RELAYED_EVENTS


class TestTransportTransitions:
    def test_reset_path_from_connected(self) -> None:
        assert TransportState.CLOSED in TRANSPORT_TRANSITIONS[TransportState.CONNECTED]
        assert TransportState.IDLE not in TRANSPORT_TRANSITIONS[TransportState.CONNECTED]
        assert TransportState.IDLE in TRANSPORT_TRANSITIONS[TransportState.CLOSED]

    def test_every_state_reaches_idle(self) -> None:
        for state in TransportState:
            if state is TransportState.IDLE:
                continue
            reachable = TRANSPORT_TRANSITIONS[state]
            assert TransportState.IDLE in reachable or any(
                TransportState.IDLE in TRANSPORT_TRANSITIONS[s] for s in reachable
            )

    def test_role_opposite(self) -> None:
        assert Role.HOST.opposite is Role.VIEWER
        assert Role.VIEWER.opposite is Role.HOST
