"""Wire envelopes exchanged between clients and the signaling server.

Every envelope is a JSON object whose ``event`` key names its kind; the
remaining keys are camelCase fields. The same encoding is used on the
relay WebSocket and on the direct data channel. All kinds form one
closed discriminated union, ``Envelope``.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

from termlink.domain.models import Role

logger = logging.getLogger(__name__)


class Message(BaseModel):
    """Base class for all envelope kinds."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class SessionDescription(BaseModel):
    """An SDP offer or answer."""

    model_config = ConfigDict(frozen=True)

    sdp: str
    type: Literal["offer", "answer"]


class CandidatePayload(BaseModel):
    """A single transport address candidate (ICE candidate)."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    candidate: str = Field(description="candidate-attribute value, e.g. 'candidate:1 1 udp ...'")
    sdp_mid: str | None = Field(default=None)
    sdp_m_line_index: int | None = Field(default=None)


class UserInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str | None = None
    name: str | None = None


# ---------------------------------------------------------------------------
# Registration and pairing
# ---------------------------------------------------------------------------


class Register(Message):
    event: Literal["register"] = "register"
    role: Role
    device_id: str
    credential: str | None = None


class Registered(Message):
    event: Literal["registered"] = "registered"
    role: Role
    pairing_code: str | None = None
    message: str = ""


class LoginRequired(Message):
    event: Literal["login_required"] = "login_required"
    login_url: str


class AuthError(Message):
    event: Literal["auth_error"] = "auth_error"
    message: str


class Authenticated(Message):
    event: Literal["authenticated"] = "authenticated"
    token: str
    user: UserInfo


class Pair(Message):
    event: Literal["pair"] = "pair"
    code: str
    cols: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)


class Paired(Message):
    event: Literal["paired"] = "paired"
    peer_id: str
    message: str = ""


class Error(Message):
    event: Literal["error"] = "error"
    message: str


class WaitingForPeer(Message):
    event: Literal["waiting_for_peer"] = "waiting_for_peer"
    message: str


class PairedDeviceDisconnected(Message):
    event: Literal["paired_device_disconnected"] = "paired_device_disconnected"
    message: str


class PairingCodeExpired(Message):
    event: Literal["pairing_code_expired"] = "pairing_code_expired"
    message: str
    expired_code: str


# ---------------------------------------------------------------------------
# Signaling (relayed verbatim)
# ---------------------------------------------------------------------------


class WebRTCOffer(Message):
    event: Literal["webrtc:offer"] = "webrtc:offer"
    description: SessionDescription


class WebRTCAnswer(Message):
    event: Literal["webrtc:answer"] = "webrtc:answer"
    description: SessionDescription


class WebRTCIceCandidate(Message):
    event: Literal["webrtc:ice-candidate"] = "webrtc:ice-candidate"
    candidate: CandidatePayload


# ---------------------------------------------------------------------------
# Terminal data plane and system messages
# ---------------------------------------------------------------------------


class TerminalInput(Message):
    event: Literal["terminal:input"] = "terminal:input"
    data: str


class TerminalOutput(Message):
    event: Literal["terminal:output"] = "terminal:output"
    data: str


class TerminalResize(Message):
    event: Literal["terminal:resize"] = "terminal:resize"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class TerminalDimensions(Message):
    event: Literal["terminal:dimensions"] = "terminal:dimensions"
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


class SystemMessage(Message):
    event: Literal["system:message"] = "system:message"
    type: str
    payload: Any = None


Envelope = Annotated[
    Union[
        Register,
        Registered,
        LoginRequired,
        AuthError,
        Authenticated,
        Pair,
        Paired,
        Error,
        WaitingForPeer,
        PairedDeviceDisconnected,
        PairingCodeExpired,
        WebRTCOffer,
        WebRTCAnswer,
        WebRTCIceCandidate,
        TerminalInput,
        TerminalOutput,
        TerminalResize,
        TerminalDimensions,
        SystemMessage,
    ],
    Field(discriminator="event"),
]

_envelope_adapter: TypeAdapter[Envelope] = TypeAdapter(Envelope)

SIGNALING_EVENTS = frozenset({"webrtc:offer", "webrtc:answer", "webrtc:ice-candidate"})

# Kinds the direct channel carries once it is up
TERMINAL_EVENTS = frozenset(
    {"terminal:input", "terminal:output", "terminal:resize", "terminal:dimensions"}
)

# Kinds that are suppressed on the relay while the direct channel is live
DATA_PLANE_EVENTS = frozenset({"terminal:input", "terminal:output"})

# Kinds the server forwards between paired devices
RELAYED_EVENTS = SIGNALING_EVENTS | TERMINAL_EVENTS | {"system:message"}

# Close code for a control connection retired by a newer registration of
# the same device. Clients do not reconnect after it.
SUPERSEDED_CLOSE_CODE = 4000

# Standard "going away" close code, sent when the server shuts down
GOING_AWAY_CLOSE_CODE = 1001


def parse_envelope(raw: str | bytes) -> Message | None:
    """Decode one envelope, returning None if it is malformed."""
    try:
        return _envelope_adapter.validate_json(raw)
    except ValidationError as e:
        logger.debug("Dropping malformed envelope: %s", e.errors()[:1])
        return None


def encode_envelope(message: Message) -> str:
    """Encode an envelope to its JSON wire form."""
    return message.model_dump_json(by_alias=True, exclude_none=True)
