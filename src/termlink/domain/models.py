"""Core domain models for the termlink system.

These models represent the state the signaling server keeps about
connected devices (endpoints, pairing codes, identities) and the
lifecycle of the direct transport negotiated between two paired clients.
"""

from __future__ import annotations

import enum
import time

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class Role(str, enum.Enum):
    """Which side of a session a device plays."""

    HOST = "host"  # Exposes the shell, offers the direct transport
    VIEWER = "viewer"  # Drives the shell, answers the offer

    @property
    def opposite(self) -> Role:
        return Role.VIEWER if self is Role.HOST else Role.HOST


class TransportState(str, enum.Enum):
    """Lifecycle of the direct transport between two paired clients."""

    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


# Allowed transitions of the TransportState machine. Anything not listed
# here is rejected by the negotiator.
TRANSPORT_TRANSITIONS: dict[TransportState, frozenset[TransportState]] = {
    TransportState.IDLE: frozenset({TransportState.NEGOTIATING}),
    TransportState.NEGOTIATING: frozenset(
        {
            TransportState.CONNECTING,
            TransportState.FAILED,
            TransportState.CLOSED,
            TransportState.IDLE,
        }
    ),
    TransportState.CONNECTING: frozenset(
        {
            TransportState.CONNECTED,
            TransportState.DISCONNECTED,
            TransportState.FAILED,
            TransportState.CLOSED,
            TransportState.IDLE,
        }
    ),
    TransportState.CONNECTED: frozenset(
        {
            TransportState.DISCONNECTED,
            TransportState.FAILED,
            TransportState.CLOSED,
        }
    ),
    TransportState.DISCONNECTED: frozenset({TransportState.IDLE}),
    TransportState.FAILED: frozenset({TransportState.IDLE}),
    TransportState.CLOSED: frozenset({TransportState.IDLE}),
}

TERMINAL_TRANSPORT_STATES = frozenset(
    {TransportState.DISCONNECTED, TransportState.FAILED, TransportState.CLOSED}
)


# ---------------------------------------------------------------------------
# Server-side registry models
# ---------------------------------------------------------------------------


class Identity(BaseModel):
    """A stable identity resolved from a bearer credential."""

    model_config = ConfigDict(frozen=True)

    subject: str = Field(description="Provider-stable user identifier")
    email: str | None = Field(default=None)
    name: str | None = Field(default=None)


class Endpoint(BaseModel):
    """One registered device and its current pairing.

    Owned and mutated exclusively by the session registry.
    """

    connection_id: str = Field(description="Ephemeral id of the live control connection")
    device_id: str = Field(description="Stable, client-persisted device id")
    role: Role
    identity: Identity | None = Field(default=None)
    paired_with: str | None = Field(default=None, description="device_id of the partner, if paired")
    pairing_code: str | None = Field(default=None, description="Unconsumed code owned by this device")
    registered_at: float = Field(default_factory=time.time)

    @property
    def is_paired(self) -> bool:
        return self.paired_with is not None


class PairingCode(BaseModel):
    """A short-lived shared secret that lets a viewer pair with a host."""

    model_config = ConfigDict(frozen=True)

    code: str
    owner_device_id: str
    expires_at: float = Field(description="Clock value after which the code is unusable")

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at
