"""Domain models for termlink.

This package contains the registry data structures, the transport state
machine and the closed set of wire envelopes. All models use Pydantic v2
for validation and serialization.
"""

from termlink.domain.messages import (
    Envelope,
    Message,
    encode_envelope,
    parse_envelope,
)
from termlink.domain.models import (
    TRANSPORT_TRANSITIONS,
    Endpoint,
    Identity,
    PairingCode,
    Role,
    TransportState,
)

__all__ = [
    "TRANSPORT_TRANSITIONS",
    "Endpoint",
    "Envelope",
    "Identity",
    "Message",
    "PairingCode",
    "Role",
    "TransportState",
    "encode_envelope",
    "parse_envelope",
]
