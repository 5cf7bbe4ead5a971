"""Direct peer-to-peer transport for termlink.

Public API:
    PeerTransport -- abstract direct connection attempt
    TransportNegotiator -- offer/answer/candidate state machine
    IOMultiplexer -- direct-or-relay path selection
    AiortcPeerTransport -- aiortc-backed implementation
"""

from termlink.transport.base import PeerTransport, TransportError, TransportListener
from termlink.transport.multiplexer import DeliveryPath, IOMultiplexer
from termlink.transport.negotiator import NegotiationState, TransportNegotiator

__all__ = [
    "AiortcPeerTransport",
    "DeliveryPath",
    "IOMultiplexer",
    "NegotiationState",
    "PeerTransport",
    "TransportError",
    "TransportListener",
    "TransportNegotiator",
    "aiortc_transport_factory",
]


def __getattr__(name: str) -> object:
    """Lazy import of the aiortc backend."""
    if name == "AiortcPeerTransport":
        from termlink.transport.webrtc import AiortcPeerTransport
        return AiortcPeerTransport
    if name == "aiortc_transport_factory":
        from termlink.transport.webrtc import aiortc_transport_factory
        return aiortc_transport_factory
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
