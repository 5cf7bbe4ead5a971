"""Signaling server for termlink.

Pairs hosts with viewers and relays their envelopes. The session
registry and message router are pure in-memory state; the signaling hub
and the FastAPI application are the I/O shell around them.

Public API:
    SessionRegistry -- device and pairing bookkeeping
    MessageRouter -- partner-only envelope forwarding
    SignalingHub -- connection map and effect application
    create_app -- FastAPI application factory
"""

from termlink.server.hub import SignalingHub
from termlink.server.registry import (
    AlreadyPaired,
    AuthRequired,
    InvalidOrExpiredCode,
    NotRegistered,
    RegistryError,
    SessionRegistry,
)
from termlink.server.router import MessageRouter

__all__ = [
    "AlreadyPaired",
    "AuthRequired",
    "InvalidOrExpiredCode",
    "MessageRouter",
    "NotRegistered",
    "RegistryError",
    "SessionRegistry",
    "SignalingHub",
    "create_app",
]


def __getattr__(name: str) -> object:
    """Lazy import of the web application (pulls in FastAPI)."""
    if name == "create_app":
        from termlink.server.app import create_app
        return create_app
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
