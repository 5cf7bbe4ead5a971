"""Abstract base class for direct peer transports.

A peer transport wraps one peer connection attempt (one RTCPeerConnection
and its data channel). The negotiator drives it through the offer/answer
exchange and learns about its progress through a ``TransportListener``.
Swapping implementations (aiortc, a test double) changes nothing else.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from termlink.domain.messages import CandidatePayload, SessionDescription

logger = logging.getLogger(__name__)


class TransportListener(ABC):
    """Callbacks a peer transport fires as the connection progresses.

    Callbacks are plain functions invoked from the event loop; they must
    not block.
    """

    @abstractmethod
    def on_candidate(self, candidate: CandidatePayload) -> None:
        """A local address candidate was discovered."""
        ...

    @abstractmethod
    def on_connection_state(self, state: str) -> None:
        """The underlying connection state changed.

        ``state`` is one of the WebRTC connection states: ``new``,
        ``connecting``, ``connected``, ``disconnected``, ``failed``,
        ``closed``.
        """
        ...

    @abstractmethod
    def on_channel_open(self) -> None:
        """The data channel is open and writable."""
        ...

    @abstractmethod
    def on_channel_close(self) -> None:
        """The data channel closed."""
        ...

    @abstractmethod
    def on_channel_message(self, data: str) -> None:
        """A message arrived on the data channel."""
        ...


class PeerTransport(ABC):
    """One direct connection attempt between two peers.

    The offering side calls ``create_offer()`` (which also opens the
    data channel); the answering side waits for the remote offer and
    calls ``create_answer()``. Candidate discovery starts when the local
    description is applied and ends with ``wait_for_discovery()``.
    """

    @abstractmethod
    async def create_offer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def create_answer(self) -> SessionDescription:
        ...

    @abstractmethod
    async def set_local_description(self, description: SessionDescription) -> None:
        """Apply the local description and begin candidate discovery."""
        ...

    @abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    @abstractmethod
    async def add_candidate(self, candidate: CandidatePayload) -> None:
        """Apply a remote candidate.

        Raises:
            TransportError: If the candidate cannot be applied.
        """
        ...

    @abstractmethod
    async def wait_for_discovery(self) -> None:
        """Return once local candidate discovery has completed."""
        ...

    @property
    @abstractmethod
    def local_description(self) -> SessionDescription | None:
        """The most complete local description available right now."""
        ...

    @property
    @abstractmethod
    def writable(self) -> bool:
        """Whether ``send()`` can currently be attempted."""
        ...

    @abstractmethod
    def send(self, data: str) -> None:
        """Write one message to the data channel.

        Raises:
            TransportError: If the write fails synchronously.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Tear the connection down. Safe to call multiple times."""
        ...


class TransportError(Exception):
    """Raised when a peer transport operation fails."""

    def __init__(self, message: str, backend: str = "") -> None:
        super().__init__(message)
        self.backend = backend
