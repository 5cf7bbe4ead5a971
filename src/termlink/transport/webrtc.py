"""aiortc implementation of the peer transport.

Each instance wraps one ``RTCPeerConnection`` and a single ordered data
channel. aiortc gathers all local candidates while the local description
is applied, so candidates are read back from the final local SDP and
reported to the listener one at a time.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from termlink.domain.messages import CandidatePayload, SessionDescription
from termlink.transport.base import PeerTransport, TransportError, TransportListener

logger = logging.getLogger(__name__)


class AiortcPeerTransport(PeerTransport):
    """Peer transport backed by aiortc.

    Args:
        listener: Receives candidates and connection/channel events.
        ice_servers: STUN/TURN URLs, e.g. ``stun:stun.l.google.com:19302``.
        channel_label: Label of the data channel the offerer opens.
    """

    def __init__(
        self,
        listener: TransportListener,
        ice_servers: list[str] | None = None,
        channel_label: str = "terminal",
    ) -> None:
        servers = [RTCIceServer(urls=url) for url in ice_servers or []]
        self._pc = RTCPeerConnection(RTCConfiguration(iceServers=servers))
        self._listener = listener
        self._channel_label = channel_label
        self._channel: RTCDataChannel | None = None
        self._channel_opened = False
        self._pending_local: SessionDescription | None = None
        self._local_task: asyncio.Future[None] | None = None
        self._emitted: set[str] = set()
        self._closed = False

        @self._pc.on("connectionstatechange")
        def on_connectionstatechange() -> None:
            self._listener.on_connection_state(self._pc.connectionState)

        @self._pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            logger.debug("Remote opened data channel %r", channel.label)
            self._attach_channel(channel)
            if channel.readyState == "open":
                self._fire_open()

    async def create_offer(self) -> SessionDescription:
        self._attach_channel(self._pc.createDataChannel(self._channel_label, ordered=True))
        offer = await self._pc.createOffer()
        return SessionDescription(sdp=offer.sdp, type="offer")

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(sdp=answer.sdp, type="answer")

    async def set_local_description(self, description: SessionDescription) -> None:
        # Candidate gathering happens inside setLocalDescription; let it
        # run in the background so discovery can be bounded by the caller.
        self._pending_local = description
        self._local_task = asyncio.ensure_future(self._apply_local(description))

    async def set_remote_description(self, description: SessionDescription) -> None:
        if self._local_task is not None:
            await asyncio.shield(self._local_task)
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_candidate(self, candidate: CandidatePayload) -> None:
        text = candidate.candidate
        if not text:
            return
        if text.startswith("candidate:"):
            text = text.split(":", 1)[1]
        try:
            ice = candidate_from_sdp(text)
        except (AssertionError, IndexError, ValueError) as e:
            raise TransportError(f"Malformed candidate: {candidate.candidate!r}", backend="aiortc") from e
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_m_line_index
        if ice.sdpMid is None and ice.sdpMLineIndex is None:
            ice.sdpMLineIndex = 0
        await self._pc.addIceCandidate(ice)

    async def wait_for_discovery(self) -> None:
        if self._local_task is not None:
            await asyncio.shield(self._local_task)

    @property
    def local_description(self) -> SessionDescription | None:
        current = self._pc.localDescription
        if current is not None:
            return SessionDescription(sdp=current.sdp, type=current.type)
        return self._pending_local

    @property
    def writable(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    def send(self, data: str) -> None:
        if not self.writable:
            raise TransportError("Data channel is not open", backend="aiortc")
        try:
            self._channel.send(data)
        except Exception as e:
            raise TransportError(f"Data channel send failed: {e}", backend="aiortc") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._local_task is not None and not self._local_task.done():
            self._local_task.cancel()
        await self._pc.close()

    async def _apply_local(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )
        self._emit_local_candidates()

    def _emit_local_candidates(self) -> None:
        local = self._pc.localDescription
        if local is None:
            return
        sections: list[tuple[str | None, list[str]]] = []
        for line in local.sdp.splitlines():
            if line.startswith("m="):
                sections.append((None, []))
            elif not sections:
                continue
            elif line.startswith("a=mid:"):
                sections[-1] = (line[len("a=mid:"):], sections[-1][1])
            elif line.startswith("a=candidate:"):
                sections[-1][1].append(line[len("a="):])

        for index, (mid, candidates) in enumerate(sections):
            for value in candidates:
                if value in self._emitted:
                    continue
                self._emitted.add(value)
                self._listener.on_candidate(
                    CandidatePayload(candidate=value, sdp_mid=mid, sdp_m_line_index=index)
                )

    def _attach_channel(self, channel: RTCDataChannel) -> None:
        self._channel = channel

        @channel.on("open")
        def on_open() -> None:
            self._fire_open()

        @channel.on("close")
        def on_close() -> None:
            self._listener.on_channel_close()

        @channel.on("message")
        def on_message(message: str | bytes) -> None:
            if isinstance(message, bytes):
                message = message.decode("utf-8", errors="replace")
            self._listener.on_channel_message(message)

    def _fire_open(self) -> None:
        if self._channel_opened:
            return
        self._channel_opened = True
        self._listener.on_channel_open()


def aiortc_transport_factory(
    ice_servers: list[str] | None = None,
    channel_label: str = "terminal",
) -> partial[AiortcPeerTransport]:
    """Build a transport factory for ``TransportNegotiator``."""
    return partial(AiortcPeerTransport, ice_servers=ice_servers, channel_label=channel_label)
