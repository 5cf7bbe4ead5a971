"""Direct transport negotiation over the relay.

The host offers, the viewer answers. Descriptions and address candidates
travel as ``webrtc:*`` envelopes through the signaling server. Each
negotiation attempt owns a fresh peer transport and its own queue of
remote candidates that arrived before the remote description could be
applied. A new attempt (a new offer, or a restart on the host) discards
the previous one entirely; events from a discarded transport are ignored.

Lost envelopes are not retransmitted: a stalled negotiation simply leaves
the session on the relay.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Callable

from termlink.domain.messages import (
    CandidatePayload,
    Message,
    SessionDescription,
    WebRTCAnswer,
    WebRTCIceCandidate,
    WebRTCOffer,
)
from termlink.domain.models import TRANSPORT_TRANSITIONS, Role, TransportState
from termlink.transport.base import PeerTransport, TransportError, TransportListener

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT = 2.5

TransportFactory = Callable[[TransportListener], PeerTransport]


class NegotiationError(Exception):
    """Raised when a negotiation step is not valid for this peer's role."""


class NegotiationState:
    """State of one negotiation attempt."""

    def __init__(self, generation: int) -> None:
        self.generation = generation
        self.transport: PeerTransport | None = None
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        # Remote candidates waiting for the remote description
        self.pending_candidates: deque[CandidatePayload] = deque()
        # Local candidates waiting for our description envelope to go out
        self.outgoing_candidates: deque[CandidatePayload] = deque()
        self.description_sent = False
        self.applying_remote = False
        self.draining = False


class _AttemptListener(TransportListener):
    """Routes transport callbacks to the negotiator, tagged with their attempt."""

    def __init__(self, negotiator: TransportNegotiator, attempt: NegotiationState) -> None:
        self._negotiator = negotiator
        self._attempt = attempt

    def on_candidate(self, candidate: CandidatePayload) -> None:
        self._negotiator._local_candidate(self._attempt, candidate)

    def on_connection_state(self, state: str) -> None:
        self._negotiator._connection_state(self._attempt, state)

    def on_channel_open(self) -> None:
        self._negotiator._channel_open(self._attempt)

    def on_channel_close(self) -> None:
        self._negotiator._channel_close(self._attempt)

    def on_channel_message(self, data: str) -> None:
        self._negotiator._channel_message(self._attempt, data)


class TransportNegotiator:
    """Establishes and tracks the direct transport for one paired client.

    Args:
        role: HOST negotiates as offerer, VIEWER as answerer.
        signal: Sends a signaling envelope through the relay. Must not
            block; delivery is best-effort.
        transport_factory: Builds a peer transport for a new attempt.
        discovery_timeout: Upper bound, in seconds, on waiting for local
            candidate discovery before sending a description.
        on_state_change: Called after every TransportState transition.
        on_channel_message: Called with each data channel message.
    """

    def __init__(
        self,
        role: Role,
        signal: Callable[[Message], object],
        transport_factory: TransportFactory,
        discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT,
        on_state_change: Callable[[TransportState], None] | None = None,
        on_channel_message: Callable[[str], None] | None = None,
    ) -> None:
        self._role = role
        self._signal = signal
        self._factory = transport_factory
        self._discovery_timeout = discovery_timeout
        self._on_state_change = on_state_change
        self._on_channel_message = on_channel_message
        self._state = TransportState.IDLE
        self._attempt: NegotiationState | None = None
        self._generation = 0
        self._closing: set[asyncio.Task[None]] = set()

    @property
    def role(self) -> Role:
        return self._role

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def negotiation(self) -> NegotiationState | None:
        """The current attempt, if any."""
        return self._attempt

    @property
    def writable(self) -> bool:
        attempt = self._attempt
        return (
            self._state is TransportState.CONNECTED
            and attempt is not None
            and attempt.transport is not None
            and attempt.transport.writable
        )

    def send(self, data: str) -> None:
        """Write to the direct channel.

        Raises:
            TransportError: If the direct transport is not connected or
                the write fails.
        """
        attempt = self._attempt
        if self._state is not TransportState.CONNECTED or attempt is None or attempt.transport is None:
            raise TransportError("Direct transport is not connected")
        attempt.transport.send(data)

    # ------------------------------------------------------------------
    # Driving the negotiation
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin (or restart) a negotiation as the offering side."""
        if self._role is not Role.HOST:
            raise NegotiationError("Only the host side makes offers")
        attempt: NegotiationState | None = None
        try:
            attempt = self._begin()
            transport = attempt.transport
            offer = await transport.create_offer()
            await transport.set_local_description(offer)
            if not self._is_current(attempt):
                return
            attempt.local_description = offer
            await self._await_discovery(attempt)
            if not self._is_current(attempt):
                return
            attempt.local_description = transport.local_description or offer
            logger.info("Sending offer via relay")
            self._send_description(attempt, WebRTCOffer(description=attempt.local_description))
        except Exception as e:
            self._fail(attempt, e)

    async def handle(self, message: Message) -> None:
        """Process a signaling envelope received from the relay."""
        if isinstance(message, WebRTCOffer):
            await self._handle_offer(message.description)
        elif isinstance(message, WebRTCAnswer):
            await self._handle_answer(message.description)
        elif isinstance(message, WebRTCIceCandidate):
            await self._handle_candidate(message.candidate)
        else:
            logger.debug("Negotiator ignoring %s", getattr(message, "event", message))

    async def reset(self) -> None:
        """Abandon the current attempt and return to IDLE."""
        attempt = self._attempt
        self._attempt = None
        if attempt is not None:
            transport = self._discard(attempt)
            if transport is not None:
                await self._close_transport(transport)
        self._reset_state()

    async def close(self) -> None:
        """Reset and wait for discarded transports to finish closing."""
        await self.reset()
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ------------------------------------------------------------------
    # Envelope handlers
    # ------------------------------------------------------------------

    async def _handle_offer(self, description: SessionDescription) -> None:
        if self._role is not Role.VIEWER:
            logger.warning("Ignoring offer received by the offering side")
            return
        logger.info("Received offer via relay")
        attempt: NegotiationState | None = None
        try:
            attempt = self._begin()
            transport = attempt.transport
            attempt.applying_remote = True
            await transport.set_remote_description(description)
            if not self._is_current(attempt):
                return
            attempt.remote_description = description
            await self._drain_pending(attempt)
            if not self._is_current(attempt):
                return

            answer = await transport.create_answer()
            await transport.set_local_description(answer)
            if not self._is_current(attempt):
                return
            attempt.local_description = answer
            await self._await_discovery(attempt)
            if not self._is_current(attempt):
                return
            attempt.local_description = transport.local_description or answer
            logger.info("Sending answer via relay")
            self._send_description(attempt, WebRTCAnswer(description=attempt.local_description))
            self._transition(TransportState.CONNECTING)
        except Exception as e:
            self._fail(attempt, e)

    async def _handle_answer(self, description: SessionDescription) -> None:
        attempt = self._attempt
        if self._role is not Role.HOST:
            logger.warning("Ignoring answer received by the answering side")
            return
        if attempt is None or attempt.transport is None:
            logger.debug("Dropping answer with no negotiation in progress")
            return
        if attempt.applying_remote:
            logger.debug("Dropping duplicate answer")
            return
        logger.info("Received answer via relay")
        attempt.applying_remote = True
        try:
            await attempt.transport.set_remote_description(description)
            if not self._is_current(attempt):
                return
            attempt.remote_description = description
            await self._drain_pending(attempt)
            if self._is_current(attempt):
                self._transition(TransportState.CONNECTING)
        except Exception as e:
            self._fail(attempt, e)

    async def _handle_candidate(self, candidate: CandidatePayload) -> None:
        attempt = self._attempt
        if attempt is None or attempt.transport is None:
            logger.debug("Dropping candidate with no live transport")
            return
        if attempt.remote_description is None or attempt.draining:
            attempt.pending_candidates.append(candidate)
            return
        await self._apply_candidate(attempt, candidate)

    async def _drain_pending(self, attempt: NegotiationState) -> None:
        """Apply queued remote candidates in arrival order.

        Candidates arriving while the queue drains are appended to it, so
        they are applied after every earlier one.
        """
        attempt.draining = True
        try:
            while attempt.pending_candidates and self._is_current(attempt):
                await self._apply_candidate(attempt, attempt.pending_candidates.popleft())
        finally:
            attempt.draining = False

    async def _apply_candidate(self, attempt: NegotiationState, candidate: CandidatePayload) -> None:
        try:
            await attempt.transport.add_candidate(candidate)
        except Exception as e:
            logger.debug("Could not apply remote candidate %r: %s", candidate.candidate, e)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    def _local_candidate(self, attempt: NegotiationState, candidate: CandidatePayload) -> None:
        if not self._is_current(attempt):
            return
        if attempt.description_sent:
            self._signal(WebRTCIceCandidate(candidate=candidate))
        else:
            attempt.outgoing_candidates.append(candidate)

    def _connection_state(self, attempt: NegotiationState, state: str) -> None:
        if not self._is_current(attempt):
            return
        logger.debug("Peer connection state: %s", state)
        if state == "failed":
            self._transition(TransportState.FAILED)
        elif state == "disconnected":
            self._transition(TransportState.DISCONNECTED)
        elif state == "closed":
            self._transition(TransportState.CLOSED)

    def _channel_open(self, attempt: NegotiationState) -> None:
        if not self._is_current(attempt):
            return
        if self._state is TransportState.NEGOTIATING:
            self._transition(TransportState.CONNECTING)
        self._transition(TransportState.CONNECTED)

    def _channel_close(self, attempt: NegotiationState) -> None:
        if not self._is_current(attempt):
            return
        self._transition(TransportState.CLOSED)

    def _channel_message(self, attempt: NegotiationState, data: str) -> None:
        if self._is_current(attempt) and self._on_channel_message is not None:
            self._on_channel_message(data)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _begin(self) -> NegotiationState:
        """Start a fresh attempt, discarding the current one.

        Runs without awaiting so that envelopes handled afterwards always
        see the new attempt.
        """
        previous = self._attempt
        self._generation += 1
        attempt = NegotiationState(self._generation)
        self._attempt = attempt
        if previous is not None:
            logger.info("Superseding negotiation #%d", previous.generation)
            transport = self._discard(previous)
            if transport is not None:
                task = asyncio.ensure_future(self._close_transport(transport))
                self._closing.add(task)
                task.add_done_callback(self._closing.discard)
        self._reset_state()
        self._transition(TransportState.NEGOTIATING)
        attempt.transport = self._factory(_AttemptListener(self, attempt))
        return attempt

    def _discard(self, attempt: NegotiationState) -> PeerTransport | None:
        attempt.pending_candidates.clear()
        attempt.outgoing_candidates.clear()
        attempt.local_description = None
        attempt.remote_description = None
        transport = attempt.transport
        attempt.transport = None
        return transport

    async def _close_transport(self, transport: PeerTransport) -> None:
        try:
            await transport.close()
        except Exception as e:
            logger.debug("Error closing discarded transport: %s", e)

    async def _await_discovery(self, attempt: NegotiationState) -> None:
        try:
            await asyncio.wait_for(attempt.transport.wait_for_discovery(), self._discovery_timeout)
        except asyncio.TimeoutError:
            logger.info(
                "Candidate discovery still running after %.1fs, proceeding with what we have",
                self._discovery_timeout,
            )

    def _send_description(self, attempt: NegotiationState, message: Message) -> None:
        self._signal(message)
        attempt.description_sent = True
        while attempt.outgoing_candidates:
            self._signal(WebRTCIceCandidate(candidate=attempt.outgoing_candidates.popleft()))

    def _is_current(self, attempt: NegotiationState) -> bool:
        return attempt is self._attempt and attempt.transport is not None

    def _fail(self, attempt: NegotiationState | None, error: Exception) -> None:
        if attempt is not None and not self._is_current(attempt):
            return
        logger.warning("Direct transport negotiation failed (%s), staying on relay", error)
        self._transition(TransportState.FAILED)

    def _reset_state(self) -> None:
        if self._state is TransportState.IDLE:
            return
        if self._state is TransportState.CONNECTED:
            self._transition(TransportState.CLOSED)
        self._transition(TransportState.IDLE)

    def _transition(self, new_state: TransportState) -> bool:
        if new_state is self._state:
            return False
        if new_state not in TRANSPORT_TRANSITIONS[self._state]:
            logger.debug("Ignoring transport transition %s -> %s", self._state.value, new_state.value)
            return False
        old_state = self._state
        self._state = new_state
        logger.info("Direct transport %s -> %s", old_state.value, new_state.value)
        if self._on_state_change is not None:
            self._on_state_change(new_state)
        return True
