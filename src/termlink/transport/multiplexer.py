"""Chooses the path for each outgoing envelope and filters duplicates.

Terminal traffic prefers the direct channel when it is connected and
writable, and falls back to the relay once if the direct write fails.
Everything else always goes through the relay. On the receiving side,
data-plane envelopes arriving over the relay are dropped while the
direct channel is live, so each payload is consumed exactly once.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from termlink.domain.messages import (
    DATA_PLANE_EVENTS,
    TERMINAL_EVENTS,
    Message,
    encode_envelope,
    parse_envelope,
)
from termlink.domain.models import TransportState
from termlink.transport.base import TransportError
from termlink.transport.negotiator import TransportNegotiator

logger = logging.getLogger(__name__)


class DeliveryPath(str, Enum):
    DIRECT = "direct"
    RELAY = "relay"


class IOMultiplexer:
    """Routes terminal envelopes over the direct channel or the relay.

    Args:
        negotiator: Source of direct transport state and the channel.
        relay_send: Queues an envelope on the relay connection.
        deliver: Consumer for inbound envelopes that survive filtering.
    """

    def __init__(
        self,
        negotiator: TransportNegotiator,
        relay_send: Callable[[Message], object],
        deliver: Callable[[Message], None],
    ) -> None:
        self._negotiator = negotiator
        self._relay_send = relay_send
        self._deliver = deliver

    def send(self, message: Message) -> DeliveryPath:
        """Send one envelope and report which path carried it."""
        if message.event in TERMINAL_EVENTS and self._negotiator.writable:
            try:
                self._negotiator.send(encode_envelope(message))
                return DeliveryPath.DIRECT
            except TransportError as e:
                logger.warning("Direct send of %s failed (%s), using relay", message.event, e)
        self._relay_send(message)
        return DeliveryPath.RELAY

    def receive_from_relay(self, message: Message) -> bool:
        """Deliver a relayed envelope unless the direct channel covers it."""
        if message.event in DATA_PLANE_EVENTS and self._negotiator.state is TransportState.CONNECTED:
            logger.debug("Dropping relayed %s while direct channel is live", message.event)
            return False
        self._deliver(message)
        return True

    def receive_from_direct(self, data: str) -> bool:
        """Decode and deliver a data channel message."""
        message = parse_envelope(data)
        if message is None:
            return False
        self._deliver(message)
        return True
