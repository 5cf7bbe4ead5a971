"""Message router for the signaling server.

Forwards signaling, terminal and system envelopes from a device to its
current partner. Stateless: the pairing lives in the session registry.
Delivery is best-effort and at-most-once; nothing is queued for a
partner that is not there.
"""

from __future__ import annotations

import logging

from termlink.domain.messages import RELAYED_EVENTS, Message
from termlink.server.effects import Deliver, Effect
from termlink.server.registry import SessionRegistry

logger = logging.getLogger(__name__)


class MessageRouter:
    """Relays envelopes between the two members of a pairing."""

    def __init__(self, registry: SessionRegistry) -> None:
        self._registry = registry

    def route(
        self,
        from_device_id: str | None,
        message: Message,
        raw: str | None = None,
    ) -> list[Effect]:
        """Deliver ``message`` to the sender's partner, if it has one.

        Args:
            from_device_id: Sending device, or None for an unregistered
                connection.
            message: The decoded envelope.
            raw: The envelope as received; forwarded verbatim when given.
        """
        if from_device_id is None:
            return []
        event = getattr(message, "event", None)
        if event not in RELAYED_EVENTS:
            logger.debug("Not relaying %s from %s", event, from_device_id)
            return []
        partner = self._registry.partner_of(from_device_id)
        if partner is None:
            return []
        logger.debug("Relaying %s from %s to %s", event, from_device_id, partner.device_id)
        return [Deliver(connection_id=partner.connection_id, message=message, raw=raw)]
