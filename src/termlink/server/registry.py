"""Session registry for the signaling server.

Tracks connected endpoints by stable device id and pairs hosts with
viewers, either because both authenticated as the same identity or
because the viewer redeemed the host's one-time pairing code.

Every public operation runs to completion without awaiting, so a pairing
is always established or torn down on both sides within one call. The
registry performs no I/O: operations return a list of effects (see
``termlink.server.effects``) that the signaling hub applies.
"""

from __future__ import annotations

import logging
import secrets
import time
from typing import Callable

from termlink.domain.messages import (
    Authenticated,
    PairedDeviceDisconnected,
    Paired,
    PairingCodeExpired,
    Registered,
    TerminalDimensions,
    UserInfo,
    WaitingForPeer,
)
from termlink.domain.models import Endpoint, Identity, PairingCode, Role
from termlink.server.auth import CredentialVerifier
from termlink.server.effects import CancelExpiry, Close, Deliver, Effect, ScheduleExpiry

logger = logging.getLogger(__name__)

DEFAULT_CODE_TTL = 5 * 60.0


class RegistryError(Exception):
    """Base class for recoverable registry failures."""


class AuthRequired(RegistryError):
    """Registration needs a (valid) credential first."""

    def __init__(self, message: str, login_url: str = "", invalid: bool = False) -> None:
        super().__init__(message)
        self.login_url = login_url
        self.invalid = invalid


class InvalidOrExpiredCode(RegistryError):
    """The pairing code is unknown, consumed, or past its TTL."""


class AlreadyPaired(RegistryError):
    """One side of the requested pairing already has a partner."""


class NotRegistered(RegistryError):
    """The device has not registered on this connection."""


def _random_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class SessionRegistry:
    """In-memory registry of endpoints, pairings and pairing codes.

    Args:
        verifier: Resolves bearer credentials. Without one, every
            credential is treated as invalid.
        code_ttl: Seconds a pairing code stays redeemable.
        allow_anonymous: Whether devices may register without a
            credential (hosts then pair through codes).
        login_url: Builds the login URL for a device, given its id and
            role. Sent to devices that must authenticate first.
        fixed_code: Always issue this code (development only).
        clock: Time source for code expiry.
        code_factory: Generates candidate pairing codes.
    """

    def __init__(
        self,
        verifier: CredentialVerifier | None = None,
        code_ttl: float = DEFAULT_CODE_TTL,
        allow_anonymous: bool = True,
        login_url: Callable[[str, Role], str] | None = None,
        fixed_code: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        code_factory: Callable[[], str] = _random_code,
    ) -> None:
        self._verifier = verifier
        self._code_ttl = code_ttl
        self._allow_anonymous = allow_anonymous
        self._login_url = login_url or (lambda device_id, role: "")
        self._fixed_code = fixed_code
        self._clock = clock
        self._code_factory = code_factory
        self._endpoints: dict[str, Endpoint] = {}
        self._connections: dict[str, str] = {}
        self._codes: dict[str, PairingCode] = {}

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, device_id: str) -> Endpoint | None:
        return self._endpoints.get(device_id)

    def device_for_connection(self, connection_id: str) -> str | None:
        return self._connections.get(connection_id)

    def partner_of(self, device_id: str) -> Endpoint | None:
        """The endpoint currently paired with ``device_id``, if any."""
        endpoint = self._endpoints.get(device_id)
        if endpoint is None or endpoint.paired_with is None:
            return None
        partner = self._endpoints.get(endpoint.paired_with)
        if partner is None or partner.paired_with != device_id:
            return None
        return partner

    def code(self, code: str) -> PairingCode | None:
        return self._codes.get(code)

    @property
    def endpoints(self) -> list[Endpoint]:
        return list(self._endpoints.values())

    def counts(self) -> dict[Role, int]:
        counts = {role: 0 for role in Role}
        for endpoint in self._endpoints.values():
            counts[endpoint.role] += 1
        return counts

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def register(
        self,
        connection_id: str,
        device_id: str,
        role: Role,
        credential: str | None = None,
    ) -> list[Effect]:
        """Register a device on a control connection.

        Supersedes any prior record for the same device id (and any other
        device previously registered on this connection), tearing down
        the pairings they held.

        Raises:
            AuthRequired: The credential is invalid, or absent while
                anonymous registration is disabled.
        """
        identity = self._resolve_identity(device_id, role, credential)

        effects: list[Effect] = []
        previous_device = self._connections.get(connection_id)
        if previous_device is not None and previous_device != device_id:
            effects += self._detach(self._endpoints[previous_device], connection_id)
        prior = self._endpoints.get(device_id)
        if prior is not None:
            logger.info("Device %s re-registered, retiring %s", device_id, prior.connection_id)
            effects += self._detach(prior, connection_id)

        endpoint = Endpoint(
            connection_id=connection_id,
            device_id=device_id,
            role=role,
            identity=identity,
        )
        self._endpoints[device_id] = endpoint
        self._connections[connection_id] = device_id

        if identity is None and role is Role.HOST:
            code = self._issue_code(endpoint)
            effects.append(ScheduleExpiry(code=code.code, delay=self._code_ttl))
            effects.append(
                self._deliver(
                    endpoint,
                    Registered(
                        role=role,
                        pairing_code=code.code,
                        message="Host registered. Share this code with your viewer.",
                    ),
                )
            )
            logger.info("Host %s registered with code %s", device_id, code.code)
        else:
            effects.append(
                self._deliver(endpoint, Registered(role=role, message=f"{role.value.title()} registered."))
            )
            logger.info(
                "%s %s registered (%s)",
                role.value.title(),
                device_id,
                identity.email or identity.subject if identity else "anonymous",
            )

        effects += self._discover(endpoint)
        return effects

    def redeem(
        self,
        code: str,
        device_id: str,
        cols: int | None = None,
        rows: int | None = None,
    ) -> list[Effect]:
        """Pair the viewer ``device_id`` with the host that owns ``code``.

        Raises:
            NotRegistered: The redeeming device is unknown.
            InvalidOrExpiredCode: The code is unknown, consumed or expired.
            AlreadyPaired: The host (or the viewer) already has a partner.
            RegistryError: The redeeming device is not a viewer.
        """
        viewer = self._endpoints.get(device_id)
        if viewer is None:
            raise NotRegistered("Device not registered")

        pairing_code = self._codes.get(code)
        if pairing_code is None or pairing_code.is_expired(self._clock()):
            raise InvalidOrExpiredCode("Invalid or expired pairing code")
        host = self._endpoints.get(pairing_code.owner_device_id)
        if host is None:
            raise InvalidOrExpiredCode("Invalid or expired pairing code")
        if viewer.role is not Role.VIEWER or host.device_id == device_id:
            raise RegistryError("Only a viewer can redeem a pairing code")
        if host.is_paired:
            raise AlreadyPaired("Host is already paired with another device")
        if viewer.is_paired:
            raise AlreadyPaired("This device is already paired")

        del self._codes[code]
        host.pairing_code = None
        effects: list[Effect] = [CancelExpiry(code=code)]
        if cols and rows:
            effects.append(self._deliver(host, TerminalDimensions(cols=cols, rows=rows)))
        effects += self._link(host, viewer)
        return effects

    def unregister(self, device_id: str, connection_id: str | None = None) -> list[Effect]:
        """Remove a device, notifying and releasing its partner.

        When ``connection_id`` is given, the record is only removed if it
        still belongs to that connection (a newer registration wins).
        """
        endpoint = self._endpoints.get(device_id)
        if endpoint is None:
            return []
        if connection_id is not None and endpoint.connection_id != connection_id:
            logger.debug("Ignoring unregister of %s from stale connection %s", device_id, connection_id)
            return []
        logger.info("%s %s disconnected", endpoint.role.value.title(), device_id)
        return self._detach(endpoint, endpoint.connection_id)

    def authenticate(self, device_id: str, identity: Identity, token: str) -> list[Effect]:
        """Attach an identity obtained through the login callback.

        Pushes the freshly issued token to the device and attempts
        identity-based pairing.

        Raises:
            NotRegistered: No control connection is waiting for this device.
        """
        endpoint = self._endpoints.get(device_id)
        if endpoint is None:
            raise NotRegistered("Device not registered")

        endpoint.identity = identity
        effects = self._revoke_code(endpoint)
        effects.append(
            self._deliver(
                endpoint,
                Authenticated(
                    token=token,
                    user=UserInfo(id=identity.subject, email=identity.email, name=identity.name),
                ),
            )
        )
        effects += self._discover(endpoint)
        return effects

    def expire_code(self, code: str) -> list[Effect]:
        """Deferred TTL expiry of a pairing code."""
        pairing_code = self._codes.pop(code, None)
        if pairing_code is None:
            return []
        owner = self._endpoints.get(pairing_code.owner_device_id)
        if owner is None:
            return []
        if owner.pairing_code == code:
            owner.pairing_code = None
        if owner.is_paired:
            return []
        logger.info("Pairing code expired: %s", code)
        return [
            self._deliver(owner, PairingCodeExpired(message="Pairing code expired", expired_code=code))
        ]

    def close(self) -> list[Effect]:
        """Drop all state, returning the timers that must be disarmed."""
        effects: list[Effect] = [CancelExpiry(code=code) for code in self._codes]
        self._codes.clear()
        self._endpoints.clear()
        self._connections.clear()
        return effects

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _resolve_identity(
        self, device_id: str, role: Role, credential: str | None
    ) -> Identity | None:
        if credential:
            identity = self._verifier.verify(credential) if self._verifier else None
            if identity is None:
                raise AuthRequired(
                    "Invalid or expired credential",
                    login_url=self._login_url(device_id, role),
                    invalid=True,
                )
            return identity
        if not self._allow_anonymous:
            raise AuthRequired("Login required", login_url=self._login_url(device_id, role))
        return None

    def _detach(self, endpoint: Endpoint, connection_id: str) -> list[Effect]:
        """Remove ``endpoint`` and release its partner.

        ``connection_id`` is the connection asking for the removal; the
        endpoint's own connection is closed if it is a different one.
        """
        effects = self._revoke_code(endpoint)
        del self._endpoints[endpoint.device_id]
        if self._connections.get(endpoint.connection_id) == endpoint.device_id:
            del self._connections[endpoint.connection_id]
        if endpoint.connection_id != connection_id:
            effects.append(Close(connection_id=endpoint.connection_id, reason="superseded"))

        partner = self._unlink(endpoint)
        if partner is not None:
            effects.append(
                self._deliver(
                    partner,
                    PairedDeviceDisconnected(
                        message=f"Paired {endpoint.role.value} device disconnected"
                    ),
                )
            )
            effects += self._discover(partner)
        return effects

    def _unlink(self, endpoint: Endpoint) -> Endpoint | None:
        """Clear ``endpoint``'s pairing on both sides, returning the partner."""
        partner_id = endpoint.paired_with
        endpoint.paired_with = None
        if partner_id is None:
            return None
        partner = self._endpoints.get(partner_id)
        if partner is None or partner.paired_with != endpoint.device_id:
            return None
        partner.paired_with = None
        logger.info("Unpaired %s and %s", endpoint.device_id, partner_id)
        return partner

    def _link(self, host: Endpoint, viewer: Endpoint) -> list[Effect]:
        host.paired_with = viewer.device_id
        viewer.paired_with = host.device_id
        logger.info("Paired: host %s <-> viewer %s", host.device_id, viewer.device_id)
        return [
            self._deliver(
                viewer, Paired(peer_id=host.device_id, message="Successfully paired with host")
            ),
            self._deliver(host, Paired(peer_id=viewer.device_id, message="Viewer connected")),
        ]

    def _discover(self, endpoint: Endpoint) -> list[Effect]:
        """Identity-based pairing against any free opposite-role endpoint."""
        if endpoint.identity is None or endpoint.is_paired:
            return []
        candidates = [
            other
            for other in self._endpoints.values()
            if other.role is endpoint.role.opposite
            and not other.is_paired
            and other.identity is not None
            and other.identity.subject == endpoint.identity.subject
        ]
        if not candidates:
            return [
                self._deliver(
                    endpoint,
                    WaitingForPeer(
                        message=f"Waiting for a {endpoint.role.opposite.value} signed in as the same user..."
                    ),
                )
            ]
        partner = max(candidates, key=lambda e: e.registered_at)
        if endpoint.role is Role.HOST:
            return self._link(endpoint, partner)
        return self._link(partner, endpoint)

    def _issue_code(self, owner: Endpoint) -> PairingCode:
        if self._fixed_code is not None:
            code = self._fixed_code
            previous = self._codes.get(code)
            if previous is not None:
                logger.warning("Fixed pairing code %s reassigned from %s", code, previous.owner_device_id)
                previous_owner = self._endpoints.get(previous.owner_device_id)
                if previous_owner is not None:
                    previous_owner.pairing_code = None
        else:
            code = self._code_factory()
            while code in self._codes:
                code = self._code_factory()

        pairing_code = PairingCode(
            code=code,
            owner_device_id=owner.device_id,
            expires_at=self._clock() + self._code_ttl,
        )
        self._codes[code] = pairing_code
        owner.pairing_code = code
        return pairing_code

    def _revoke_code(self, endpoint: Endpoint) -> list[Effect]:
        code = endpoint.pairing_code
        endpoint.pairing_code = None
        if code is None:
            return []
        pairing_code = self._codes.get(code)
        if pairing_code is None or pairing_code.owner_device_id != endpoint.device_id:
            return []
        del self._codes[code]
        return [CancelExpiry(code=code)]

    @staticmethod
    def _deliver(endpoint: Endpoint, message) -> Deliver:
        return Deliver(connection_id=endpoint.connection_id, message=message)
