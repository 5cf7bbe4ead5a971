"""Credential verification and external login for the signaling server.

The server only ever sees bearer credentials. ``TokenIssuer`` mints and
verifies them (HMAC-SHA256 over a base64url JSON payload) and also signs
the opaque OAuth ``state`` that carries a device id and role through the
identity provider's login page. Identity providers are pluggable; the
Google implementation talks to the OAuth endpoints with httpx.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable
from urllib.parse import urlencode

import httpx

from termlink.domain.models import Identity

logger = logging.getLogger(__name__)


class CredentialVerifier(ABC):
    """Resolves a bearer credential to a stable identity."""

    @abstractmethod
    def verify(self, credential: str) -> Identity | None:
        """Return the identity behind ``credential``, or None if invalid."""
        ...


class TokenIssuer(CredentialVerifier):
    """Issues and verifies HMAC-signed bearer tokens.

    Tokens look like ``<payload>.<signature>`` where both parts are
    unpadded base64url. The payload is JSON with ``sub``, ``email``,
    ``name`` and ``exp`` (epoch seconds).
    """

    def __init__(
        self,
        secret: str,
        ttl: float = 30 * 24 * 3600,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._key = secret.encode()
        self._ttl = ttl
        self._clock = clock

    def issue(self, identity: Identity) -> str:
        """Mint a bearer token for ``identity``."""
        payload = {
            "sub": identity.subject,
            "email": identity.email,
            "name": identity.name,
            "exp": int(self._clock() + self._ttl),
        }
        return self._sign(payload)

    def verify(self, credential: str) -> Identity | None:
        payload = self._unsign(credential)
        if payload is None:
            return None
        if payload.get("exp", 0) <= self._clock():
            logger.debug("Rejected expired token for %s", payload.get("sub"))
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        return Identity(subject=subject, email=payload.get("email"), name=payload.get("name"))

    def sign_state(self, data: dict[str, str]) -> str:
        """Sign an opaque login ``state`` value."""
        return self._sign(data)

    def verify_state(self, state: str) -> dict[str, Any] | None:
        """Return the data carried by a login ``state``, or None if forged."""
        return self._unsign(state)

    def _sign(self, payload: dict[str, Any]) -> str:
        body = _b64encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode())
        signature = _b64encode(hmac.new(self._key, body.encode(), hashlib.sha256).digest())
        return f"{body}.{signature}"

    def _unsign(self, token: str) -> dict[str, Any] | None:
        body, sep, signature = token.partition(".")
        if not sep or not body or not signature:
            return None
        expected = _b64encode(hmac.new(self._key, body.encode(), hashlib.sha256).digest())
        if not hmac.compare_digest(signature, expected):
            return None
        try:
            payload = json.loads(_b64decode(body))
        except (ValueError, UnicodeDecodeError):
            return None
        return payload if isinstance(payload, dict) else None


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64decode(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


# ---------------------------------------------------------------------------
# Identity providers
# ---------------------------------------------------------------------------


class IdentityProviderError(Exception):
    """Raised when the external login cannot be completed."""

    def __init__(self, message: str, provider: str = "") -> None:
        super().__init__(message)
        self.provider = provider


class IdentityProvider(ABC):
    """An external login (OAuth 2.0 authorization code flow)."""

    name: str = ""

    @abstractmethod
    def authorization_url(self, state: str, redirect_uri: str) -> str:
        """URL of the provider's login page."""
        ...

    @abstractmethod
    async def exchange(self, code: str, redirect_uri: str) -> Identity:
        """Trade an authorization code for the user's identity.

        Raises:
            IdentityProviderError: If the code is rejected or the
                provider cannot be reached.
        """
        ...


class GoogleIdentityProvider(IdentityProvider):
    """Google OAuth 2.0 / OpenID Connect login."""

    name = "google"

    AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"

    def __init__(self, client_id: str, client_secret: str, timeout: float = 10.0) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        query = urlencode(
            {
                "client_id": self._client_id,
                "redirect_uri": redirect_uri,
                "response_type": "code",
                "scope": "openid email profile",
                "state": state,
            }
        )
        return f"{self.AUTHORIZE_URL}?{query}"

    async def exchange(self, code: str, redirect_uri: str) -> Identity:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                resp = await client.post(
                    self.TOKEN_URL,
                    data={
                        "code": code,
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                )
                resp.raise_for_status()
                access_token = resp.json()["access_token"]

                resp = await client.get(
                    self.USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                resp.raise_for_status()
                profile = resp.json()
            except (httpx.HTTPError, KeyError, ValueError) as e:
                raise IdentityProviderError(
                    f"Google login failed: {e}", provider=self.name
                ) from e

        if not profile.get("sub"):
            raise IdentityProviderError("Google profile has no subject", provider=self.name)
        logger.info("Google login for %s", profile.get("email"))
        return Identity(
            subject=str(profile["sub"]),
            email=profile.get("email"),
            name=profile.get("name"),
        )
