"""Effects produced by the registry and router.

Registry and router operations never perform I/O. They return a list of
effects describing what the signaling hub must do: deliver an envelope to
a connection, close a superseded connection, or arm / disarm the expiry
timer of a pairing code.
"""

from __future__ import annotations

from typing import Union

from pydantic import BaseModel, ConfigDict, Field

from termlink.domain.messages import Message


class Deliver(BaseModel):
    """Send an envelope to one live control connection (best-effort)."""

    model_config = ConfigDict(frozen=True)

    connection_id: str
    message: Message
    raw: str | None = Field(default=None, description="Verbatim wire form, when relaying")


class Close(BaseModel):
    """Close a control connection that has been superseded."""

    model_config = ConfigDict(frozen=True)

    connection_id: str
    reason: str = ""


class ScheduleExpiry(BaseModel):
    """Arm the deferred expiry of a pairing code."""

    model_config = ConfigDict(frozen=True)

    code: str
    delay: float = Field(ge=0)


class CancelExpiry(BaseModel):
    """Disarm the expiry timer of a consumed or revoked pairing code."""

    model_config = ConfigDict(frozen=True)

    code: str


Effect = Union[Deliver, Close, ScheduleExpiry, CancelExpiry]


def deliveries(effects: list[Effect]) -> list[Deliver]:
    """Filter an effect list down to its deliveries."""
    return [e for e in effects if isinstance(e, Deliver)]
