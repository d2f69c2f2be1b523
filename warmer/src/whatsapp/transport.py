"""
Messaging Transport Contract
=============================

What the warming engine needs from a connected account. The concrete adapter
is WhatsAppBridge (bridge.py); tests use an in-memory fake.

Outbound calls return a SendResult instead of raising. Inbound traffic is
delivered as typed events on an asyncio queue (`transport.events`) that the
orchestrator drains in WarmingOrchestrator.run().
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol, Union


# Session statuses that mean the account can no longer send
DISCONNECTED_STATUSES = {"disconnected", "close", "closed", "logged_out", "auth_failure"}

# Suffix the gateway appends to private-chat addresses
USER_SUFFIX = "@c.us"


def normalize_address(jid: str) -> str:
    """'15551234567@c.us' → '15551234567'."""
    if not jid:
        return ""
    return jid.replace(USER_SUFFIX, "").split("@")[0].strip()


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: str = ""

    @classmethod
    def success(cls) -> "SendResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "SendResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class InboundMessage:
    source: str
    to: str
    body: str
    timestamp: int
    from_me: bool = False
    has_media: bool = False
    media_type: Optional[str] = None      # image | audio | voice | sticker | video
    media_bytes: Optional[bytes] = None
    mime_type: Optional[str] = None
    message_ref: Optional[str] = None     # opaque id used for reactions

    @property
    def counterparty(self) -> str:
        """Own-account messages are filed under the chat partner, not under us."""
        return normalize_address(self.to if self.from_me else self.source)


@dataclass(frozen=True)
class SessionStatusChanged:
    status: str
    reason: str = ""

    @property
    def is_disconnect(self) -> bool:
        return self.status.lower() in DISCONNECTED_STATUSES


TransportEvent = Union[InboundMessage, SessionStatusChanged]


class MessagingTransport(Protocol):
    events: "asyncio.Queue[TransportEvent]"

    def is_ready(self) -> bool: ...

    async def send_text(self, address: str, text: str) -> SendResult: ...

    async def send_media(self, address: str, data: bytes, mime_type: str,
                         caption: Optional[str] = None) -> SendResult: ...

    async def send_sticker(self, address: str, data: bytes) -> SendResult: ...

    async def send_reaction(self, message_ref: str, emoji: str) -> SendResult: ...

    async def set_composing(self, address: str) -> SendResult: ...
