from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from lifecycle import Phase


LOG = logging.getLogger("taskdash_whatsapp")
DEFAULT_COUNTRY_CODE = "91"
CHAT_ID_SUFFIX = "@c.us"


class SendOutcome(str, Enum):
    SENT = "sent"
    FALLBACK_SUPPRESSED = "fallback-suppressed"
    NOT_READY = "not-ready"
    FAILED = "failed"

    @property
    def delivered_or_suppressed(self) -> bool:
        return self in (SendOutcome.SENT, SendOutcome.FALLBACK_SUPPRESSED)


@dataclass(frozen=True)
class NotificationMessage:
    recipient_phone: str
    body: str
    outcome: SendOutcome


class ChannelHost(Protocol):
    @property
    def phase(self) -> Phase: ...

    def channel_send(self, chat_id: str, text: str) -> None: ...


def normalize_phone(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 10:
        return country_code + digits
    return digits


def to_chat_id(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    return normalize_phone(phone, country_code) + CHAT_ID_SUFFIX


def _preview(body: str) -> str:
    return (body or "")[:50]


class OutboundGateway:
    """Best-effort, at-most-once notification sends; never raises to the caller."""

    def __init__(self, host: ChannelHost, country_code: str = DEFAULT_COUNTRY_CODE):
        self.host = host
        self.country_code = country_code
        self.last_message: NotificationMessage | None = None

    def send(self, phone: str, body: str) -> SendOutcome:
        outcome = self._send(phone, body)
        self.last_message = NotificationMessage(recipient_phone=phone, body=body, outcome=outcome)
        return outcome

    def _send(self, phone: str, body: str) -> SendOutcome:
        phase = self.host.phase
        if phase == Phase.FALLBACK:
            LOG.info("WhatsApp in fallback mode - would send to %s: %s...", phone, _preview(body))
            return SendOutcome.FALLBACK_SUPPRESSED
        if phase != Phase.READY:
            LOG.info("WhatsApp not ready (%s); message to %s not sent", phase.value, phone)
            return SendOutcome.NOT_READY

        chat_id = to_chat_id(phone, self.country_code)
        if chat_id == CHAT_ID_SUFFIX:
            LOG.warning("No digits in recipient phone %r; message not sent", phone)
            return SendOutcome.FAILED
        try:
            self.host.channel_send(chat_id, body)
        except Exception as exc:
            LOG.warning("Error sending WhatsApp message to %s: %s", phone, exc)
            return SendOutcome.FAILED
        LOG.info("Message sent to %s: %s...", phone, _preview(body))
        return SendOutcome.SENT
