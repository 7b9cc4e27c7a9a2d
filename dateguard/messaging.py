"""Outbound SMS providers.

The provider is picked once at startup from settings; handlers only ever see
the ``MessagingProvider`` interface.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional, Protocol

from twilio.rest import Client

from .config import Settings

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendReceipt:
    to: str
    message_id: Optional[str]
    simulated: bool = False


class MessagingProvider(Protocol):
    simulated: bool

    def send_sms(self, to: str, body: str) -> SendReceipt: ...


def normalize_phone(phone: str) -> str:
    """E.164-ish: keep digits, assume North America for bare 10-digit numbers."""
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 10:
        digits = "1" + digits
    return "+" + digits


class TwilioMessagingProvider:
    simulated = False

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Client] = None):
        self.from_number = from_number
        self.client = client or Client(account_sid, auth_token)

    def send_sms(self, to: str, body: str) -> SendReceipt:
        to = normalize_phone(to)
        msg = self.client.messages.create(body=body, from_=self.from_number, to=to)
        return SendReceipt(to=to, message_id=msg.sid)


class NullMessagingProvider:
    """Logs instead of sending. Used when no SMS credentials are configured."""

    simulated = True

    def send_sms(self, to: str, body: str) -> SendReceipt:
        log.info("simulated SMS to %s: %s", to, body.splitlines()[0] if body else "")
        return SendReceipt(to=to, message_id=None, simulated=True)


def build_messaging_provider(settings: Settings) -> MessagingProvider:
    if settings.messaging_configured:
        log.info("SMS via Twilio from %s", settings.twilio_phone_number)
        return TwilioMessagingProvider(settings.twilio_account_sid, settings.twilio_auth_token,
                                       settings.twilio_phone_number)
    log.warning("Twilio credentials not configured - SMS runs in simulation mode")
    return NullMessagingProvider()
