"""
Outbound WhatsApp messages via the Twilio REST API.
"""

import logging
from typing import Optional

from twilio.rest import Client

from spenly_whatsapp.config import Settings
from spenly_whatsapp.utils import CHANNEL_PREFIX

logger = logging.getLogger(__name__)

# WhatsApp message body limit enforced by Twilio
MAX_BODY_LENGTH = 1600


def to_channel_address(phone: str) -> str:
    """'+14155550100' -> 'whatsapp:+14155550100'"""
    if phone.startswith(CHANNEL_PREFIX):
        return phone
    if not phone.startswith("+"):
        phone = "+" + phone
    return f"{CHANNEL_PREFIX}{phone}"


class TwilioMessenger:
    """Sends WhatsApp text messages from a fixed Twilio sender number."""

    def __init__(self, account_sid: str, auth_token: str, from_number: str, client: Optional[Client] = None):
        self.from_number = to_channel_address(from_number)
        self.client = client or Client(account_sid, auth_token)

    def send_text(self, to_phone: str, body: str) -> str:
        """
        Send a text message.

        Returns:
            The provider message SID

        Raises:
            TwilioRestException if the provider rejects the message
        """
        message = self.client.messages.create(
            body=body[:MAX_BODY_LENGTH],
            from_=self.from_number,
            to=to_channel_address(to_phone),
        )
        logger.info(f"WhatsApp message sent: {message.sid}")
        return message.sid


def build_messenger(settings: Settings) -> Optional[TwilioMessenger]:
    """
    Create the messenger from settings, or None when Twilio is not configured.
    """
    if not settings.twilio_configured:
        logger.warning("Twilio credentials not configured; replies will not be delivered")
        return None

    return TwilioMessenger(
        account_sid=settings.TWILIO_ACCOUNT_SID,
        auth_token=settings.TWILIO_AUTH_TOKEN,
        from_number=settings.TWILIO_WHATSAPP_NUMBER,
    )
