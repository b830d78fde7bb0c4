"""
Conversation router for inbound WhatsApp messages.

Each message is classified once into an Intent (media, help, link or
transaction) and then handled by exactly one branch, which always produces a
reply text. Business failures inside a branch are logged and turned into an
apology reply; the router itself never raises.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from sqlalchemy.orm import Session

from spenly_whatsapp import message_log
from spenly_whatsapp.link_tokens import LinkStatus, consume_link_token
from spenly_whatsapp.parser import parse_message
from spenly_whatsapp.schemas import InboundWebhookForm
from spenly_whatsapp.transactions import create_transaction
from spenly_whatsapp.user_mappings import get_mapping_by_phone

logger = logging.getLogger(__name__)

HELP_COMMANDS = frozenset({"help", "hi", "hello"})
LINK_PREFIX = "link_"
DEFAULT_CATEGORY = "Food"


# =============================================================================
# Reply Texts
# =============================================================================

HELP_TEXT = """📱 *Spenly WhatsApp Bot - Commands*

*Add Transactions:*
• "Lunch $15" - Add expense
• "Coffee $5.50" - Quick entry
• "Groceries $45.99" - With vendor name

*Other Commands:*
• "Help" - Show this message

*Tips:*
• Include date: "Lunch $15 12/25"
• Use "today" or "yesterday" for dates

Need help? Contact support@spenly.app"""

MEDIA_REPLY = (
    "📸 Receipt received! Receipt processing is coming soon - for now, "
    "please send transactions as text like 'Coffee $5.50'."
)

LINKED_REPLY = """✅ Account linked! I'm Spenly. How can I help you today?

Try sending:
• "Lunch $15" - Add a transaction
• "Coffee $5.50" - Quick expense entry
• "Help" - See all commands"""

LINK_REPLIES = {
    LinkStatus.LINKED: LINKED_REPLY,
    LinkStatus.INVALID: "Invalid or expired link token. Please generate a new one from the Spenly app.",
    LinkStatus.EXPIRED: "This link token has expired. Please generate a new one from the Spenly app.",
    LinkStatus.ALREADY_USED: "This link token has already been used. Please generate a new one from the Spenly app.",
}

NOT_LINKED_REPLY = "Your WhatsApp number is not linked. Please link your account first using the Spenly app."

USAGE_REPLY = """I couldn't understand that. Please send a transaction like:
• "Lunch $15"
• "Coffee $5.50"
• "Groceries $45.99"

Or type "help" for more options."""

LINK_ERROR_REPLY = "Sorry, there was an error processing your link. Please try again."
TRANSACTION_ERROR_REPLY = (
    "Sorry, there was an error processing your transaction. "
    "Please try again or contact support."
)
GENERIC_ERROR_REPLY = "Sorry, something went wrong. Please try again."


# =============================================================================
# Classification
# =============================================================================

class IntentKind(str, enum.Enum):
    MEDIA = "media"
    HELP = "help"
    LINK = "link"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class Intent:
    kind: IntentKind
    token: Optional[str] = None


@dataclass
class Reply:
    text: str
    intent: IntentKind
    result: str


def classify_message(message: InboundWebhookForm) -> Intent:
    """
    Decide how an inbound message is handled.

    Comparison is case-insensitive; the original body is kept for parsing.
    An empty text message is answered with the help text.
    """
    if message.num_media > 0:
        return Intent(IntentKind.MEDIA)

    lowered = message.body.strip().lower()
    if not lowered or lowered in HELP_COMMANDS:
        return Intent(IntentKind.HELP)

    if lowered.startswith(LINK_PREFIX):
        # issued tokens are lowercase UUIDs
        return Intent(IntentKind.LINK, token=lowered[len(LINK_PREFIX):].strip())

    return Intent(IntentKind.TRANSACTION)


def format_confirmation(vendor: str, amount, note: str) -> str:
    reply = f"✅ Added: {vendor or 'Transaction'} ${amount:.2f}"
    if note:
        reply += f"\nNote: {note}"
    reply += "\n\nTransaction will appear in Spenly after sync."
    return reply


# =============================================================================
# Router
# =============================================================================

class ConversationRouter:
    """
    Handles one inbound message against a request-scoped database session.
    """

    def __init__(self, db: Session, default_category: str = DEFAULT_CATEGORY, today: Optional[date] = None):
        self.db = db
        self.default_category = default_category
        self.today = today

    def handle(self, message: InboundWebhookForm) -> Reply:
        intent = classify_message(message)
        logger.info(f"Inbound message classified as {intent.kind.value}")

        try:
            if intent.kind is IntentKind.MEDIA:
                return self._handle_media(message)
            elif intent.kind is IntentKind.HELP:
                return Reply(HELP_TEXT, intent.kind, "help")
            elif intent.kind is IntentKind.LINK:
                return self._handle_link(message, intent.token)
            elif intent.kind is IntentKind.TRANSACTION:
                return self._handle_transaction(message)
            raise ValueError(f"Unhandled intent: {intent.kind}")
        except Exception as e:
            logger.error(f"Error handling {intent.kind.value} message: {e}", exc_info=True)
            return Reply(self._error_reply(intent.kind), intent.kind, "error")

    @staticmethod
    def _error_reply(kind: IntentKind) -> str:
        if kind is IntentKind.LINK:
            return LINK_ERROR_REPLY
        if kind is IntentKind.TRANSACTION:
            return TRANSACTION_ERROR_REPLY
        return GENERIC_ERROR_REPLY

    def _handle_media(self, message: InboundWebhookForm) -> Reply:
        message_log.record_inbound_message(
            self.db,
            whatsapp_number=message.from_phone,
            message_type=message_log.TYPE_IMAGE,
            content=message.media_url,
            status=message_log.STATUS_PENDING_PROCESSING,
            raw_data={"url": message.media_url, "type": message.media_content_type},
        )
        return Reply(MEDIA_REPLY, IntentKind.MEDIA, "receipt_queued")

    def _handle_link(self, message: InboundWebhookForm, token: Optional[str]) -> Reply:
        if not token:
            return Reply(LINK_REPLIES[LinkStatus.INVALID], IntentKind.LINK, LinkStatus.INVALID.value)

        result = consume_link_token(self.db, token, message.from_phone)
        return Reply(LINK_REPLIES[result.status], IntentKind.LINK, result.status.value)

    def _handle_transaction(self, message: InboundWebhookForm) -> Reply:
        mapping = get_mapping_by_phone(self.db, message.from_phone)
        if mapping is None:
            return Reply(NOT_LINKED_REPLY, IntentKind.TRANSACTION, "not_linked")
        apple_user_id = mapping.apple_user_id

        parsed = parse_message(message.body, today=self.today)
        if not parsed.is_valid:
            return Reply(USAGE_REPLY, IntentKind.TRANSACTION, "unparsed")

        create_transaction(
            self.db,
            apple_user_id=apple_user_id,
            amount=parsed.amount,
            date=parsed.date,
            vendor=parsed.vendor,
            category=self.default_category,
            note=parsed.note,
        )
        message_log.record_inbound_message(
            self.db,
            whatsapp_number=message.from_phone,
            message_type=message_log.TYPE_TEXT,
            content=message.body,
            status=message_log.STATUS_PROCESSED,
        )
        return Reply(
            format_confirmation(parsed.vendor, parsed.amount, parsed.note),
            IntentKind.TRANSACTION,
            "created",
        )
