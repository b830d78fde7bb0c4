"""
Best-effort audit trail of inbound WhatsApp messages.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from spenly_whatsapp.models import InboundMessage
from spenly_whatsapp.utils import utcnow

logger = logging.getLogger(__name__)

TYPE_TEXT = "text"
TYPE_IMAGE = "image"

STATUS_PROCESSED = "processed"
STATUS_PENDING_PROCESSING = "pending_processing"


def record_inbound_message(
    db: Session,
    whatsapp_number: str,
    message_type: str,
    content: Optional[str],
    status: str,
    raw_data: Optional[dict] = None,
) -> bool:
    """
    Store an inbound message for auditing.

    This is a non-critical side effect: failures are logged as warnings and
    reported through the return value, never raised.

    Returns:
        True if stored, False otherwise
    """
    try:
        db.add(InboundMessage(
            whatsapp_number=whatsapp_number,
            message_type=message_type,
            content=content,
            raw_data=raw_data,
            status=status,
            created_at=utcnow(),
        ))
        db.commit()
        return True
    except Exception as e:
        db.rollback()
        logger.warning(f"Failed to store inbound {message_type} message: {e}")
        return False
