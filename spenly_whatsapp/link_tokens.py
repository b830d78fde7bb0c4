"""
Link-token lifecycle: issue, then consume at most once before expiry.

Tokens are created by the mobile app and pasted into WhatsApp as
``link_<token>``. Consuming a token marks it used and binds the sender's number
to the token owner in one database transaction.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from spenly_whatsapp.models import LinkToken
from spenly_whatsapp.user_mappings import upsert_mapping
from spenly_whatsapp.utils import mask_phone, utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 10


class LinkStatus(str, enum.Enum):
    LINKED = "linked"
    INVALID = "invalid"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"


@dataclass
class LinkResult:
    status: LinkStatus
    apple_user_id: Optional[str] = None


def issue_link_token(
    db: Session,
    apple_user_id: str,
    now: Optional[datetime] = None,
    ttl_minutes: int = DEFAULT_TTL_MINUTES,
) -> LinkToken:
    """
    Create a new link token for an app account.

    Returns:
        The stored LinkToken (token and expires_at populated)
    """
    now = now or utcnow()
    link_token = LinkToken(
        token=str(uuid.uuid4()),
        apple_user_id=apple_user_id,
        created_at=now,
        expires_at=now + timedelta(minutes=ttl_minutes),
    )
    try:
        db.add(link_token)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Link token issued, expires at {link_token.expires_at.isoformat()}")
    return link_token


def get_link_token(db: Session, token: str) -> Optional[LinkToken]:
    return db.execute(
        select(LinkToken).where(LinkToken.token == token)
    ).scalar_one_or_none()


def consume_link_token(
    db: Session,
    token: str,
    whatsapp_number: str,
    now: Optional[datetime] = None,
) -> LinkResult:
    """
    Consume a link token on behalf of a WhatsApp number.

    The row is locked for the duration of the transaction where the database
    supports it, and the used_at update is conditional on used_at still being
    NULL, so two concurrent attempts cannot both succeed. The user mapping is
    written in the same transaction; on any error both changes are rolled back.

    Returns:
        LinkResult; only LINKED changes state.
    """
    now = now or utcnow()
    try:
        link_token = db.execute(
            select(LinkToken).where(LinkToken.token == token).with_for_update()
        ).scalar_one_or_none()

        if link_token is None:
            db.rollback()
            logger.info("Link token not found")
            return LinkResult(LinkStatus.INVALID)

        if now > link_token.expires_at:
            db.rollback()
            logger.info("Link token expired")
            return LinkResult(LinkStatus.EXPIRED)

        if link_token.used_at is not None:
            db.rollback()
            logger.info("Link token already used")
            return LinkResult(LinkStatus.ALREADY_USED)

        apple_user_id = link_token.apple_user_id
        result = db.execute(
            update(LinkToken)
            .where(LinkToken.id == link_token.id, LinkToken.used_at.is_(None))
            .values(used_at=now, whatsapp_number=whatsapp_number)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # another request consumed it between our read and write
            db.rollback()
            logger.info("Link token consumed concurrently")
            return LinkResult(LinkStatus.ALREADY_USED)

        upsert_mapping(db, whatsapp_number, apple_user_id, now=now, commit=False)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Linked {mask_phone(whatsapp_number)} via link token")
    return LinkResult(LinkStatus.LINKED, apple_user_id=apple_user_id)
