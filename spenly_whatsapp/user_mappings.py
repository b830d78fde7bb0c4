"""
Phone number to app identity bindings.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from spenly_whatsapp.models import UserMapping
from spenly_whatsapp.utils import mask_phone, utcnow

logger = logging.getLogger(__name__)

_DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def get_mapping_by_phone(db: Session, whatsapp_number: str) -> Optional[UserMapping]:
    return db.execute(
        select(UserMapping).where(UserMapping.whatsapp_number == whatsapp_number)
    ).scalar_one_or_none()


def get_mapping_by_owner(db: Session, apple_user_id: str) -> Optional[UserMapping]:
    """Most recently linked number for an app account, if any."""
    return db.execute(
        select(UserMapping)
        .where(UserMapping.apple_user_id == apple_user_id)
        .order_by(UserMapping.updated_at.desc(), UserMapping.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def upsert_mapping(
    db: Session,
    whatsapp_number: str,
    apple_user_id: str,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> UserMapping:
    """
    Bind a number to an app account, overwriting any previous binding.

    Written as a single INSERT ... ON CONFLICT (whatsapp_number) DO UPDATE so
    two links racing for the same number both succeed and the last one wins.

    Args:
        commit: False when the caller owns the surrounding transaction
    """
    now = now or utcnow()
    dialect = db.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise NotImplementedError(f"user mapping upsert is not supported on {dialect}")

    stmt = insert(UserMapping).values(
        whatsapp_number=whatsapp_number,
        apple_user_id=apple_user_id,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UserMapping.whatsapp_number],
        set_={
            "apple_user_id": stmt.excluded.apple_user_id,
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)

    mapping = db.execute(
        select(UserMapping)
        .where(UserMapping.whatsapp_number == whatsapp_number)
        .execution_options(populate_existing=True)
    ).scalar_one()
    logger.info(f"Upserted user mapping for {mask_phone(whatsapp_number)}")

    if commit:
        db.commit()
    return mapping


def delete_mappings_for_owner(db: Session, apple_user_id: str) -> int:
    """Unlink every number bound to an app account. Returns rows removed."""
    result = db.execute(
        delete(UserMapping).where(UserMapping.apple_user_id == apple_user_id)
    )
    db.commit()
    logger.info(f"Removed {result.rowcount} user mapping(s)")
    return result.rowcount
