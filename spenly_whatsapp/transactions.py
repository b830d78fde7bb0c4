"""
Pending transaction repository functions.
"""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from spenly_whatsapp.models import STATUS_PENDING, STATUS_SYNCED, PendingTransaction
from spenly_whatsapp.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50


def create_transaction(
    db: Session,
    apple_user_id: str,
    amount: Decimal,
    date: date,
    vendor: Optional[str],
    category: str,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Create a pending transaction.

    Returns:
        The new transaction id
    """
    transaction = PendingTransaction(
        apple_user_id=apple_user_id,
        amount=amount,
        date=date,
        vendor=vendor,
        category=category,
        note=note or None,
        status=STATUS_PENDING,
        created_at=now or utcnow(),
    )
    try:
        db.add(transaction)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Pending transaction created: id={transaction.id}, amount={amount}")
    return transaction.id


def list_pending_transactions(
    db: Session,
    apple_user_id: str,
    limit: int = DEFAULT_LIST_LIMIT,
) -> List[PendingTransaction]:
    """
    Pending transactions for an account, newest first.
    """
    query = (
        select(PendingTransaction)
        .where(
            PendingTransaction.apple_user_id == apple_user_id,
            PendingTransaction.status == STATUS_PENDING,
        )
        .order_by(PendingTransaction.created_at.desc(), PendingTransaction.id.desc())
        .limit(limit)
    )
    transactions = list(db.execute(query).scalars().all())
    logger.debug(f"Retrieved {len(transactions)} pending transactions")
    return transactions


def confirm_transaction(
    db: Session,
    transaction_id: int,
    apple_user_id: str,
    now: Optional[datetime] = None,
) -> bool:
    """
    Mark a pending transaction as synced.

    Returns:
        True on success; False when no pending transaction with that id belongs
        to the account (missing, someone else's, or already synced).
    """
    try:
        result = db.execute(
            update(PendingTransaction)
            .where(
                PendingTransaction.id == transaction_id,
                PendingTransaction.apple_user_id == apple_user_id,
                PendingTransaction.status == STATUS_PENDING,
            )
            .values(status=STATUS_SYNCED, synced_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    confirmed = result.rowcount > 0
    logger.info(f"Confirm transaction {transaction_id}: {'synced' if confirmed else 'not found or already synced'}")
    return confirmed
