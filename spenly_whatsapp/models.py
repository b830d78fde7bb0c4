"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, Date, DateTime, Integer, Numeric, String, Text

from spenly_whatsapp.storage import Base

STATUS_PENDING = "pending"
STATUS_SYNCED = "synced"


class LinkToken(Base):
    """
    Short-lived, single-use token binding a WhatsApp number to an app account.

    Table: link_tokens
    Rows are never deleted; used_at and whatsapp_number are set together on
    consumption.
    """
    __tablename__ = "link_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String(255), nullable=False, unique=True, index=True)
    apple_user_id = Column(String(255), nullable=False, index=True)
    whatsapp_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)


class UserMapping(Base):
    """
    WhatsApp number to app identity binding.

    Table: user_mappings
    One row per number; re-linking overwrites apple_user_id.
    """
    __tablename__ = "user_mappings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    whatsapp_number = Column(String(50), nullable=False, unique=True, index=True)
    apple_user_id = Column(String(255), nullable=False, index=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class PendingTransaction(Base):
    """
    Draft expense awaiting sync into the mobile app.

    Table: pending_transactions
    status moves pending -> synced once.
    """
    __tablename__ = "pending_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    apple_user_id = Column(String(255), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    date = Column(Date, nullable=False)
    vendor = Column(String(255), nullable=True)
    category = Column(String(100), nullable=False)
    note = Column(Text, nullable=True)
    status = Column(String(50), nullable=False, default=STATUS_PENDING, index=True)
    created_at = Column(DateTime, nullable=False)
    synced_at = Column(DateTime, nullable=True)


class InboundMessage(Base):
    """
    Write-only audit trail of inbound WhatsApp messages.

    Table: whatsapp_messages
    """
    __tablename__ = "whatsapp_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    whatsapp_number = Column(String(50), nullable=False, index=True)
    message_type = Column(String(20), nullable=False)  # text | image
    content = Column(Text, nullable=True)
    raw_data = Column(JSON, nullable=True)
    status = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False)
