"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- The parsed form of an inbound webhook
- Response models for API responses
"""

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from spenly_whatsapp.utils import isoformat_utc, strip_channel_prefix


# =============================================================================
# Pydantic Request Models
# =============================================================================

class LinkTokenRequest(BaseModel):
    """Body of POST /api/whatsapp/link-token."""
    apple_user_id: Optional[str] = Field(
        None,
        description="App account the token will link to"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [{"apple_user_id": "001234.abcd.0987"}]
        }
    }


class InboundWebhookForm(BaseModel):
    """
    Form-encoded payload posted by Twilio for an inbound WhatsApp message.

    Normalizes:
    - from_phone: 'whatsapp:' channel prefix stripped
    - body: surrounding whitespace trimmed
    - num_media: non-numeric or missing values count as 0
    """
    message_sid: Optional[str] = Field(None, alias="MessageSid")
    from_phone: str = Field("", alias="From")
    to_phone: Optional[str] = Field(None, alias="To")
    body: str = Field("", alias="Body")
    num_media: int = Field(0, alias="NumMedia")
    media_url: Optional[str] = Field(None, alias="MediaUrl0")
    media_content_type: Optional[str] = Field(None, alias="MediaContentType0")

    @field_validator("from_phone", mode="before")
    @classmethod
    def strip_prefix(cls, v) -> str:
        return strip_channel_prefix(v or "")

    @field_validator("body", mode="before")
    @classmethod
    def trim_body(cls, v) -> str:
        return (v or "").strip()

    @field_validator("num_media", mode="before")
    @classmethod
    def coerce_num_media(cls, v) -> int:
        try:
            return max(int(v), 0)
        except (TypeError, ValueError):
            return 0

    model_config = {
        "populate_by_name": True,
        "extra": "ignore",
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class LinkTokenResponse(BaseModel):
    token: str = Field(..., description="Opaque single-use link token")
    expires_at: str = Field(..., description="Expiry timestamp (ISO-8601 UTC)")


class TransactionResponse(BaseModel):
    """
    A pending transaction as returned to the mobile app.
    """
    id: int
    amount: float
    date: str = Field(..., description="Transaction date (YYYY-MM-DD)")
    vendor: str = ""
    category: str = ""
    note: str = ""
    created_at: Optional[str] = Field(None, description="Creation time (ISO-8601 UTC)")

    @classmethod
    def from_orm_row(cls, row) -> "TransactionResponse":
        return cls(
            id=row.id,
            amount=float(row.amount),
            date=row.date.isoformat() if isinstance(row.date, date) else str(row.date),
            vendor=row.vendor or "",
            category=row.category or "",
            note=row.note or "",
            created_at=isoformat_utc(row.created_at),
        )


class TransactionsListResponse(BaseModel):
    transactions: list[TransactionResponse] = Field(default_factory=list)
    count: int = Field(..., ge=0)


class ConfirmResponse(BaseModel):
    status: str = Field(default="success")


class LinkStatusResponse(BaseModel):
    linked: bool
    whatsapp_number: Optional[str] = None
    linked_at: Optional[str] = None


class MessageResponse(BaseModel):
    message: str


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
