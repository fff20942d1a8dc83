"""API request/response schemas for gateway endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PaymentCreateRequest(BaseModel):
    """Payment creation payload accepted from clients."""

    idempotency_key: str = Field(min_length=1, max_length=255)
    amount: Decimal = Field(ge=Decimal("0.01"), max_digits=19, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3, pattern="^[A-Za-z]{3}$")
    merchant_id: str = Field(min_length=1, max_length=100)
    customer_id: str = Field(min_length=1, max_length=100)
    description: str | None = Field(default=None, max_length=500)

    @field_validator("idempotency_key", "merchant_id", "customer_id")
    @classmethod
    def not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value


class PaymentResponse(BaseModel):
    """Full payment view returned to clients."""

    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    idempotency_key: str
    amount: Decimal
    currency: str
    merchant_id: str
    customer_id: str
    description: str | None
    status: str
    provider_reference: str | None
    failure_reason: str | None
    retry_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class ErrorResponse(BaseModel):
    error_code: str
    message: str
    timestamp: datetime


class TimelineEntry(BaseModel):
    """One recorded status change."""

    model_config = ConfigDict(from_attributes=True)

    state_version: int
    from_state: str | None
    to_state: str
    reason: str
    created_at: datetime
