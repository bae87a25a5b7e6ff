"""
Payment gateway DTOs (Pydantic v2) used at application boundaries.

Amounts are integers in currency minor units (cents).
"""
from __future__ import annotations

from typing import Any, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

# Common ISO-4217 currencies (extend as needed)
ISO_4217 = {
    "USD", "EUR", "GBP", "CAD", "AUD", "ILS",
}


def _lower_and_validate_currency(v: str) -> str:
    u = (v or "").upper()
    if len(u) != 3 or not u.isalpha():
        raise ValueError("currency must be ISO-4217 alpha-3")
    if u not in ISO_4217:
        raise ValueError("unsupported currency")
    return u.lower()


class CreateCustomer(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class GatewayCustomer(BaseModel):
    customer_id: str
    provider: str


class CreateSetupIntent(BaseModel):
    customer_id: str
    usage: str = "off_session"
    payment_method_types: list[str] = Field(default_factory=lambda: ["card"])
    metadata: dict[str, str] = Field(default_factory=dict)


class SetupIntent(BaseModel):
    setup_intent_id: str
    client_secret: Optional[str] = None
    status: str
    provider: str


class CreatePaymentIntent(BaseModel):
    amount: int = Field(gt=0)
    currency: str = Field(default="usd")
    customer_id: Optional[str] = None
    payment_method_id: Optional[str] = None
    off_session: bool = False
    confirm: bool = False
    idempotency_key: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @field_validator("currency")
    @classmethod
    def _validate_currency(cls, v: str) -> str:
        return _lower_and_validate_currency(v)


class PaymentIntent(BaseModel):
    intent_id: str
    status: str
    amount: Optional[int] = None
    client_secret: Optional[str] = None
    provider: str
    last_error_code: Optional[str] = None
    last_error_message: Optional[str] = None


class RefundRequest(BaseModel):
    payment_intent_id: str
    amount: int = Field(gt=0)
    reason: Optional[str] = None
    idempotency_key: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class RefundResult(BaseModel):
    refund_id: str
    status: str
    provider: str
    amount: Optional[int] = None


class WebhookEvent(BaseModel):
    id: str
    type: str
    provider: str
    data: dict[str, Any]
    # raw fields for traceability (optional)
    raw_headers: Optional[dict[str, Any]] = None
    raw_body: Optional[bytes] = None

    model_config = ConfigDict(arbitrary_types_allowed=True)
