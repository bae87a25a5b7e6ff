"""
支付元数据的类型化记录

每个操作写入自己的记录类型，`extra` 作为向前兼容的开放映射。
to_dict() 产出的键由 Payment.append_metadata 追加合并，不覆盖已有键。
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Optional


@dataclass
class _PaymentMetadata:
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.extra or {})
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(self, f.name)
            if value is None:
                continue
            if isinstance(value, datetime):
                value = value.isoformat()
            data[f.name] = value
        return data


@dataclass
class CardIntentMetadata(_PaymentMetadata):
    client_secret: Optional[str] = None
    idempotency_key: Optional[str] = None
    location_id: Optional[int] = None


@dataclass
class CashPaymentMetadata(_PaymentMetadata):
    location_id: Optional[int] = None
    initiated_at: Optional[datetime] = None


@dataclass
class ConfirmationMetadata(_PaymentMetadata):
    confirmed: Optional[bool] = None
    confirmed_by: Optional[int] = None
    confirmed_by_role: Optional[str] = None
    confirmed_at: Optional[datetime] = None
    confirmation_notes: Optional[str] = None


@dataclass
class WebhookMetadata(_PaymentMetadata):
    webhook_processed: bool = True
    webhook_processed_at: Optional[datetime] = None
    webhook_status: Optional[str] = None


@dataclass
class RefundMetadata(_PaymentMetadata):
    refunded_by: Optional[int] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[int] = None
    provider_refund_id: Optional[str] = None


@dataclass
class ReturnRefundMetadata(_PaymentMetadata):
    original_payment_id: Optional[int] = None
    item_condition: Optional[str] = None
    processed_by: Optional[int] = None
    processed_at: Optional[datetime] = None
    return_notes: Optional[str] = None


@dataclass
class DeferredChargeMetadata(_PaymentMetadata):
    payment_intent_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    charged_at: Optional[datetime] = None
