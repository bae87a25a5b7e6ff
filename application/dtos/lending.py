"""
借用押金 DTO（Pydantic v2）- 应用层与表现层之间的数据传输

金额在边界上以美元浮点表示，进入引擎前统一换算为分。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_serializer

from core.response import utc_z
from domain.lending.entity import (
    ItemCondition,
    PayLaterStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
)
from domain.lending.money import from_minor_units, to_minor_units


class DTOBase(BaseModel):
    """所有 DTO 的时间字段统一输出为 UTC-Z"""

    @model_serializer(mode="wrap")
    def _serialize_model(self, handler):  # type: ignore[override]
        def convert(value):
            if isinstance(value, datetime):
                return utc_z(value)
            if isinstance(value, list):
                return [convert(v) for v in value]
            if isinstance(value, dict):
                return {k: convert(v) for k, v in value.items()}
            return value

        return convert(handler(self))


class DepositRequest(DTOBase):
    """创建押金交易请求"""
    location_id: int = Field(..., gt=0)
    borrower_name: str = Field(..., min_length=1, max_length=200, description="借用人姓名")
    borrower_email: Optional[EmailStr] = None
    borrower_phone: Optional[str] = Field(None, max_length=50)
    deposit_amount: Optional[float] = Field(None, ge=0, description="押金（美元），缺省使用地点配置")
    expected_return_date: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=1000)

    def deposit_minor(self) -> Optional[int]:
        if self.deposit_amount is None:
            return None
        return to_minor_units(self.deposit_amount)


class TransactionDTO(DTOBase):
    """交易响应"""
    id: int
    location_id: int
    borrower_name: str
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    deposit_amount: float
    deposit_payment_method: str
    is_returned: bool
    borrow_date: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    refund_amount: Optional[float] = None
    pay_later_status: Optional[PayLaterStatus] = None
    charge_error_code: Optional[str] = None
    charge_error_message: Optional[str] = None

    @classmethod
    def from_entity(cls, tx: Transaction) -> "TransactionDTO":
        return cls(
            id=tx.id,
            location_id=tx.location_id,
            borrower_name=tx.borrower_name,
            borrower_email=tx.borrower_email,
            borrower_phone=tx.borrower_phone,
            deposit_amount=from_minor_units(tx.deposit_amount),
            deposit_payment_method=tx.deposit_payment_method,
            is_returned=tx.is_returned,
            borrow_date=tx.borrow_date,
            expected_return_date=tx.expected_return_date,
            actual_return_date=tx.actual_return_date,
            refund_amount=from_minor_units(tx.refund_amount) if tx.refund_amount is not None else None,
            pay_later_status=tx.pay_later_status,
            charge_error_code=tx.charge_error_code,
            charge_error_message=tx.charge_error_message,
        )


class PaymentDTO(DTOBase):
    """支付记录响应（金额单位：分）"""
    id: int
    transaction_id: int
    payment_method: PaymentMethod
    payment_provider: Optional[str] = None
    external_payment_id: Optional[str] = None
    deposit_amount: int
    processing_fee: int
    total_amount: int
    status: PaymentStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, payment: Payment) -> "PaymentDTO":
        metadata = dict(payment.metadata or {})
        # 客户端密钥只在发起支付时返回一次
        metadata.pop("client_secret", None)
        return cls(
            id=payment.id,
            transaction_id=payment.transaction_id,
            payment_method=payment.payment_method,
            payment_provider=payment.payment_provider,
            external_payment_id=payment.external_payment_id,
            deposit_amount=payment.deposit_amount,
            processing_fee=payment.processing_fee,
            total_amount=payment.total_amount,
            status=payment.status,
            metadata=metadata,
            created_at=payment.created_at,
            completed_at=payment.completed_at,
        )


class PaymentInitiation(DTOBase):
    """发起支付的结果"""
    payment_id: int
    transaction_id: int
    payment_method: PaymentMethod
    status: PaymentStatus
    deposit_amount: int
    processing_fee: int
    total_amount: int
    client_secret: Optional[str] = None
    publishable_key: Optional[str] = None


class ConfirmPaymentRequest(DTOBase):
    confirmed: bool = True
    notes: Optional[str] = Field(None, max_length=2000, description="确认码或备注，原样保存")


class BulkConfirmRequest(DTOBase):
    payment_ids: list[int] = Field(..., min_length=1)
    confirmed: bool = True
    notes: Optional[str] = None


class RefundDepositRequest(DTOBase):
    amount: Optional[float] = Field(None, ge=0, description="退款金额（美元），缺省为全额押金")

    def amount_minor(self) -> Optional[int]:
        return to_minor_units(self.amount) if self.amount is not None else None


class BulkItemResult(DTOBase):
    id: int
    success: bool
    error: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class BulkResult(DTOBase):
    """批量操作报告（尽力而为，非原子）"""
    total: int
    succeeded: int
    failed: int
    results: list[BulkItemResult] = Field(default_factory=list)

    @classmethod
    def from_items(cls, items: list[BulkItemResult]) -> "BulkResult":
        ok = sum(1 for i in items if i.success)
        return cls(total=len(items), succeeded=ok, failed=len(items) - ok, results=items)


class CreatePayLaterRequest(DTOBase):
    location_id: int = Field(..., gt=0)
    borrower_name: str = Field(..., min_length=1, max_length=200)
    borrower_email: Optional[EmailStr] = None
    borrower_phone: Optional[str] = Field(None, max_length=50)
    amount_planned: Optional[float] = Field(None, gt=0, description="计划扣款金额（美元），缺省使用地点押金")
    currency: str = Field(default="usd", min_length=3, max_length=3)

    def amount_minor(self) -> Optional[int]:
        return to_minor_units(self.amount_planned) if self.amount_planned is not None else None


class SetupIntentResult(DTOBase):
    transaction_id: int
    client_secret: Optional[str] = None
    public_status_url: str
    raw_token: str
    publishable_key: Optional[str] = None


class ChargeResult(DTOBase):
    """延迟扣款结果：支付网关的拒付与 SCA 以结果值返回，而非异常"""
    transaction_id: int
    status: PayLaterStatus
    success: bool
    requires_action: bool = False
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class DeclineRequest(DTOBase):
    reason: Optional[str] = Field(None, max_length=1000)


class ReturnData(DTOBase):
    """归还请求"""
    condition: Optional[ItemCondition] = None
    refund_amount: Optional[float] = Field(None, description="显式退款金额（美元），覆盖按状况计算的金额")
    notes: Optional[str] = Field(None, max_length=1000)

    def refund_amount_minor(self) -> Optional[int]:
        return to_minor_units(self.refund_amount) if self.refund_amount is not None else None


class BulkReturnItem(ReturnData):
    transaction_id: int


class BulkReturnRequest(DTOBase):
    items: list[BulkReturnItem] = Field(..., min_length=1)


class ReturnResult(DTOBase):
    transaction_id: int
    refund_amount: int
    refund_payment_id: int
    refund_external_id: Optional[str] = None
    attempts: int = 1


class PublicStatusView(DTOBase):
    """借用人公开状态页"""
    transaction_id: int
    status: Optional[PayLaterStatus] = None
    status_text: str
    amount_planned: Optional[float] = None
    currency: str = "usd"
    client_secret: Optional[str] = None
    is_returned: bool = False


class RefundReportItem(DTOBase):
    transaction_id: int
    location_id: int
    borrower_name: str
    deposit_amount: int
    refund_amount: int
    returned_at: Optional[datetime] = None


class RefundReport(DTOBase):
    location_id: Optional[int] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    total_transactions: int
    total_deposits: int
    total_refunded: int
    total_retained: int
    items: list[RefundReportItem] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
