"""
押金借用领域实体 - 地点、交易、支付、审计日志

金额一律使用最小货币单位（分）的整数表示，浮点只出现在 DTO 边界。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from domain.common.exceptions import DomainValidationException, InvalidStateTransitionException

# 地点未配置押金/费率时的兜底值
DEFAULT_DEPOSIT_CENTS = 2000
DEFAULT_PROCESSING_FEE_BPS = 300


class UserRole(str, Enum):
    BORROWER = "borrower"
    OPERATOR = "operator"
    ADMIN = "admin"


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"                # 待确认（卡支付等待客户端确认）
    CONFIRMING = "confirming"          # 待人工确认（现金）
    COMPLETED = "completed"            # 已到账
    FAILED = "failed"                  # 失败
    REFUND_PENDING = "refund_pending"  # 退款处理中
    REFUND_FAILED = "refund_failed"    # 退款失败
    REFUNDED = "refunded"              # 已退款


ACTIVE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.CONFIRMING})


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    CARD_DEFERRED = "card_deferred"


class PayLaterStatus(str, Enum):
    """延迟扣款状态枚举"""
    CARD_SETUP_PENDING = "CARD_SETUP_PENDING"
    CARD_SETUP_COMPLETE = "CARD_SETUP_COMPLETE"
    APPROVED = "APPROVED"
    CHARGE_ATTEMPTED = "CHARGE_ATTEMPTED"
    CHARGED = "CHARGED"
    CHARGE_REQUIRES_ACTION = "CHARGE_REQUIRES_ACTION"
    CHARGE_FAILED = "CHARGE_FAILED"
    DECLINED = "DECLINED"
    EXPIRED = "EXPIRED"


class ItemCondition(str, Enum):
    GOOD = "good"
    DAMAGED = "damaged"
    MISSING = "missing"


class ActorType(str, Enum):
    SYSTEM = "system"
    OPERATOR = "operator"
    ADMIN = "admin"
    WEBHOOK = "webhook"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Location:
    """借用地点（gemach）"""

    id: Optional[int]
    name: str
    location_code: Optional[str] = None
    deposit_amount: Optional[int] = None
    processing_fee_bps: Optional[int] = None
    inventory_count: int = 0
    is_active: bool = True

    def effective_deposit(self, fallback: int = DEFAULT_DEPOSIT_CENTS) -> int:
        return self.deposit_amount if self.deposit_amount is not None else fallback

    def effective_fee_bps(self, fallback: int = DEFAULT_PROCESSING_FEE_BPS) -> int:
        return self.processing_fee_bps if self.processing_fee_bps is not None else fallback


@dataclass
class LendingUser:
    """引擎只读的用户视图（角色 + 所属地点）"""

    id: int
    username: str
    role: UserRole = UserRole.BORROWER
    is_admin: bool = False
    location_id: Optional[int] = None


@dataclass
class Transaction:
    """
    借用交易聚合根

    业务规则：
    1. 押金金额必须为非负整数（分）
    2. is_returned 一旦为 True 不可再回到 False
    3. 交易永不物理删除，作为审计载体
    """

    id: Optional[int]
    location_id: int
    borrower_name: str
    deposit_amount: int
    borrower_email: Optional[str] = None
    borrower_phone: Optional[str] = None
    deposit_payment_method: str = "pending"
    is_returned: bool = False
    borrow_date: Optional[datetime] = None
    expected_return_date: Optional[datetime] = None
    actual_return_date: Optional[datetime] = None
    refund_amount: Optional[int] = None
    notes: Optional[str] = None

    # 延迟扣款
    pay_later_status: Optional[PayLaterStatus] = None
    magic_link_token_hash: Optional[str] = None
    magic_link_expires_at: Optional[datetime] = None
    amount_planned_cents: Optional[int] = None
    currency: str = "usd"
    stripe_customer_id: Optional[str] = None
    stripe_setup_intent_id: Optional[str] = None
    stripe_payment_method_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    charge_error_code: Optional[str] = None
    charge_error_message: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.deposit_amount, int) or isinstance(self.deposit_amount, bool):
            raise DomainValidationException(
                f"押金金额必须为整数（分）: {self.deposit_amount!r}",
                field="deposit_amount",
            )
        if self.deposit_amount < 0:
            raise DomainValidationException(
                f"押金金额不能为负: {self.deposit_amount}",
                field="deposit_amount",
            )
        self.borrow_date = _ensure_utc(self.borrow_date)
        self.expected_return_date = _ensure_utc(self.expected_return_date)
        self.actual_return_date = _ensure_utc(self.actual_return_date)
        self.magic_link_expires_at = _ensure_utc(self.magic_link_expires_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def mark_returned(self, refund_amount: int, notes: Optional[str] = None) -> None:
        """标记归还（不可逆）"""
        if self.is_returned:
            raise InvalidStateTransitionException(
                "Transaction has already been returned",
                entity="transaction",
                current="returned",
                target="returned",
            )
        self.is_returned = True
        self.actual_return_date = utcnow()
        self.refund_amount = refund_amount
        if notes:
            self.notes = notes
        self.updated_at = self.actual_return_date

    def set_pay_later_status(self, status: PayLaterStatus) -> None:
        self.pay_later_status = status
        self.updated_at = utcnow()

    def snapshot(self) -> dict[str, Any]:
        """审计用的状态快照（不含敏感字段）"""
        return {
            "id": self.id,
            "is_returned": self.is_returned,
            "deposit_payment_method": self.deposit_payment_method,
            "pay_later_status": self.pay_later_status.value if self.pay_later_status else None,
            "stripe_payment_intent_id": self.stripe_payment_intent_id,
            "refund_amount": self.refund_amount,
            "charge_error_code": self.charge_error_code,
        }


@dataclass
class Payment:
    """
    支付记录 - 每次资金流动尝试一行

    原始支付与退款分别成行，退款行的 external_payment_id 以 "refund_" 前缀关联原始支付。
    """

    id: Optional[int]
    transaction_id: int
    payment_method: PaymentMethod
    deposit_amount: int
    processing_fee: int
    total_amount: int
    status: PaymentStatus
    payment_provider: Optional[str] = None
    external_payment_id: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self):
        for name in ("deposit_amount", "processing_fee", "total_amount"):
            value = getattr(self, name)
            if value < 0:
                raise DomainValidationException(f"{name} 不能为负: {value}", field=name)
        self.created_at = _ensure_utc(self.created_at)
        self.completed_at = _ensure_utc(self.completed_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PAYMENT_STATUSES

    def append_metadata(self, values: dict[str, Any]) -> None:
        """追加元数据：只写入新键，已有键不会被覆盖"""
        if self.metadata is None:
            self.metadata = {}
        for key, value in values.items():
            if key not in self.metadata:
                self.metadata[key] = value


@dataclass
class AuditLogEntry:
    """审计日志（只追加）"""

    actor_type: ActorType
    action: str
    entity_type: str
    entity_id: Optional[int]
    actor_user_id: Optional[int] = None
    before: Optional[dict] = None
    after: Optional[dict] = None
    metadata: Optional[dict] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at) or utcnow()
