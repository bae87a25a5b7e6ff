"""
押金借用数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    Index, ForeignKey, text
)
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserModel(Base):
    """
    用户数据库模型

    引擎只读取角色与所属地点，账户管理不在本服务内
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(50), unique=True, index=True, nullable=False, comment="用户名")
    email = Column(String(100), unique=True, nullable=True, comment="邮箱")
    role = Column(String(20), nullable=False, default="borrower", comment="角色: borrower/operator/admin")
    is_admin = Column(Boolean, default=False, nullable=False, comment="是否管理员")
    location_id = Column(
        Integer,
        ForeignKey("locations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="运营者所属地点",
    )
    is_active = Column(Boolean, default=True, nullable=False, comment="是否激活")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")

    def __repr__(self):
        return f"<UserModel(id={self.id}, username='{self.username}', role='{self.role}')>"


class LocationModel(Base):
    """借用地点"""
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False, comment="地点名称")
    location_code = Column(String(50), unique=True, nullable=True, comment="地点编码")
    deposit_amount = Column(Integer, nullable=True, comment="押金（分）")
    processing_fee_bps = Column(Integer, nullable=True, comment="手续费（基点）")
    inventory_count = Column(Integer, nullable=False, default=0, comment="库存")
    is_active = Column(Boolean, default=True, nullable=False, comment="是否启用")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self):
        return f"<LocationModel(id={self.id}, name='{self.name}')>"


class TransactionModel(Base):
    """
    借用交易

    交易记录不做物理删除
    """
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(
        Integer,
        ForeignKey("locations.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="地点ID",
    )
    borrower_name = Column(String(200), nullable=False, comment="借用人")
    borrower_email = Column(String(200), nullable=True)
    borrower_phone = Column(String(50), nullable=True)
    deposit_amount = Column(Integer, nullable=False, comment="押金（分）")
    deposit_payment_method = Column(String(20), nullable=False, default="pending", comment="押金支付方式")
    is_returned = Column(Boolean, nullable=False, default=False, index=True, comment="是否已归还")
    borrow_date = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expected_return_date = Column(DateTime(timezone=True), nullable=True)
    actual_return_date = Column(DateTime(timezone=True), nullable=True, index=True)
    refund_amount = Column(Integer, nullable=True, comment="退款金额（分）")
    notes = Column(Text, nullable=True)

    # 延迟扣款
    pay_later_status = Column(String(40), nullable=True, index=True, comment="延迟扣款状态")
    magic_link_token_hash = Column(String(64), nullable=True, comment="魔法链接令牌 SHA-256")
    magic_link_expires_at = Column(DateTime(timezone=True), nullable=True)
    amount_planned_cents = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False, default="usd")
    stripe_customer_id = Column(String(100), nullable=True)
    stripe_setup_intent_id = Column(String(100), nullable=True, unique=True)
    stripe_payment_method_id = Column(String(100), nullable=True)
    stripe_payment_intent_id = Column(String(100), nullable=True, unique=True)
    charge_error_code = Column(String(100), nullable=True)
    charge_error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_transactions_location_returned", "location_id", "is_returned"),
    )

    def __repr__(self):
        return f"<TransactionModel(id={self.id}, location_id={self.location_id}, is_returned={self.is_returned})>"


# 每笔交易至多一条 pending/confirming 支付
ACTIVE_PAYMENT_PREDICATE = "status IN ('pending', 'confirming')"


class PaymentModel(Base):
    """
    支付数据库模型

    原始支付与退款各占一行
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    transaction_id = Column(
        Integer,
        ForeignKey("transactions.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="交易ID",
    )
    payment_method = Column(String(20), nullable=False, comment="支付方式: cash/card/card_deferred")
    payment_provider = Column(String(50), nullable=True, comment="支付提供商")
    external_payment_id = Column(String(200), nullable=True, unique=True, comment="外部支付ID")
    deposit_amount = Column(Integer, nullable=False, comment="押金（分）")
    processing_fee = Column(Integer, nullable=False, default=0, comment="手续费（分）")
    total_amount = Column(Integer, nullable=False, comment="总额（分）")
    status = Column(String(20), nullable=False, default="pending", index=True, comment="支付状态")

    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index(
            "uq_payments_active_transaction",
            "transaction_id",
            unique=True,
            postgresql_where=text(ACTIVE_PAYMENT_PREDICATE),
            sqlite_where=text(ACTIVE_PAYMENT_PREDICATE),
        ),
        Index("ix_payments_transaction_status", "transaction_id", "status"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, transaction_id={self.transaction_id}, "
            f"method='{self.payment_method}', status='{self.status}')>"
        )


class AuditLogModel(Base):
    """审计日志（只追加）"""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_type = Column(String(20), nullable=False, comment="操作者类型")
    actor_user_id = Column(Integer, nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(Integer, nullable=True)
    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id"),
    )
