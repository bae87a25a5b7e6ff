"""
借用仓储实现 - 使用SQLAlchemy实现数据访问
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from core.logging_config import get_logger
from domain.common.exceptions import (
    ConcurrentPaymentException,
    LocationNotFoundException,
    PaymentNotFoundException,
    TransactionNotFoundException,
)
from domain.lending.entity import (
    ActorType,
    AuditLogEntry,
    LendingUser,
    Location,
    PayLaterStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    UserRole,
)
from domain.lending.repository import (
    AuditLogRepository,
    LendingUserRepository,
    LocationRepository,
    PaymentRepository,
    TransactionRepository,
)
from infrastructure.models.lending import (
    AuditLogModel,
    LocationModel,
    PaymentModel,
    TransactionModel,
    UserModel,
)


logger = get_logger(__name__)


class SQLAlchemyLocationRepository(LocationRepository):
    """地点仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: LocationModel) -> Location:
        return Location(
            id=model.id,
            name=model.name,
            location_code=model.location_code,
            deposit_amount=model.deposit_amount,
            processing_fee_bps=model.processing_fee_bps,
            inventory_count=model.inventory_count or 0,
            is_active=model.is_active,
        )

    async def get_by_id(self, location_id: int) -> Optional[Location]:
        db_location = await self.session.get(LocationModel, location_id)
        return self._to_entity(db_location) if db_location else None

    async def increment_inventory(self, location_id: int, delta: int = 1) -> int:
        """在数据库内完成加减，并发归还不会互相覆盖"""
        result = await self.session.execute(
            update(LocationModel)
            .where(LocationModel.id == location_id)
            .values(inventory_count=func.coalesce(LocationModel.inventory_count, 0) + delta)
            .returning(LocationModel.inventory_count)
            .execution_options(synchronize_session="fetch")
        )
        count = result.scalar_one_or_none()
        if count is None:
            raise LocationNotFoundException(location_id)
        return count


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易仓储的SQLAlchemy实现"""

    _FIELDS = (
        "location_id",
        "borrower_name",
        "borrower_email",
        "borrower_phone",
        "deposit_amount",
        "deposit_payment_method",
        "is_returned",
        "borrow_date",
        "expected_return_date",
        "actual_return_date",
        "refund_amount",
        "notes",
        "magic_link_token_hash",
        "magic_link_expires_at",
        "amount_planned_cents",
        "currency",
        "stripe_customer_id",
        "stripe_setup_intent_id",
        "stripe_payment_method_id",
        "stripe_payment_intent_id",
        "charge_error_code",
        "charge_error_message",
    )

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: TransactionModel) -> Transaction:
        values = {name: getattr(model, name) for name in self._FIELDS}
        return Transaction(
            id=model.id,
            pay_later_status=PayLaterStatus(model.pay_later_status) if model.pay_later_status else None,
            created_at=model.created_at,
            updated_at=model.updated_at,
            **values,
        )

    def _apply(self, entity: Transaction, model: TransactionModel) -> None:
        for name in self._FIELDS:
            value = getattr(entity, name)
            if value is None and name == "borrow_date":
                continue
            setattr(model, name, value)
        model.pay_later_status = entity.pay_later_status.value if entity.pay_later_status else None

    async def create(self, transaction: Transaction) -> Transaction:
        db_tx = TransactionModel()
        self._apply(transaction, db_tx)
        self.session.add(db_tx)
        await self.session.flush()
        await self.session.refresh(db_tx)
        logger.info("transaction_created", transaction_id=db_tx.id, location_id=db_tx.location_id)
        return self._to_entity(db_tx)

    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        db_tx = await self.session.get(TransactionModel, transaction_id)
        return self._to_entity(db_tx) if db_tx else None

    async def _get_one(self, *criteria) -> Optional[Transaction]:
        result = await self.session.execute(select(TransactionModel).where(*criteria))
        db_tx = result.scalar_one_or_none()
        return self._to_entity(db_tx) if db_tx else None

    async def get_by_setup_intent_id(self, setup_intent_id: str) -> Optional[Transaction]:
        return await self._get_one(TransactionModel.stripe_setup_intent_id == setup_intent_id)

    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Transaction]:
        return await self._get_one(TransactionModel.stripe_payment_intent_id == payment_intent_id)

    async def list_by_location(self, location_id: int) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.location_id == location_id)
            .order_by(TransactionModel.id.desc())
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def list_returned(
        self,
        location_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Transaction]:
        query = select(TransactionModel).where(TransactionModel.is_returned.is_(True))
        if location_id is not None:
            query = query.where(TransactionModel.location_id == location_id)
        if start is not None:
            query = query.where(TransactionModel.actual_return_date >= start)
        if end is not None:
            query = query.where(TransactionModel.actual_return_date <= end)
        result = await self.session.execute(query.order_by(TransactionModel.actual_return_date))
        return [self._to_entity(m) for m in result.scalars().all()]

    async def update(self, transaction: Transaction) -> Transaction:
        db_tx = await self.session.get(TransactionModel, transaction.id)
        if not db_tx:
            raise TransactionNotFoundException(transaction.id)
        self._apply(transaction, db_tx)
        await self.session.flush()
        await self.session.refresh(db_tx)
        return self._to_entity(db_tx)


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            transaction_id=model.transaction_id,
            payment_method=PaymentMethod(model.payment_method),
            payment_provider=model.payment_provider,
            external_payment_id=model.external_payment_id,
            deposit_amount=model.deposit_amount,
            processing_fee=model.processing_fee,
            total_amount=model.total_amount,
            status=PaymentStatus(model.status),
            # 复制一份，避免实体修改污染会话中的已加载状态
            metadata=dict(model.extra_metadata or {}),
            created_at=model.created_at,
            completed_at=model.completed_at,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = PaymentModel(
            transaction_id=payment.transaction_id,
            payment_method=payment.payment_method.value,
            payment_provider=payment.payment_provider,
            external_payment_id=payment.external_payment_id,
            deposit_amount=payment.deposit_amount,
            processing_fee=payment.processing_fee,
            total_amount=payment.total_amount,
            status=payment.status.value,
            extra_metadata=dict(payment.metadata or {}),
            completed_at=payment.completed_at,
        )
        try:
            self.session.add(db_payment)
            await self.session.flush()
        except IntegrityError as e:
            await self.session.rollback()
            msg = str(e).lower()
            # PostgreSQL 报告索引名，SQLite 只报告列名
            if "uq_payments_active_transaction" in msg or "unique constraint failed: payments.transaction_id" in msg:
                logger.warning("payment_create_conflict", transaction_id=payment.transaction_id)
                raise ConcurrentPaymentException(payment.transaction_id)
            raise
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            transaction_id=db_payment.transaction_id,
            method=db_payment.payment_method,
            status=db_payment.status,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        db_payment = await self.session.get(PaymentModel, payment_id)
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.external_payment_id == external_payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def list_by_transaction(self, transaction_id: int) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.transaction_id == transaction_id)
            .order_by(PaymentModel.id)
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def list_by_status(self, statuses: List[PaymentStatus]) -> List[Payment]:
        result = await self.session.execute(
            select(PaymentModel)
            .where(PaymentModel.status.in_([s.value for s in statuses]))
            .order_by(PaymentModel.created_at.desc())
        )
        return [self._to_entity(p) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        db_payment = await self.session.get(PaymentModel, payment.id)
        if not db_payment:
            raise PaymentNotFoundException(payment.id)

        db_payment.status = payment.status.value
        db_payment.external_payment_id = payment.external_payment_id
        db_payment.completed_at = payment.completed_at
        db_payment.extra_metadata = dict(payment.metadata or {})

        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.info("payment_updated", payment_id=db_payment.id, status=db_payment.status)
        return self._to_entity(db_payment)


class SQLAlchemyAuditLogRepository(AuditLogRepository):
    """审计日志仓储（只追加）"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, entry: AuditLogEntry) -> AuditLogEntry:
        db_entry = AuditLogModel(
            actor_type=entry.actor_type.value,
            actor_user_id=entry.actor_user_id,
            action=entry.action,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            before=entry.before,
            after=entry.after,
            extra_metadata=entry.metadata,
            created_at=entry.created_at,
        )
        self.session.add(db_entry)
        await self.session.flush()
        return AuditLogEntry(
            id=db_entry.id,
            actor_type=ActorType(db_entry.actor_type),
            actor_user_id=db_entry.actor_user_id,
            action=db_entry.action,
            entity_type=db_entry.entity_type,
            entity_id=db_entry.entity_id,
            before=db_entry.before,
            after=db_entry.after,
            metadata=db_entry.extra_metadata,
            created_at=db_entry.created_at,
        )


class SQLAlchemyLendingUserRepository(LendingUserRepository):
    """用户只读仓储"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: int) -> Optional[LendingUser]:
        db_user = await self.session.get(UserModel, user_id)
        if not db_user or not db_user.is_active:
            return None
        return LendingUser(
            id=db_user.id,
            username=db_user.username,
            role=UserRole(db_user.role),
            is_admin=db_user.is_admin,
            location_id=db_user.location_id,
        )
