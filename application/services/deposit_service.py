"""
Deposit service for the immediate rails (cash and instant card charge).

Depends only on the unit of work, the gateway port and the transaction
locker; infrastructure adapters are injected from the composition root.
Every validate-then-mutate sequence runs under the per-transaction lock.
"""
from __future__ import annotations

import secrets
from typing import Callable, List, Optional

from application.dtos.lending import BulkItemResult, BulkResult, DepositRequest, PaymentInitiation
from application.dtos.payments import CreatePaymentIntent, RefundRequest
from application.ports.locks import TransactionLocker
from application.ports.payment_gateway import PaymentGateway
from application.services.audit import actor_for_role, record_audit
from core.logging_config import get_logger
from core.settings import LendingSettings, lending_settings
from domain.common.exceptions import (
    AuthorizationException,
    BusinessException,
    DomainValidationException,
    InvalidStateTransitionException,
    LocationNotFoundException,
    PaymentInProgressException,
    PaymentNotFoundException,
    RefundFailedException,
    RefundNotAllowedException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.authorization import (
    AuthorizationContext,
    authorization_error_message,
    can_perform_bulk_operations,
    is_authorized_for_location,
    require_authorization,
)
from domain.lending.entity import (
    ActorType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    UserRole,
    utcnow,
)
from domain.lending.metadata import (
    CardIntentMetadata,
    CashPaymentMetadata,
    ConfirmationMetadata,
    RefundMetadata,
    WebhookMetadata,
)
from domain.lending.money import processing_fee
from domain.lending.state import can_process_refund, is_valid_payment_state_transition, is_valid_refund_amount


logger = get_logger(__name__)

CARD_METHODS = frozenset({PaymentMethod.CARD, PaymentMethod.CARD_DEFERRED})


def refund_idempotency_key(transaction_id: int, payment_id: int, amount: int) -> str:
    # the processor rejects a reused key with different parameters
    return f"{transaction_id}_refund_{payment_id}_{amount}"


class DepositService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        gateway: PaymentGateway,
        locker: TransactionLocker,
        settings: Optional[LendingSettings] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._locker = locker
        self._settings = settings or lending_settings

    # ---- helpers ----
    async def _operator_context(
        self, uow: AbstractUnitOfWork, user_id: int, role: UserRole, target_location_id: Optional[int]
    ) -> AuthorizationContext:
        user_location_id = None
        is_admin = False
        if role != UserRole.ADMIN:
            user = await uow.users.get_by_id(user_id)
            if user is not None:
                user_location_id = user.location_id
                is_admin = user.is_admin
        return AuthorizationContext(
            role=role,
            user_id=user_id,
            user_location_id=user_location_id,
            target_location_id=target_location_id,
            is_admin=is_admin,
        )

    async def _load_for_payment(self, uow: AbstractUnitOfWork, transaction_id: int, location_id: int) -> Transaction:
        tx = await uow.transactions.get_by_id(transaction_id)
        if tx is None:
            raise TransactionNotFoundException(transaction_id)
        if tx.location_id != location_id:
            raise DomainValidationException(
                "Transaction does not belong to this location", field="location_id"
            )
        if tx.is_returned:
            raise InvalidStateTransitionException(
                "Cannot take a payment for a returned transaction",
                entity="transaction",
                current="returned",
                target="payment",
            )
        active = [p for p in await uow.payments.list_by_transaction(transaction_id) if p.is_active]
        if active:
            raise PaymentInProgressException(transaction_id, active[0].id)
        return tx

    # ---- use cases ----
    async def create_deposit_transaction(self, request: DepositRequest) -> Transaction:
        async with self._uow_factory() as uow:
            location = await uow.locations.get_by_id(request.location_id)
            if location is None:
                raise LocationNotFoundException(request.location_id)
            deposit = request.deposit_minor()
            if deposit is None:
                deposit = location.effective_deposit(self._settings.default_deposit_cents)
            tx = Transaction(
                id=None,
                location_id=location.id,
                borrower_name=request.borrower_name,
                borrower_email=request.borrower_email,
                borrower_phone=request.borrower_phone,
                deposit_amount=deposit,
                deposit_payment_method="pending",
                borrow_date=utcnow(),
                expected_return_date=request.expected_return_date,
                notes=request.notes,
                currency=self._settings.currency,
            )
            tx = await uow.transactions.create(tx)
            await record_audit(
                uow,
                action="transaction_created",
                entity_type="transaction",
                entity_id=tx.id,
                after=tx.snapshot(),
            )
        logger.info("deposit_transaction_created", transaction_id=tx.id, location_id=tx.location_id, deposit=deposit)
        return tx

    async def initiate_card_payment(self, transaction_id: int, location_id: int) -> PaymentInitiation:
        async with self._locker.hold(transaction_id):
            async with self._uow_factory(readonly=True) as uow:
                tx = await self._load_for_payment(uow, transaction_id, location_id)
                location = await uow.locations.get_by_id(location_id)
                if location is None:
                    raise LocationNotFoundException(location_id)
                attempt_no = len(await uow.payments.list_by_transaction(transaction_id)) + 1

            fee = processing_fee(tx.deposit_amount, location.effective_fee_bps(self._settings.default_fee_bps))
            total = tx.deposit_amount + fee
            idempotency_key = f"{tx.id}_intent_{attempt_no}"
            intent = await self._gateway.create_payment_intent(
                CreatePaymentIntent(
                    amount=total,
                    currency=tx.currency or self._settings.currency,
                    idempotency_key=idempotency_key,
                    metadata={
                        "transaction_id": str(tx.id),
                        "location_id": str(location_id),
                        "deposit_amount": str(tx.deposit_amount),
                        "processing_fee": str(fee),
                    },
                )
            )

            async with self._uow_factory() as uow:
                payment = Payment(
                    id=None,
                    transaction_id=tx.id,
                    payment_method=PaymentMethod.CARD,
                    payment_provider=self._gateway.provider,
                    external_payment_id=intent.intent_id,
                    deposit_amount=tx.deposit_amount,
                    processing_fee=fee,
                    total_amount=total,
                    status=PaymentStatus.PENDING,
                    metadata=CardIntentMetadata(
                        client_secret=intent.client_secret,
                        idempotency_key=idempotency_key,
                        location_id=location_id,
                    ).to_dict(),
                )
                payment = await uow.payments.create(payment)
                await record_audit(
                    uow,
                    action="card_payment_initiated",
                    entity_type="payment",
                    entity_id=payment.id,
                    after={"status": payment.status.value, "total_amount": total},
                    metadata={"transaction_id": tx.id, "payment_intent_id": intent.intent_id},
                )

        logger.info(
            "card_payment_initiated",
            transaction_id=tx.id,
            payment_id=payment.id,
            deposit=tx.deposit_amount,
            fee=fee,
            total=total,
        )
        return PaymentInitiation(
            payment_id=payment.id,
            transaction_id=tx.id,
            payment_method=payment.payment_method,
            status=payment.status,
            deposit_amount=payment.deposit_amount,
            processing_fee=fee,
            total_amount=total,
            client_secret=intent.client_secret,
            publishable_key=self._gateway.publishable_key,
        )

    async def initiate_cash_payment(self, transaction_id: int, location_id: int) -> PaymentInitiation:
        async with self._locker.hold(transaction_id):
            async with self._uow_factory() as uow:
                tx = await self._load_for_payment(uow, transaction_id, location_id)
                payment = Payment(
                    id=None,
                    transaction_id=tx.id,
                    payment_method=PaymentMethod.CASH,
                    payment_provider="cash",
                    external_payment_id=f"cash_{secrets.token_hex(8)}",
                    deposit_amount=tx.deposit_amount,
                    processing_fee=0,
                    total_amount=tx.deposit_amount,
                    status=PaymentStatus.CONFIRMING,
                    metadata=CashPaymentMetadata(location_id=location_id, initiated_at=utcnow()).to_dict(),
                )
                payment = await uow.payments.create(payment)
                await record_audit(
                    uow,
                    action="cash_payment_initiated",
                    entity_type="payment",
                    entity_id=payment.id,
                    after={"status": payment.status.value, "total_amount": payment.total_amount},
                    metadata={"transaction_id": tx.id},
                )
        logger.info("cash_payment_initiated", transaction_id=tx.id, payment_id=payment.id)
        return PaymentInitiation(
            payment_id=payment.id,
            transaction_id=tx.id,
            payment_method=payment.payment_method,
            status=payment.status,
            deposit_amount=payment.deposit_amount,
            processing_fee=0,
            total_amount=payment.total_amount,
        )

    async def confirm_payment(
        self,
        payment_id: int,
        user_id: int,
        role: UserRole,
        confirmed: bool,
        notes: Optional[str] = None,
    ) -> Payment:
        if role == UserRole.BORROWER:
            raise AuthorizationException(authorization_error_message("confirm_payment", role))

        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payments.get_by_id(payment_id)
            if payment is None:
                raise PaymentNotFoundException(payment_id)
            transaction_id = payment.transaction_id

        async with self._locker.hold(transaction_id):
            async with self._uow_factory() as uow:
                payment = await uow.payments.get_by_id(payment_id)
                if payment is None:
                    raise PaymentNotFoundException(payment_id)
                target = PaymentStatus.COMPLETED if confirmed else PaymentStatus.FAILED
                if not payment.is_active:
                    raise InvalidStateTransitionException(
                        "Payment cannot be confirmed in current status",
                        entity="payment",
                        current=payment.status.value,
                        target=target.value,
                    )
                check = is_valid_payment_state_transition(payment.status, target)
                if not check.valid:
                    raise InvalidStateTransitionException(
                        check.reason or "invalid transition",
                        entity="payment",
                        current=payment.status.value,
                        target=target.value,
                    )
                tx = await uow.transactions.get_by_id(payment.transaction_id)
                if tx is None:
                    raise TransactionNotFoundException(payment.transaction_id)
                ctx = await self._operator_context(uow, user_id, role, tx.location_id)
                require_authorization(
                    is_authorized_for_location(ctx),
                    "Operator not authorized for this location",
                )

                before = payment.status.value
                payment.status = target
                if confirmed:
                    payment.completed_at = utcnow()
                payment.append_metadata(
                    ConfirmationMetadata(
                        confirmed=confirmed,
                        confirmed_by=user_id,
                        confirmed_by_role=role.value,
                        confirmed_at=utcnow(),
                        confirmation_notes=notes,
                    ).to_dict()
                )
                payment = await uow.payments.update(payment)
                if confirmed:
                    tx.deposit_payment_method = payment.payment_method.value
                    await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="payment_confirmed" if confirmed else "payment_rejected",
                    entity_type="payment",
                    entity_id=payment.id,
                    actor_type=actor_for_role(role),
                    actor_user_id=user_id,
                    before={"status": before},
                    after={"status": payment.status.value},
                    metadata={"notes": notes} if notes else None,
                )
        logger.info(
            "payment_confirmed" if confirmed else "payment_rejected",
            payment_id=payment_id,
            transaction_id=transaction_id,
            user_id=user_id,
            role=role.value,
        )
        return payment

    async def handle_gateway_webhook(
        self, external_id: str, status: str, metadata: Optional[dict] = None
    ) -> Optional[Payment]:
        """Apply an asynchronous gateway outcome (``succeeded``/``failed``) to a card payment."""
        if status == "succeeded":
            target = PaymentStatus.COMPLETED
        elif status == "failed":
            target = PaymentStatus.FAILED
        else:
            logger.info("payment_webhook_status_ignored", external_id=external_id, status=status)
            return None

        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payments.get_by_external_id(external_id)
        if payment is None:
            logger.warning("payment_webhook_payment_not_found", external_id=external_id)
            return None

        async with self._locker.hold(payment.transaction_id):
            async with self._uow_factory() as uow:
                payment = await uow.payments.get_by_external_id(external_id)
                if payment is None:
                    return None
                if payment.status == target:
                    logger.info("payment_webhook_duplicate", payment_id=payment.id, status=target.value)
                    return payment
                check = is_valid_payment_state_transition(payment.status, target)
                if not check.valid:
                    logger.warning(
                        "payment_webhook_transition_ignored",
                        payment_id=payment.id,
                        current=payment.status.value,
                        target=target.value,
                        reason=check.reason,
                    )
                    return payment
                payment.status = target
                if target == PaymentStatus.COMPLETED:
                    payment.completed_at = utcnow()
                payment.append_metadata(
                    WebhookMetadata(
                        webhook_processed_at=utcnow(),
                        webhook_status=status,
                        extra={"gateway_metadata": dict(metadata or {})},
                    ).to_dict()
                )
                payment = await uow.payments.update(payment)
                if target == PaymentStatus.COMPLETED:
                    tx = await uow.transactions.get_by_id(payment.transaction_id)
                    if tx is not None:
                        tx.deposit_payment_method = payment.payment_method.value
                        await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action=f"payment_webhook_{status}",
                    entity_type="payment",
                    entity_id=payment.id,
                    actor_type=ActorType.WEBHOOK,
                    after={"status": payment.status.value},
                    metadata={"external_id": external_id},
                )
        logger.info("payment_webhook_processed", payment_id=payment.id, status=payment.status.value)
        return payment

    async def handle_charge_refunded(self, external_id: str, amount_refunded: Optional[int] = None) -> Optional[Payment]:
        """Mirror a refund issued from the gateway dashboard onto the completed payment."""
        async with self._uow_factory(readonly=True) as uow:
            payment = await uow.payments.get_by_external_id(external_id)
        if payment is None:
            logger.warning("charge_refunded_payment_not_found", external_id=external_id)
            return None

        async with self._locker.hold(payment.transaction_id):
            async with self._uow_factory() as uow:
                payment = await uow.payments.get_by_external_id(external_id)
                if payment is None or payment.status == PaymentStatus.REFUNDED:
                    return payment
                check = is_valid_payment_state_transition(payment.status, PaymentStatus.REFUNDED)
                if not check.valid:
                    logger.warning("charge_refunded_transition_ignored", payment_id=payment.id, reason=check.reason)
                    return payment
                payment.status = PaymentStatus.REFUNDED
                payment.append_metadata(
                    RefundMetadata(refunded_at=utcnow(), refund_amount=amount_refunded).to_dict()
                )
                payment = await uow.payments.update(payment)
                await record_audit(
                    uow,
                    action="payment_refunded_externally",
                    entity_type="payment",
                    entity_id=payment.id,
                    actor_type=ActorType.WEBHOOK,
                    after={"status": payment.status.value},
                    metadata={"amount_refunded": amount_refunded},
                )
        logger.info("charge_refunded_processed", payment_id=payment.id, amount=amount_refunded)
        return payment

    async def refund_deposit(
        self,
        transaction_id: int,
        user_id: int,
        role: UserRole,
        amount: Optional[int] = None,
    ) -> Payment:
        """Refund a completed deposit. ``amount`` is in cents and defaults to the full deposit.

        The gateway is called before any local write; when it fails nothing
        is recorded locally and ``RefundFailedException`` is raised.
        """
        if role == UserRole.BORROWER:
            raise AuthorizationException(authorization_error_message("refund", role))

        async with self._locker.hold(transaction_id):
            async with self._uow_factory(readonly=True) as uow:
                tx = await uow.transactions.get_by_id(transaction_id)
                if tx is None:
                    raise TransactionNotFoundException(transaction_id)
                ctx = await self._operator_context(uow, user_id, role, tx.location_id)
                require_authorization(
                    is_authorized_for_location(ctx),
                    "Operator not authorized for this location",
                )
                payments = await uow.payments.list_by_transaction(transaction_id)

            eligibility = can_process_refund(tx, payments)
            if not eligibility.valid:
                raise RefundNotAllowedException(eligibility.reason or "Refund not allowed", transaction_id=transaction_id)
            payment = next(p for p in payments if p.status == PaymentStatus.COMPLETED)
            refund_amount = tx.deposit_amount if amount is None else amount
            bounds = is_valid_refund_amount(refund_amount, tx.deposit_amount)
            if not bounds.valid:
                raise DomainValidationException(bounds.reason or "Invalid refund amount", field="amount")

            provider_refund_id = None
            if payment.payment_method in CARD_METHODS and payment.external_payment_id and refund_amount > 0:
                try:
                    result = await self._gateway.refund(
                        RefundRequest(
                            payment_intent_id=payment.external_payment_id,
                            amount=refund_amount,
                            idempotency_key=refund_idempotency_key(transaction_id, payment.id, refund_amount),
                            metadata={"transaction_id": str(transaction_id), "refunded_by": str(user_id)},
                        )
                    )
                except BusinessException as exc:
                    logger.error(
                        "deposit_refund_gateway_failed",
                        transaction_id=transaction_id,
                        payment_id=payment.id,
                        error=exc.message,
                    )
                    provider_code = (exc.details or {}).get("provider_code")
                    raise RefundFailedException(
                        f"Gateway refund failed: {exc.message}", payment_id=payment.id, provider_code=provider_code
                    ) from exc
                provider_refund_id = result.refund_id

            async with self._uow_factory() as uow:
                payment = await uow.payments.get_by_id(payment.id)
                tx = await uow.transactions.get_by_id(transaction_id)
                payment.status = PaymentStatus.REFUNDED
                payment.append_metadata(
                    RefundMetadata(
                        refunded_by=user_id,
                        refunded_at=utcnow(),
                        refund_amount=refund_amount,
                        provider_refund_id=provider_refund_id,
                    ).to_dict()
                )
                payment = await uow.payments.update(payment)
                before = tx.snapshot()
                tx.mark_returned(refund_amount)
                await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="deposit_refunded",
                    entity_type="transaction",
                    entity_id=transaction_id,
                    actor_type=actor_for_role(role),
                    actor_user_id=user_id,
                    before=before,
                    after=tx.snapshot(),
                    metadata={"payment_id": payment.id, "refund_amount": refund_amount},
                )
        logger.info(
            "deposit_refunded",
            transaction_id=transaction_id,
            payment_id=payment.id,
            amount=refund_amount,
            user_id=user_id,
        )
        return payment

    async def bulk_confirm_payments(
        self,
        payment_ids: List[int],
        user_id: int,
        role: UserRole,
        confirmed: bool = True,
        notes: Optional[str] = "Bulk confirmation",
    ) -> BulkResult:
        """Confirm payments one by one. Best-effort: a failure never stops the batch."""
        ctx = AuthorizationContext(role=role, user_id=user_id)
        require_authorization(
            can_perform_bulk_operations(ctx),
            authorization_error_message("bulk_operation", role),
        )
        items: list[BulkItemResult] = []
        for payment_id in payment_ids:
            try:
                payment = await self.confirm_payment(payment_id, user_id, role, confirmed, notes)
            except BusinessException as exc:
                items.append(BulkItemResult(id=payment_id, success=False, error=exc.message))
                continue
            except Exception as exc:
                logger.error("bulk_confirm_item_failed", payment_id=payment_id, error=str(exc), exc_info=True)
                items.append(BulkItemResult(id=payment_id, success=False, error=str(exc)))
                continue
            items.append(BulkItemResult(id=payment_id, success=True, data={"status": payment.status.value}))
        report = BulkResult.from_items(items)
        logger.info("bulk_confirm_completed", total=report.total, succeeded=report.succeeded, failed=report.failed)
        return report

    async def list_pending_confirmations(self, user_id: int, role: UserRole) -> List[Payment]:
        if role == UserRole.BORROWER:
            return []
        async with self._uow_factory(readonly=True) as uow:
            pending = await uow.payments.list_by_status([PaymentStatus.PENDING, PaymentStatus.CONFIRMING])
            if role == UserRole.ADMIN:
                return pending
            ctx = await self._operator_context(uow, user_id, role, None)
            if ctx.is_administrator:
                return pending
            if ctx.user_location_id is None:
                return []
            tx_ids = {t.id for t in await uow.transactions.list_by_location(ctx.user_location_id)}
        return [p for p in pending if p.transaction_id in tx_ids]

    async def list_payments_by_location(self, location_id: int, user_id: int, role: UserRole) -> List[Payment]:
        if role == UserRole.BORROWER:
            return []
        async with self._uow_factory(readonly=True) as uow:
            ctx = await self._operator_context(uow, user_id, role, location_id)
            if not is_authorized_for_location(ctx):
                return []
            payments: list[Payment] = []
            for tx in await uow.transactions.list_by_location(location_id):
                payments.extend(await uow.payments.list_by_transaction(tx.id))
        return payments
