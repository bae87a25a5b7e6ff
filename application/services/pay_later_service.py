"""
Pay-later (deferred card charge) service.

Flow: a setup intent stores the borrower's card off-session, a magic token
protects the public status page, and an operator later triggers an
off-session charge. Card declines and step-up authentication are returned
as ``ChargeResult`` values; only authorization and state violations raise.
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Callable, Optional

from application.dtos.lending import ChargeResult, CreatePayLaterRequest, PublicStatusView, SetupIntentResult
from application.dtos.payments import CreateCustomer, CreatePaymentIntent, CreateSetupIntent, PaymentIntent
from application.ports.locks import TransactionLocker
from application.ports.payment_gateway import PaymentGateway
from application.services.audit import record_audit
from core.logging_config import get_logger
from core.settings import LendingSettings, lending_settings
from domain.common.exceptions import (
    AuthorizationException,
    BusinessException,
    DomainValidationException,
    InvalidStateTransitionException,
    LocationNotFoundException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.entity import (
    ActorType,
    PayLaterStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
    utcnow,
)
from domain.lending.metadata import DeferredChargeMetadata
from domain.lending.money import from_minor_units
from domain.lending.state import is_valid_pay_later_transition, pay_later_display_text


logger = get_logger(__name__)

REQUIRES_ACTION_STATUSES = frozenset({"requires_action", "requires_confirmation"})
DECLINABLE_STATUSES = frozenset({PayLaterStatus.CARD_SETUP_PENDING, PayLaterStatus.CARD_SETUP_COMPLETE})
# CHARGE_ATTEMPTED is chargeable again: an interrupted attempt is re-issued with the same idempotency key
CHARGEABLE_STATUSES = frozenset({PayLaterStatus.CARD_SETUP_COMPLETE, PayLaterStatus.CHARGE_ATTEMPTED})


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_magic_token() -> tuple[str, str]:
    """Return ``(raw, sha256_hex)``; only the hash is ever stored."""
    raw = secrets.token_hex(32)
    return raw, hash_token(raw)


def charge_idempotency_key(transaction_id: int) -> str:
    return f"{transaction_id}_charge_1"


def planned_amount(tx: Transaction) -> int:
    return tx.amount_planned_cents if tx.amount_planned_cents is not None else tx.deposit_amount


def _awaiting_intent(tx: Transaction) -> bool:
    return tx.pay_later_status == PayLaterStatus.CHARGE_ATTEMPTED and not tx.stripe_payment_intent_id


class PayLaterService:
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

    def _status_url(self, transaction_id: int, raw_token: str) -> str:
        base = self._settings.public_base_url.rstrip("/")
        return f"{base}{self._settings.public_status_path}/{transaction_id}?token={raw_token}"

    @staticmethod
    def _actor(operator_user_id: Optional[int]) -> ActorType:
        return ActorType.OPERATOR if operator_user_id else ActorType.SYSTEM

    @staticmethod
    def _check_location(tx: Transaction, operator_location_id: Optional[int]) -> None:
        if operator_location_id is not None and tx.location_id != operator_location_id:
            raise AuthorizationException(
                "operators are not authorized to access this location",
                details={"transaction_id": tx.id},
            )

    async def _notify_action_required(self, tx: Transaction, client_secret: Optional[str]) -> None:
        # Delivery channel (email/SMS) is external; the borrower completes the
        # challenge from the public status page which exposes the client secret.
        logger.info(
            "pay_later_sca_notification",
            transaction_id=tx.id,
            borrower_email=tx.borrower_email,
            has_client_secret=bool(client_secret),
        )

    # ---- setup ----
    async def create_setup_intent(self, request: CreatePayLaterRequest) -> SetupIntentResult:
        raw_token, token_hash = generate_magic_token()
        expires_at = utcnow() + timedelta(days=self._settings.magic_token_ttl_days)

        async with self._uow_factory() as uow:
            location = await uow.locations.get_by_id(request.location_id)
            if location is None:
                raise LocationNotFoundException(request.location_id)
            amount = request.amount_minor()
            if amount is None:
                amount = location.effective_deposit(self._settings.default_deposit_cents)
            tx = Transaction(
                id=None,
                location_id=location.id,
                borrower_name=request.borrower_name,
                borrower_email=request.borrower_email,
                borrower_phone=request.borrower_phone,
                deposit_amount=amount,
                deposit_payment_method="pending",
                borrow_date=utcnow(),
                pay_later_status=PayLaterStatus.CARD_SETUP_PENDING,
                magic_link_token_hash=token_hash,
                magic_link_expires_at=expires_at,
                amount_planned_cents=amount,
                currency=request.currency.lower(),
            )
            tx = await uow.transactions.create(tx)

        gateway_metadata = {"transaction_id": str(tx.id), "location_id": str(tx.location_id)}
        customer = await self._gateway.create_customer(
            CreateCustomer(
                name=tx.borrower_name,
                email=tx.borrower_email,
                phone=tx.borrower_phone,
                metadata=gateway_metadata,
            )
        )
        setup_intent = await self._gateway.create_setup_intent(
            CreateSetupIntent(customer_id=customer.customer_id, metadata=gateway_metadata)
        )

        async with self._locker.hold(tx.id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(tx.id)
                tx.stripe_customer_id = customer.customer_id
                tx.stripe_setup_intent_id = setup_intent.setup_intent_id
                tx = await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="setup_intent_created",
                    entity_type="transaction",
                    entity_id=tx.id,
                    after={
                        "status": PayLaterStatus.CARD_SETUP_PENDING.value,
                        "stripe_customer_id": customer.customer_id,
                        "stripe_setup_intent_id": setup_intent.setup_intent_id,
                    },
                )

        logger.info(
            "pay_later_setup_created",
            transaction_id=tx.id,
            location_id=tx.location_id,
            amount=amount,
            setup_intent_id=setup_intent.setup_intent_id,
        )
        return SetupIntentResult(
            transaction_id=tx.id,
            client_secret=setup_intent.client_secret,
            public_status_url=self._status_url(tx.id, raw_token),
            raw_token=raw_token,
            publishable_key=self._gateway.publishable_key,
        )

    async def get_transaction_by_token(self, transaction_id: int, raw_token: Optional[str]) -> Optional[Transaction]:
        """Resolve a magic link. Wrong, unknown and expired tokens all return ``None``."""
        if not raw_token:
            return None
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
        if tx is None or not tx.magic_link_token_hash:
            return None
        if not hmac.compare_digest(hash_token(raw_token), tx.magic_link_token_hash):
            return None
        if tx.magic_link_expires_at is not None and utcnow() > tx.magic_link_expires_at:
            if tx.pay_later_status == PayLaterStatus.CARD_SETUP_PENDING:
                await self._expire(tx.id)
            return None
        return tx

    async def _expire(self, transaction_id: int) -> None:
        async with self._locker.hold(transaction_id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(transaction_id)
                if tx is None or tx.pay_later_status != PayLaterStatus.CARD_SETUP_PENDING:
                    return
                before = tx.snapshot()
                tx.set_pay_later_status(PayLaterStatus.EXPIRED)
                await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="magic_link_expired",
                    entity_type="transaction",
                    entity_id=tx.id,
                    before=before,
                    after=tx.snapshot(),
                )
        logger.info("pay_later_expired", transaction_id=transaction_id)

    async def get_public_status(self, transaction_id: int, raw_token: Optional[str]) -> Optional[PublicStatusView]:
        tx = await self.get_transaction_by_token(transaction_id, raw_token)
        if tx is None:
            return None
        client_secret = None
        if tx.pay_later_status == PayLaterStatus.CHARGE_REQUIRES_ACTION:
            client_secret = await self.get_action_client_secret(tx.id)
        planned = planned_amount(tx)
        return PublicStatusView(
            transaction_id=tx.id,
            status=tx.pay_later_status,
            status_text=pay_later_display_text(tx.pay_later_status),
            amount_planned=from_minor_units(planned),
            currency=tx.currency,
            client_secret=client_secret,
            is_returned=tx.is_returned,
        )

    async def handle_setup_succeeded(self, setup_intent_id: str, payment_method_id: str) -> Optional[Transaction]:
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_setup_intent_id(setup_intent_id)
        if tx is None:
            logger.warning("setup_intent_transaction_not_found", setup_intent_id=setup_intent_id)
            return None

        async with self._locker.hold(tx.id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(tx.id)
                if (
                    tx.pay_later_status == PayLaterStatus.CARD_SETUP_COMPLETE
                    and tx.stripe_payment_method_id == payment_method_id
                ):
                    logger.info("setup_intent_duplicate", transaction_id=tx.id)
                    return tx
                check = is_valid_pay_later_transition(tx.pay_later_status, PayLaterStatus.CARD_SETUP_COMPLETE)
                if not check.valid:
                    logger.warning("setup_intent_transition_ignored", transaction_id=tx.id, reason=check.reason)
                    return tx

                if tx.stripe_customer_id:
                    await self._gateway.set_default_payment_method(tx.stripe_customer_id, payment_method_id)

                before = tx.snapshot()
                tx.stripe_payment_method_id = payment_method_id
                tx.set_pay_later_status(PayLaterStatus.CARD_SETUP_COMPLETE)
                tx = await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="card_setup_complete",
                    entity_type="transaction",
                    entity_id=tx.id,
                    actor_type=ActorType.WEBHOOK,
                    before=before,
                    after=tx.snapshot(),
                    metadata={"setup_intent_id": setup_intent_id},
                )
        logger.info("pay_later_card_saved", transaction_id=tx.id)
        return tx

    # ---- charge ----
    async def charge_transaction(
        self,
        transaction_id: int,
        operator_user_id: Optional[int] = None,
        operator_location_id: Optional[int] = None,
    ) -> ChargeResult:
        async with self._locker.hold(transaction_id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(transaction_id)
                if tx is None:
                    raise TransactionNotFoundException(transaction_id)
                self._check_location(tx, operator_location_id)
                if tx.pay_later_status not in CHARGEABLE_STATUSES:
                    current = tx.pay_later_status.value if tx.pay_later_status else None
                    raise InvalidStateTransitionException(
                        f"Cannot charge transaction in status: {current}",
                        entity="pay_later",
                        current=current,
                        target=PayLaterStatus.CHARGE_ATTEMPTED.value,
                    )
                if not tx.stripe_customer_id or not tx.stripe_payment_method_id:
                    raise DomainValidationException("Missing saved card details", field="stripe_payment_method_id")

                before = tx.snapshot()
                reissued = tx.pay_later_status == PayLaterStatus.CHARGE_ATTEMPTED
                if not reissued:
                    tx.set_pay_later_status(PayLaterStatus.CHARGE_ATTEMPTED)
                    tx = await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="charge_reissued" if reissued else "charge_attempted",
                    entity_type="transaction",
                    entity_id=tx.id,
                    actor_type=self._actor(operator_user_id),
                    actor_user_id=operator_user_id,
                    before=before,
                    after=tx.snapshot(),
                )

            key = charge_idempotency_key(tx.id)
            amount = planned_amount(tx)
            try:
                intent = await self._gateway.create_payment_intent(
                    CreatePaymentIntent(
                        amount=amount,
                        currency=tx.currency or self._settings.currency,
                        customer_id=tx.stripe_customer_id,
                        payment_method_id=tx.stripe_payment_method_id,
                        off_session=True,
                        confirm=True,
                        idempotency_key=key,
                        metadata={"transaction_id": str(tx.id), "location_id": str(tx.location_id)},
                    )
                )
            except BusinessException as exc:
                error_code = (exc.details or {}).get("provider_code") or exc.error_type
                return await self._record_charge_error(tx.id, operator_user_id, error_code, exc.message)
            except Exception as exc:
                logger.error("pay_later_charge_unexpected_error", transaction_id=tx.id, exc_info=True)
                return await self._record_charge_error(tx.id, operator_user_id, "unknown_error", str(exc) or "Payment failed")

            if intent.status == "succeeded":
                target = PayLaterStatus.CHARGED
            elif intent.status in REQUIRES_ACTION_STATUSES:
                target = PayLaterStatus.CHARGE_REQUIRES_ACTION
            else:
                target = PayLaterStatus.CHARGE_FAILED
            return await self._record_charge_outcome(tx.id, intent, target, operator_user_id, key)

    async def _record_charge_outcome(
        self,
        transaction_id: int,
        intent: PaymentIntent,
        target: PayLaterStatus,
        operator_user_id: Optional[int],
        idempotency_key: str,
    ) -> ChargeResult:
        error_message = None
        if target == PayLaterStatus.CHARGE_FAILED:
            error_message = intent.last_error_message or f"Unexpected payment status: {intent.status}"

        async with self._uow_factory() as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
            before = tx.snapshot()
            tx.stripe_payment_intent_id = intent.intent_id
            tx.set_pay_later_status(target)
            if target == PayLaterStatus.CHARGE_FAILED:
                tx.charge_error_code = intent.last_error_code or intent.status
                tx.charge_error_message = error_message
            if target == PayLaterStatus.CHARGED:
                await self._record_deferred_payment(uow, tx, intent.intent_id, idempotency_key)
            tx = await uow.transactions.update(tx)
            await record_audit(
                uow,
                action={
                    PayLaterStatus.CHARGED: "charge_succeeded",
                    PayLaterStatus.CHARGE_REQUIRES_ACTION: "charge_requires_action",
                }.get(target, "charge_failed"),
                entity_type="transaction",
                entity_id=tx.id,
                actor_type=self._actor(operator_user_id),
                actor_user_id=operator_user_id,
                before=before,
                after=tx.snapshot(),
                metadata={"payment_intent_id": intent.intent_id, "intent_status": intent.status},
            )

        if target == PayLaterStatus.CHARGE_REQUIRES_ACTION:
            await self._notify_action_required(tx, intent.client_secret)
        logger.info(
            "pay_later_charge_result",
            transaction_id=transaction_id,
            status=target.value,
            payment_intent_id=intent.intent_id,
        )
        return ChargeResult(
            transaction_id=transaction_id,
            status=target,
            success=target == PayLaterStatus.CHARGED,
            requires_action=target == PayLaterStatus.CHARGE_REQUIRES_ACTION,
            payment_intent_id=intent.intent_id,
            client_secret=intent.client_secret if target == PayLaterStatus.CHARGE_REQUIRES_ACTION else None,
            error_code=tx.charge_error_code if target == PayLaterStatus.CHARGE_FAILED else None,
            error_message=error_message,
        )

    async def _record_charge_error(
        self, transaction_id: int, operator_user_id: Optional[int], error_code: str, error_message: str
    ) -> ChargeResult:
        async with self._uow_factory() as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
            before = tx.snapshot()
            tx.set_pay_later_status(PayLaterStatus.CHARGE_FAILED)
            tx.charge_error_code = error_code
            tx.charge_error_message = error_message
            await uow.transactions.update(tx)
            await record_audit(
                uow,
                action="charge_failed",
                entity_type="transaction",
                entity_id=tx.id,
                actor_type=self._actor(operator_user_id),
                actor_user_id=operator_user_id,
                before=before,
                after=tx.snapshot(),
                metadata={"error_code": error_code, "error_message": error_message},
            )
        logger.warning(
            "pay_later_charge_failed",
            transaction_id=transaction_id,
            error_code=error_code,
            error_message=error_message,
        )
        return ChargeResult(
            transaction_id=transaction_id,
            status=PayLaterStatus.CHARGE_FAILED,
            success=False,
            error_code=error_code,
            error_message=error_message,
        )

    async def _record_deferred_payment(
        self, uow: AbstractUnitOfWork, tx: Transaction, intent_id: str, idempotency_key: Optional[str] = None
    ) -> None:
        """Record the money movement of a successful deferred charge, once per payment intent."""
        if await uow.payments.get_by_external_id(intent_id) is not None:
            return
        amount = planned_amount(tx)
        await uow.payments.create(
            Payment(
                id=None,
                transaction_id=tx.id,
                payment_method=PaymentMethod.CARD_DEFERRED,
                payment_provider=self._gateway.provider,
                external_payment_id=intent_id,
                deposit_amount=amount,
                processing_fee=0,
                total_amount=amount,
                status=PaymentStatus.COMPLETED,
                completed_at=utcnow(),
                metadata=DeferredChargeMetadata(
                    payment_intent_id=intent_id,
                    idempotency_key=idempotency_key,
                    charged_at=utcnow(),
                ).to_dict(),
            )
        )
        tx.deposit_payment_method = PaymentMethod.CARD_DEFERRED.value

    async def decline_transaction(
        self,
        transaction_id: int,
        operator_user_id: Optional[int] = None,
        operator_location_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Transaction:
        async with self._locker.hold(transaction_id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(transaction_id)
                if tx is None:
                    raise TransactionNotFoundException(transaction_id)
                self._check_location(tx, operator_location_id)
                if tx.pay_later_status not in DECLINABLE_STATUSES:
                    current = tx.pay_later_status.value if tx.pay_later_status else None
                    raise InvalidStateTransitionException(
                        f"Cannot decline transaction in status: {current}",
                        entity="pay_later",
                        current=current,
                        target=PayLaterStatus.DECLINED.value,
                    )
                before = tx.snapshot()
                tx.set_pay_later_status(PayLaterStatus.DECLINED)
                tx.notes = f"Declined: {reason}" if reason else "Declined by operator"
                tx = await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action="declined",
                    entity_type="transaction",
                    entity_id=tx.id,
                    actor_type=self._actor(operator_user_id),
                    actor_user_id=operator_user_id,
                    before=before,
                    after=tx.snapshot(),
                    metadata={"reason": reason} if reason else None,
                )
        logger.info("pay_later_declined", transaction_id=transaction_id, reason=reason)
        return tx

    async def get_action_client_secret(self, transaction_id: int) -> Optional[str]:
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
        if tx is None or not tx.stripe_payment_intent_id:
            return None
        if tx.pay_later_status != PayLaterStatus.CHARGE_REQUIRES_ACTION:
            return None
        intent = await self._gateway.retrieve_payment_intent(tx.stripe_payment_intent_id)
        return intent.client_secret

    # ---- webhooks ----
    async def _apply_webhook_status(
        self,
        payment_intent_id: str,
        target: PayLaterStatus,
        *,
        action: str,
        transaction_id: Optional[int] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> tuple[Optional[Transaction], bool]:
        """Returns the transaction and whether its status changed.

        ``transaction_id`` comes from the intent metadata. It is only trusted
        for a charge that was interrupted before the intent id was stored.
        """
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_payment_intent_id(payment_intent_id)
            if tx is None and transaction_id is not None:
                tx = await uow.transactions.get_by_id(transaction_id)
                if tx is not None and not _awaiting_intent(tx):
                    tx = None
        if tx is None:
            return None, False

        async with self._locker.hold(tx.id):
            async with self._uow_factory() as uow:
                tx = await uow.transactions.get_by_id(tx.id)
                if tx.stripe_payment_intent_id != payment_intent_id:
                    if not _awaiting_intent(tx):
                        logger.warning(
                            "pay_later_webhook_intent_mismatch",
                            transaction_id=tx.id,
                            payment_intent_id=payment_intent_id,
                        )
                        return tx, False
                    tx.stripe_payment_intent_id = payment_intent_id
                    logger.info("pay_later_charge_recovered", transaction_id=tx.id, payment_intent_id=payment_intent_id)
                if tx.pay_later_status == target:
                    logger.info("pay_later_webhook_duplicate", transaction_id=tx.id, status=target.value)
                    return tx, False
                check = is_valid_pay_later_transition(tx.pay_later_status, target)
                if not check.valid:
                    logger.warning("pay_later_webhook_transition_ignored", transaction_id=tx.id, reason=check.reason)
                    return tx, False
                before = tx.snapshot()
                tx.set_pay_later_status(target)
                if target == PayLaterStatus.CHARGE_FAILED:
                    tx.charge_error_code = error_code
                    tx.charge_error_message = error_message
                if target == PayLaterStatus.CHARGED:
                    await self._record_deferred_payment(uow, tx, payment_intent_id)
                tx = await uow.transactions.update(tx)
                await record_audit(
                    uow,
                    action=action,
                    entity_type="transaction",
                    entity_id=tx.id,
                    actor_type=ActorType.WEBHOOK,
                    before=before,
                    after=tx.snapshot(),
                    metadata={"payment_intent_id": payment_intent_id},
                )
        logger.info("pay_later_webhook_applied", transaction_id=tx.id, status=target.value)
        return tx, True

    async def handle_payment_intent_succeeded(
        self, payment_intent_id: str, transaction_id: Optional[int] = None
    ) -> Optional[Transaction]:
        tx, _ = await self._apply_webhook_status(
            payment_intent_id, PayLaterStatus.CHARGED, action="payment_succeeded", transaction_id=transaction_id
        )
        return tx

    async def handle_payment_intent_failed(
        self,
        payment_intent_id: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        transaction_id: Optional[int] = None,
    ) -> Optional[Transaction]:
        tx, _ = await self._apply_webhook_status(
            payment_intent_id,
            PayLaterStatus.CHARGE_FAILED,
            action="payment_failed",
            transaction_id=transaction_id,
            error_code=error_code or "payment_failed",
            error_message=error_message or "Payment failed",
        )
        return tx

    async def handle_payment_intent_requires_action(
        self, payment_intent_id: str, client_secret: Optional[str] = None, transaction_id: Optional[int] = None
    ) -> Optional[Transaction]:
        tx, changed = await self._apply_webhook_status(
            payment_intent_id,
            PayLaterStatus.CHARGE_REQUIRES_ACTION,
            action="payment_requires_action",
            transaction_id=transaction_id,
        )
        if changed:
            await self._notify_action_required(tx, client_secret)
        return tx
