"""
Deposit refund / item return workflow.

Authorization and refund-eligibility checks run once, up front, under the
per-transaction lock. Only the externally fallible part (persisting the
return with its refund-pending payment, then the inventory sync) runs in
the retry executor. Exhausted retries are written to the retry-failure
sink and surfaced as ``ItemReturnFailedException``.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional

from application.dtos.lending import (
    BulkItemResult,
    BulkResult,
    BulkReturnItem,
    RefundReport,
    RefundReportItem,
    ReturnData,
    ReturnResult,
)
from application.ports.locks import TransactionLocker
from application.ports.retry_sink import RetryFailureSink
from application.services.audit import actor_for_role, record_audit
from application.services.inventory_sync import InventorySyncService
from application.services.retry import RetryOptions, is_retryable, log_retry_failure, with_retry
from core.logging_config import get_logger
from core.settings import LendingSettings, lending_settings
from domain.common.exceptions import (
    BusinessException,
    DomainValidationException,
    InvalidStateTransitionException,
    ItemReturnFailedException,
    RefundNotAllowedException,
    TransactionNotFoundException,
)
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.authorization import (
    AuthorizationContext,
    authorization_error_message,
    can_perform_bulk_operations,
    can_process_refund as can_user_process_refund,
    is_authorized_for_location,
    require_authorization,
)
from domain.lending.entity import Payment, PaymentStatus, Transaction, UserRole, utcnow
from domain.lending.metadata import ReturnRefundMetadata
from domain.lending.state import (
    calculate_refund_amount,
    can_process_refund,
    is_valid_refund_amount,
    is_valid_transaction_state_transition,
    validate_refund_workflow,
)


logger = get_logger(__name__)


def refund_external_id(original: Payment, transaction_id: int) -> str:
    if original.external_payment_id:
        return f"refund_{original.external_payment_id}"
    return f"refund_tx_{transaction_id}"


class ItemReturnService:
    def __init__(
        self,
        uow_factory: Callable[..., AbstractUnitOfWork],
        locker: TransactionLocker,
        inventory: InventorySyncService,
        failure_sink: RetryFailureSink,
        settings: Optional[LendingSettings] = None,
        sleep=None,
    ) -> None:
        self._uow_factory = uow_factory
        self._locker = locker
        self._inventory = inventory
        self._failure_sink = failure_sink
        self._settings = settings or lending_settings
        self._sleep = sleep

    def _retry_options(self, transaction_id: int) -> RetryOptions:
        policy = self._settings.return_retry

        def _on_retry(attempt: int, error: BaseException) -> None:
            logger.warning(
                "item_return_retry",
                transaction_id=transaction_id,
                attempt=attempt,
                error=str(error),
            )

        return RetryOptions(
            max_retries=policy.max_retries,
            initial_delay_ms=policy.initial_delay_ms,
            max_delay_ms=policy.max_delay_ms,
            backoff_multiplier=policy.backoff_multiplier,
            on_retry=_on_retry,
        )

    async def _validate(
        self,
        transaction_id: int,
        return_data: ReturnData,
        role: UserRole,
        user_id: int,
        operator_location_id: Optional[int],
    ) -> tuple[Transaction, Payment, int]:
        async with self._uow_factory(readonly=True) as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
            if tx is None:
                raise TransactionNotFoundException(transaction_id)
            ctx = AuthorizationContext(
                role=role,
                user_id=user_id,
                user_location_id=operator_location_id,
                target_location_id=tx.location_id,
            )
            require_authorization(can_user_process_refund(ctx), authorization_error_message("refund", role))
            payments = await uow.payments.list_by_transaction(transaction_id)

        eligibility = can_process_refund(tx, payments)
        if not eligibility.valid:
            workflow = validate_refund_workflow(tx, payments)
            raise RefundNotAllowedException(
                eligibility.reason or "Refund not allowed",
                transaction_id=transaction_id,
                problems=workflow.errors,
            )
        original = next(p for p in payments if p.status == PaymentStatus.COMPLETED)

        override = return_data.refund_amount_minor()
        amount = override if override is not None else calculate_refund_amount(tx.deposit_amount, return_data.condition)
        bounds = is_valid_refund_amount(amount, tx.deposit_amount)
        if not bounds.valid:
            raise DomainValidationException(bounds.reason or "Invalid refund amount", field="refund_amount")
        return tx, original, amount

    async def process_item_return(
        self,
        transaction_id: int,
        return_data: ReturnData,
        role: UserRole,
        user_id: int,
        operator_location_id: Optional[int] = None,
    ) -> ReturnResult:
        async with self._locker.hold(transaction_id):
            tx, original, amount = await self._validate(
                transaction_id, return_data, role, user_id, operator_location_id
            )
            external_id = refund_external_id(original, transaction_id)
            progress: dict = {"refund": None, "inventory_synced": False}

            async def _apply() -> Payment:
                if progress["refund"] is None:
                    progress["refund"] = await self._persist_return(
                        transaction_id, original, amount, external_id, return_data, role, user_id
                    )
                if not progress["inventory_synced"]:
                    await self._inventory.on_item_returned(tx.location_id, return_data.condition)
                    progress["inventory_synced"] = True
                return progress["refund"]

            kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
            result = await with_retry(_apply, self._retry_options(transaction_id), **kwargs)

        if not result.success:
            error = result.error
            if isinstance(error, BusinessException) and not is_retryable(error):
                raise error
            await log_retry_failure(
                self._failure_sink,
                "process_item_return",
                {
                    "transaction_id": transaction_id,
                    "return_data": return_data.model_dump(mode="json"),
                    "role": role.value,
                    "user_id": user_id,
                    "operator_location_id": operator_location_id,
                    "refund_amount": amount,
                    "refund_recorded": progress["refund"] is not None,
                },
                error,
            )
            raise ItemReturnFailedException(transaction_id, result.attempts, str(error))

        refund = result.data
        logger.info(
            "item_returned",
            transaction_id=transaction_id,
            refund_payment_id=refund.id,
            refund_amount=amount,
            condition=return_data.condition.value if return_data.condition else None,
            attempts=result.attempts,
        )
        return ReturnResult(
            transaction_id=transaction_id,
            refund_amount=amount,
            refund_payment_id=refund.id,
            refund_external_id=refund.external_payment_id,
            attempts=result.attempts,
        )

    async def _persist_return(
        self,
        transaction_id: int,
        original: Payment,
        amount: int,
        external_id: str,
        return_data: ReturnData,
        role: UserRole,
        user_id: int,
    ) -> Payment:
        """Mark the transaction returned and insert the refund-pending payment atomically."""
        async with self._uow_factory() as uow:
            tx = await uow.transactions.get_by_id(transaction_id)
            if tx is None:
                raise TransactionNotFoundException(transaction_id)
            if tx.is_returned:
                # an earlier attempt may have committed before failing
                existing = await uow.payments.get_by_external_id(external_id)
                if existing is not None:
                    return existing
            check = is_valid_transaction_state_transition(tx.is_returned, True)
            if not check.valid:
                raise InvalidStateTransitionException(
                    check.reason, entity="transaction", current="returned", target="returned"
                )
            before = tx.snapshot()
            tx.mark_returned(amount, return_data.notes)
            await uow.transactions.update(tx)
            refund = await uow.payments.create(
                Payment(
                    id=None,
                    transaction_id=transaction_id,
                    payment_method=original.payment_method,
                    payment_provider=original.payment_provider,
                    external_payment_id=external_id,
                    deposit_amount=amount,
                    processing_fee=0,
                    total_amount=amount,
                    status=PaymentStatus.REFUND_PENDING,
                    metadata=ReturnRefundMetadata(
                        original_payment_id=original.id,
                        item_condition=return_data.condition.value if return_data.condition else None,
                        processed_by=user_id,
                        processed_at=utcnow(),
                        return_notes=return_data.notes,
                    ).to_dict(),
                )
            )
            await record_audit(
                uow,
                action="item_returned",
                entity_type="transaction",
                entity_id=transaction_id,
                actor_type=actor_for_role(role),
                actor_user_id=user_id,
                before=before,
                after=tx.snapshot(),
                metadata={"refund_payment_id": refund.id, "refund_amount": amount},
            )
        return refund

    async def process_bulk_returns(
        self,
        items: List[BulkReturnItem],
        role: UserRole,
        user_id: int,
        is_admin: bool = False,
    ) -> BulkResult:
        """Return items one by one. Best-effort: never aborts on a single failure."""
        require_authorization(
            can_perform_bulk_operations(AuthorizationContext(role=role, user_id=user_id, is_admin=is_admin)),
            authorization_error_message("bulk_operation", role),
        )
        results: list[BulkItemResult] = []
        for item in items:
            try:
                outcome = await self.process_item_return(
                    item.transaction_id,
                    ReturnData(condition=item.condition, refund_amount=item.refund_amount, notes=item.notes),
                    UserRole.ADMIN,
                    user_id,
                )
            except BusinessException as exc:
                results.append(BulkItemResult(id=item.transaction_id, success=False, error=exc.message))
                continue
            except Exception as exc:
                logger.error("bulk_return_item_failed", transaction_id=item.transaction_id, exc_info=True)
                results.append(BulkItemResult(id=item.transaction_id, success=False, error=str(exc)))
                continue
            results.append(
                BulkItemResult(
                    id=item.transaction_id,
                    success=True,
                    data={"refund_amount": outcome.refund_amount, "refund_payment_id": outcome.refund_payment_id},
                )
            )
        report = BulkResult.from_items(results)
        logger.info("bulk_return_completed", total=report.total, succeeded=report.succeeded, failed=report.failed)
        return report

    async def generate_refund_report(
        self,
        user_id: int,
        role: UserRole,
        location_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        operator_location_id: Optional[int] = None,
    ) -> RefundReport:
        if role == UserRole.OPERATOR and location_id is None:
            location_id = operator_location_id
        ctx = AuthorizationContext(
            role=role,
            user_id=user_id,
            user_location_id=operator_location_id,
            target_location_id=location_id,
        )
        authorized = is_authorized_for_location(ctx) and (role == UserRole.ADMIN or location_id is not None)
        require_authorization(authorized, authorization_error_message("location_access", role))

        async with self._uow_factory(readonly=True) as uow:
            returned = await uow.transactions.list_returned(location_id=location_id, start=start, end=end)
        items = [
            RefundReportItem(
                transaction_id=tx.id,
                location_id=tx.location_id,
                borrower_name=tx.borrower_name,
                deposit_amount=tx.deposit_amount,
                refund_amount=tx.refund_amount or 0,
                returned_at=tx.actual_return_date,
            )
            for tx in returned
        ]
        total_deposits = sum(i.deposit_amount for i in items)
        total_refunded = sum(i.refund_amount for i in items)
        return RefundReport(
            location_id=location_id,
            start=start,
            end=end,
            total_transactions=len(items),
            total_deposits=total_deposits,
            total_refunded=total_refunded,
            total_retained=total_deposits - total_refunded,
            items=items,
        )
