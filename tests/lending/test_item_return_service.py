import asyncio

import pytest

from application.dtos.lending import BulkReturnItem, DepositRequest, ReturnData
from application.services.deposit_service import DepositService
from application.services.inventory_sync import InventorySyncService
from application.services.item_return_service import ItemReturnService
from domain.common.exceptions import (
    AuthorizationException,
    DomainValidationException,
    InvalidStateTransitionException,
    ItemReturnFailedException,
    RefundNotAllowedException,
)
from domain.lending.entity import ItemCondition, PaymentStatus, UserRole

from fakes import no_sleep


class FlakyInventory(InventorySyncService):
    def __init__(self, uow_factory, failures: int):
        super().__init__(uow_factory)
        self.failures = failures
        self.calls = 0

    async def on_item_returned(self, location_id, condition=None):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TimeoutError("inventory service timed out")
        return await super().on_item_returned(location_id, condition)


@pytest.fixture
def deposits(uow_factory, gateway, locker, lending_config):
    return DepositService(uow_factory=uow_factory, gateway=gateway, locker=locker, settings=lending_config)


@pytest.fixture
def make_service(uow_factory, locker, failure_sink, lending_config):
    def _make(inventory=None):
        return ItemReturnService(
            uow_factory=uow_factory,
            locker=locker,
            inventory=inventory or InventorySyncService(uow_factory),
            failure_sink=failure_sink,
            settings=lending_config,
            sleep=no_sleep,
        )
    return _make


@pytest.fixture
def service(make_service):
    return make_service()


async def _paid_cash_deposit(deposits, location, admin):
    tx = await deposits.create_deposit_transaction(
        DepositRequest(location_id=location.id, borrower_name="Yossi B", deposit_amount=20.0)
    )
    cash = await deposits.initiate_cash_payment(tx.id, location.id)
    await deposits.confirm_payment(cash.payment_id, admin.id, UserRole.ADMIN, True)
    return tx, cash.payment_id


@pytest.mark.asyncio
async def test_cash_deposit_returned_in_good_condition(service, deposits, store, location, admin, operator):
    tx, original_id = await _paid_cash_deposit(deposits, location, admin)
    inventory_before = store.locations[location.id].inventory_count

    result = await service.process_item_return(
        tx.id, ReturnData(condition=ItemCondition.GOOD), UserRole.OPERATOR, operator.id, operator.location_id
    )

    assert result.refund_amount == 2000
    assert result.attempts == 1
    stored = store.transactions[tx.id]
    assert stored.is_returned
    assert stored.refund_amount == 2000
    refund = store.payments[result.refund_payment_id]
    assert refund.status == PaymentStatus.REFUND_PENDING
    assert refund.external_payment_id == f"refund_{store.payments[original_id].external_payment_id}"
    assert refund.metadata["original_payment_id"] == original_id
    assert refund.metadata["item_condition"] == "good"
    assert store.locations[location.id].inventory_count == inventory_before + 1
    assert "item_returned" in store.audit_actions(tx.id)


@pytest.mark.asyncio
async def test_condition_drives_refund_amount(service, deposits, store, location, admin):
    damaged, _ = await _paid_cash_deposit(deposits, location, admin)
    missing, _ = await _paid_cash_deposit(deposits, location, admin)
    count = store.locations[location.id].inventory_count

    r1 = await service.process_item_return(damaged.id, ReturnData(condition="damaged"), UserRole.ADMIN, admin.id)
    r2 = await service.process_item_return(missing.id, ReturnData(condition="missing"), UserRole.ADMIN, admin.id)

    assert r1.refund_amount == 1000
    assert r2.refund_amount == 0
    assert store.locations[location.id].inventory_count == count + 1


@pytest.mark.asyncio
async def test_explicit_amount_overrides_and_is_bounded(service, deposits, store, location, admin):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    with pytest.raises(DomainValidationException) as exc_info:
        await service.process_item_return(tx.id, ReturnData(refund_amount=30.0), UserRole.ADMIN, admin.id)
    assert exc_info.value.field == "refund_amount"
    assert not store.transactions[tx.id].is_returned

    result = await service.process_item_return(
        tx.id, ReturnData(condition="damaged", refund_amount=5.0), UserRole.ADMIN, admin.id
    )
    assert result.refund_amount == 500


@pytest.mark.asyncio
async def test_rapid_double_return_creates_one_refund(service, deposits, store, location, admin):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    outcomes = await asyncio.gather(
        service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id),
        service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id),
        return_exceptions=True,
    )
    errors = [o for o in outcomes if isinstance(o, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], RefundNotAllowedException)
    refunds = [p for p in store.payments_for(tx.id) if p.status == PaymentStatus.REFUND_PENDING]
    assert len(refunds) == 1


@pytest.mark.asyncio
async def test_concurrent_returns_at_one_location_restock_every_item(service, deposits, store, location, admin):
    first, _ = await _paid_cash_deposit(deposits, location, admin)
    second, _ = await _paid_cash_deposit(deposits, location, admin)
    count = store.locations[location.id].inventory_count

    await asyncio.gather(
        service.process_item_return(first.id, ReturnData(condition="good"), UserRole.ADMIN, admin.id),
        service.process_item_return(second.id, ReturnData(condition="damaged"), UserRole.ADMIN, admin.id),
    )

    assert store.locations[location.id].inventory_count == count + 2


@pytest.mark.asyncio
async def test_rejected_return_lists_every_problem(service, deposits, location, admin):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)

    with pytest.raises(RefundNotAllowedException) as exc_info:
        await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)
    details = exc_info.value.details
    assert details["transaction_id"] == tx.id
    assert len(details["problems"]) == 1
    assert "already marked as returned" in details["problems"][0]


class ReturnedElsewhereService(ItemReturnService):
    """Another writer marks the transaction returned right after validation."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    async def _validate(self, transaction_id, *args):
        validated = await super()._validate(transaction_id, *args)
        self.store.transactions[transaction_id].is_returned = True
        return validated


@pytest.mark.asyncio
async def test_return_recorded_elsewhere_is_not_applied_twice(
    deposits, store, uow_factory, locker, failure_sink, lending_config, location, admin
):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    service = ReturnedElsewhereService(
        store,
        uow_factory=uow_factory,
        locker=locker,
        inventory=InventorySyncService(uow_factory),
        failure_sink=failure_sink,
        settings=lending_config,
        sleep=no_sleep,
    )

    with pytest.raises(InvalidStateTransitionException) as exc_info:
        await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)

    assert exc_info.value.message == "Transaction is already marked as returned"
    assert [p.status for p in store.payments_for(tx.id)] == [PaymentStatus.COMPLETED]
    assert failure_sink.records == []


@pytest.mark.asyncio
async def test_authorization_checked_before_any_change(service, deposits, store, location, admin, other_operator):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    borrower = store.add_user(UserRole.BORROWER)
    with pytest.raises(AuthorizationException):
        await service.process_item_return(
            tx.id, ReturnData(), UserRole.OPERATOR, other_operator.id, other_operator.location_id
        )
    with pytest.raises(AuthorizationException):
        await service.process_item_return(tx.id, ReturnData(), UserRole.BORROWER, borrower.id)
    assert not store.transactions[tx.id].is_returned
    assert len(store.payments_for(tx.id)) == 1


@pytest.mark.asyncio
async def test_return_requires_completed_payment(service, deposits, location, admin):
    tx = await deposits.create_deposit_transaction(DepositRequest(location_id=location.id, borrower_name="No Pay"))
    with pytest.raises(RefundNotAllowedException):
        await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)


@pytest.mark.asyncio
async def test_transient_store_failures_are_retried(service, deposits, store, location, admin, failure_sink):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    store.failures["payments.create"] = 2

    result = await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)

    assert result.attempts == 3
    assert store.transactions[tx.id].is_returned
    refunds = [p for p in store.payments_for(tx.id) if p.status == PaymentStatus.REFUND_PENDING]
    assert len(refunds) == 1
    assert failure_sink.records == []


@pytest.mark.asyncio
async def test_committed_return_not_reapplied_when_inventory_retries(make_service, deposits, store, uow_factory, location, admin):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    inventory = FlakyInventory(uow_factory, failures=1)
    service = make_service(inventory)
    count = store.locations[location.id].inventory_count

    result = await service.process_item_return(tx.id, ReturnData(), UserRole.ADMIN, admin.id)

    assert result.attempts == 2
    assert inventory.calls == 2
    assert store.locations[location.id].inventory_count == count + 1
    assert store.audit_actions(tx.id).count("item_returned") == 1


@pytest.mark.asyncio
async def test_exhausted_retries_are_logged_and_raised(service, deposits, store, location, admin, failure_sink):
    tx, _ = await _paid_cash_deposit(deposits, location, admin)
    store.failures["payments.create"] = 10

    with pytest.raises(ItemReturnFailedException) as exc_info:
        await service.process_item_return(tx.id, ReturnData(condition="good"), UserRole.ADMIN, admin.id)

    assert exc_info.value.details == {"transaction_id": tx.id, "attempts": 4}
    assert not store.transactions[tx.id].is_returned
    assert len(failure_sink.records) == 1
    record = failure_sink.records[0]
    assert record.operation == "process_item_return"
    assert record.context["transaction_id"] == tx.id
    assert record.context["refund_recorded"] is False
    assert record.error_name == "ConnectionError"


@pytest.mark.asyncio
async def test_bulk_returns_admin_only_and_never_abort(service, deposits, store, location, admin, operator):
    tx_a, _ = await _paid_cash_deposit(deposits, location, admin)
    tx_b, _ = await _paid_cash_deposit(deposits, location, admin)
    items = [
        BulkReturnItem(transaction_id=tx_a.id, condition="good"),
        BulkReturnItem(transaction_id=987654),
        BulkReturnItem(transaction_id=tx_b.id, condition="damaged"),
    ]

    with pytest.raises(AuthorizationException):
        await service.process_bulk_returns(items, UserRole.OPERATOR, operator.id)

    report = await service.process_bulk_returns(items, UserRole.ADMIN, admin.id, is_admin=True)
    assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
    assert report.results[1].error == "Transaction not found"
    assert report.results[2].data["refund_amount"] == 1000


@pytest.mark.asyncio
async def test_refund_report_totals_and_scope(service, deposits, location, other_location, admin, operator):
    good, _ = await _paid_cash_deposit(deposits, location, admin)
    damaged, _ = await _paid_cash_deposit(deposits, location, admin)
    missing, _ = await _paid_cash_deposit(deposits, other_location, admin)
    await service.process_item_return(good.id, ReturnData(condition="good"), UserRole.ADMIN, admin.id)
    await service.process_item_return(damaged.id, ReturnData(condition="damaged"), UserRole.ADMIN, admin.id)
    await service.process_item_return(missing.id, ReturnData(condition="missing"), UserRole.ADMIN, admin.id)

    everything = await service.generate_refund_report(admin.id, UserRole.ADMIN)
    assert everything.total_transactions == 3
    assert everything.total_deposits == 6000
    assert everything.total_refunded == 3000
    assert everything.total_retained == 3000

    own = await service.generate_refund_report(operator.id, UserRole.OPERATOR, operator_location_id=operator.location_id)
    assert own.location_id == location.id
    assert sorted(i.transaction_id for i in own.items) == sorted([good.id, damaged.id])

    with pytest.raises(AuthorizationException):
        await service.generate_refund_report(
            operator.id, UserRole.OPERATOR, location_id=other_location.id, operator_location_id=operator.location_id
        )
    with pytest.raises(AuthorizationException):
        await service.generate_refund_report(99, UserRole.BORROWER)
