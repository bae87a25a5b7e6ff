import asyncio
import hashlib
from datetime import timedelta

import pytest

from application.dtos.lending import CreatePayLaterRequest
from application.services.pay_later_service import PayLaterService, charge_idempotency_key
from domain.common.exceptions import AuthorizationException, InvalidStateTransitionException
from domain.lending.entity import PayLaterStatus, PaymentMethod, PaymentStatus, utcnow
from infrastructure.external.payments.exceptions import PaymentCardDeclinedError


@pytest.fixture
def service(uow_factory, gateway, locker, lending_config):
    return PayLaterService(uow_factory=uow_factory, gateway=gateway, locker=locker, settings=lending_config)


async def _setup(service, location, amount=None):
    return await service.create_setup_intent(
        CreatePayLaterRequest(location_id=location.id, borrower_name="Miriam K", amount_planned=amount)
    )


async def _card_saved(service, store, location):
    result = await _setup(service, location)
    tx = store.transactions[result.transaction_id]
    await service.handle_setup_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")
    return result


@pytest.mark.asyncio
async def test_setup_intent_stores_only_token_hash(service, store, location):
    result = await _setup(service, location, amount=25.0)
    tx = store.transactions[result.transaction_id]
    assert len(result.raw_token) == 64
    assert tx.magic_link_token_hash == hashlib.sha256(result.raw_token.encode()).hexdigest()
    assert result.raw_token not in tx.snapshot().values()
    assert result.public_status_url == f"https://gemach.test/status/{tx.id}?token={result.raw_token}"
    assert tx.pay_later_status == PayLaterStatus.CARD_SETUP_PENDING
    assert tx.amount_planned_cents == 2500
    assert tx.stripe_customer_id and tx.stripe_setup_intent_id
    assert timedelta(days=29) < tx.magic_link_expires_at - utcnow() <= timedelta(days=30)
    assert result.client_secret
    assert "setup_intent_created" in store.audit_actions(tx.id)


@pytest.mark.asyncio
async def test_token_lookup_rejects_wrong_missing_and_expired(service, store, location):
    result = await _setup(service, location)
    tid = result.transaction_id
    assert (await service.get_transaction_by_token(tid, result.raw_token)).id == tid
    assert await service.get_transaction_by_token(tid, "0" * 64) is None
    assert await service.get_transaction_by_token(tid, None) is None
    assert await service.get_transaction_by_token(tid + 1000, result.raw_token) is None

    store.transactions[tid].magic_link_expires_at = utcnow() - timedelta(seconds=1)
    assert await service.get_transaction_by_token(tid, result.raw_token) is None
    assert store.transactions[tid].pay_later_status == PayLaterStatus.EXPIRED
    assert "magic_link_expired" in store.audit_actions(tid)


@pytest.mark.asyncio
async def test_public_status_view(service, location):
    result = await _setup(service, location)
    view = await service.get_public_status(result.transaction_id, result.raw_token)
    assert view.status == PayLaterStatus.CARD_SETUP_PENDING
    assert view.status_text == "Waiting for card details"
    assert view.amount_planned == 20.0
    assert view.client_secret is None
    assert await service.get_public_status(result.transaction_id, "nope") is None


@pytest.mark.asyncio
async def test_setup_succeeded_is_idempotent(service, store, gateway, location):
    result = await _setup(service, location)
    tx = store.transactions[result.transaction_id]
    first = await service.handle_setup_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")
    second = await service.handle_setup_succeeded(tx.stripe_setup_intent_id, "pm_card_visa")
    assert first.pay_later_status == PayLaterStatus.CARD_SETUP_COMPLETE
    assert second.pay_later_status == PayLaterStatus.CARD_SETUP_COMPLETE
    assert gateway.default_payment_methods[tx.stripe_customer_id] == "pm_card_visa"
    assert store.audit_actions(tx.id).count("card_setup_complete") == 1
    assert await service.handle_setup_succeeded("seti_unknown", "pm_x") is None


@pytest.mark.asyncio
async def test_charge_succeeds_off_session(service, store, gateway, location, operator):
    result = await _card_saved(service, store, location)
    tid = result.transaction_id
    charge = await service.charge_transaction(tid, operator_user_id=operator.id, operator_location_id=location.id)
    assert charge.success
    assert charge.status == PayLaterStatus.CHARGED
    request = gateway.payment_intent_requests[-1]
    assert request.idempotency_key == charge_idempotency_key(tid) == f"{tid}_charge_1"
    assert request.off_session and request.confirm
    assert request.payment_method_id == "pm_card_visa"
    tx = store.transactions[tid]
    assert tx.stripe_payment_intent_id == charge.payment_intent_id
    assert tx.deposit_payment_method == "card_deferred"
    payments = store.payments_for(tid)
    assert len(payments) == 1
    assert payments[0].payment_method == PaymentMethod.CARD_DEFERRED
    assert payments[0].status == PaymentStatus.COMPLETED
    actions = store.audit_actions(tid)
    assert actions.index("charge_attempted") < actions.index("charge_succeeded")


@pytest.mark.asyncio
async def test_double_charge_records_one_successful_charge(service, store, gateway, location):
    result = await _card_saved(service, store, location)
    tid = result.transaction_id
    outcomes = await asyncio.gather(
        service.charge_transaction(tid),
        service.charge_transaction(tid),
        return_exceptions=True,
    )
    assert sum(1 for o in outcomes if isinstance(o, InvalidStateTransitionException)) == 1
    assert gateway.successful_charges == 1

    # a late succeeded webhook must not add a second payment row
    tx = store.transactions[tid]
    await service.handle_payment_intent_succeeded(tx.stripe_payment_intent_id)
    assert len(store.payments_for(tid)) == 1


@pytest.mark.asyncio
async def test_charge_requires_action_then_webhook_completes(service, store, gateway, location):
    result = await _card_saved(service, store, location)
    tid = result.transaction_id
    gateway.charge_status = "requires_action"

    charge = await service.charge_transaction(tid)
    assert not charge.success
    assert charge.requires_action
    assert charge.status == PayLaterStatus.CHARGE_REQUIRES_ACTION
    assert charge.client_secret
    assert store.payments_for(tid) == []

    view = await service.get_public_status(tid, result.raw_token)
    assert view.client_secret == charge.client_secret
    assert view.status_text.startswith("Action required")

    tx = await service.handle_payment_intent_succeeded(charge.payment_intent_id)
    assert tx.pay_later_status == PayLaterStatus.CHARGED
    assert len(store.payments_for(tid)) == 1


@pytest.mark.asyncio
async def test_gateway_decline_is_a_result_not_an_exception(service, store, gateway, location):
    result = await _card_saved(service, store, location)
    tid = result.transaction_id
    gateway.charge_error = PaymentCardDeclinedError(
        "Your card has insufficient funds.", provider="stripe", provider_code="insufficient_funds"
    )
    charge = await service.charge_transaction(tid)
    assert not charge.success
    assert charge.status == PayLaterStatus.CHARGE_FAILED
    assert charge.error_code == "insufficient_funds"
    tx = store.transactions[tid]
    assert tx.pay_later_status == PayLaterStatus.CHARGE_FAILED
    assert tx.charge_error_message == "Your card has insufficient funds."
    assert "charge_failed" in store.audit_actions(tid)


@pytest.mark.asyncio
async def test_unexpected_intent_status_marks_failed(service, store, gateway, location):
    result = await _card_saved(service, store, location)
    gateway.charge_status = "requires_payment_method"
    charge = await service.charge_transaction(result.transaction_id)
    assert charge.status == PayLaterStatus.CHARGE_FAILED
    assert charge.error_code == "card_declined"
    assert "requires_payment_method" in charge.error_message


@pytest.mark.asyncio
async def test_charge_guards(service, store, location, other_location):
    pending = await _setup(service, location)
    with pytest.raises(InvalidStateTransitionException):
        await service.charge_transaction(pending.transaction_id)

    saved = await _card_saved(service, store, location)
    with pytest.raises(AuthorizationException):
        await service.charge_transaction(saved.transaction_id, operator_location_id=other_location.id)
    assert store.transactions[saved.transaction_id].pay_later_status == PayLaterStatus.CARD_SETUP_COMPLETE


@pytest.mark.asyncio
async def test_decline_only_before_charge(service, store, location):
    pending = await _setup(service, location)
    tx = await service.decline_transaction(pending.transaction_id, reason="duplicate request")
    assert tx.pay_later_status == PayLaterStatus.DECLINED
    assert tx.notes == "Declined: duplicate request"
    with pytest.raises(InvalidStateTransitionException):
        await service.decline_transaction(pending.transaction_id)

    charged = await _card_saved(service, store, location)
    await service.charge_transaction(charged.transaction_id)
    with pytest.raises(InvalidStateTransitionException):
        await service.decline_transaction(charged.transaction_id)


@pytest.mark.asyncio
async def test_failed_webhook_after_charge_is_ignored(service, store, location):
    result = await _card_saved(service, store, location)
    charge = await service.charge_transaction(result.transaction_id)
    tx = await service.handle_payment_intent_failed(charge.payment_intent_id, "card_declined", "declined")
    assert tx.pay_later_status == PayLaterStatus.CHARGED
    assert tx.charge_error_code is None


async def _charge_interrupted_after_gateway(service, gateway, tid):
    """The card is charged but the worker dies before the outcome is stored."""
    charge = gateway.create_payment_intent

    async def charge_then_cancel(req):
        await charge(req)
        raise asyncio.CancelledError()

    gateway.create_payment_intent = charge_then_cancel
    try:
        with pytest.raises(asyncio.CancelledError):
            await service.charge_transaction(tid)
    finally:
        del gateway.create_payment_intent


@pytest.mark.asyncio
async def test_interrupted_charge_is_reissued_with_same_key(service, store, gateway, location):
    result = await _card_saved(service, store, location)
    tid = result.transaction_id
    await _charge_interrupted_after_gateway(service, gateway, tid)

    tx = store.transactions[tid]
    assert tx.pay_later_status == PayLaterStatus.CHARGE_ATTEMPTED
    assert tx.stripe_payment_intent_id is None
    assert store.payments_for(tid) == []

    charge = await service.charge_transaction(tid)

    assert charge.status == PayLaterStatus.CHARGED
    assert gateway.successful_charges == 1
    assert {r.idempotency_key for r in gateway.payment_intent_requests} == {f"{tid}_charge_1"}
    assert store.transactions[tid].stripe_payment_intent_id == charge.payment_intent_id
    assert len(store.payments_for(tid)) == 1
    assert "charge_reissued" in store.audit_actions(tid)
