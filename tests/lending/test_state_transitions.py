import itertools

import pytest

from domain.common.exceptions import DomainValidationException, InvalidStateTransitionException
from domain.lending.entity import (
    ItemCondition,
    PayLaterStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Transaction,
)
from domain.lending.money import processing_fee, to_minor_units
from domain.lending.state import (
    PAY_LATER_STATUS_DISPLAY,
    PAYMENT_TRANSITIONS,
    calculate_refund_amount,
    can_process_refund,
    is_valid_pay_later_transition,
    is_valid_payment_state_transition,
    is_valid_refund_amount,
    is_valid_transaction_state_transition,
    validate_refund_workflow,
)


ALLOWED = {
    ("pending", "confirming"),
    ("pending", "completed"),
    ("pending", "failed"),
    ("confirming", "completed"),
    ("confirming", "failed"),
    ("completed", "refund_pending"),
    ("completed", "refunded"),
    ("failed", "pending"),
    ("refund_pending", "refunded"),
    ("refund_pending", "refund_failed"),
    ("refund_failed", "refund_pending"),
}


def _tx(**kw) -> Transaction:
    return Transaction(id=kw.pop("id", 1), location_id=1, borrower_name="Dana", deposit_amount=kw.pop("deposit", 2000), **kw)


def _payment(status: PaymentStatus, pid: int = 1) -> Payment:
    return Payment(
        id=pid,
        transaction_id=1,
        payment_method=PaymentMethod.CASH,
        deposit_amount=2000,
        processing_fee=0,
        total_amount=2000,
        status=status,
    )


def test_payment_graph_matches_table_exactly():
    states = [s.value for s in PaymentStatus]
    for current, target in itertools.product(states, states):
        check = is_valid_payment_state_transition(current, target)
        assert check.valid == ((current, target) in ALLOWED), (current, target)
        if not check.valid:
            assert check.reason


def test_refunded_is_terminal_and_unknown_state_rejected():
    assert PAYMENT_TRANSITIONS["refunded"] == frozenset()
    check = is_valid_payment_state_transition("bogus", PaymentStatus.PENDING)
    assert not check.valid
    assert "Unknown" in check.reason


def test_transaction_return_dimension():
    assert is_valid_transaction_state_transition(False, True).valid
    assert not is_valid_transaction_state_transition(True, True).valid
    assert not is_valid_transaction_state_transition(True, False).valid
    assert not is_valid_transaction_state_transition(False, False).valid


def test_mark_returned_is_irreversible():
    tx = _tx()
    tx.mark_returned(2000)
    assert tx.is_returned and tx.actual_return_date is not None
    with pytest.raises(InvalidStateTransitionException):
        tx.mark_returned(2000)


def test_refund_eligibility_false_whenever_returned():
    for status in PaymentStatus:
        tx = _tx(is_returned=True)
        assert not can_process_refund(tx, [_payment(PaymentStatus.COMPLETED), _payment(status, 2)]).valid


def test_refund_eligibility_reasons_in_order():
    assert "no completed payment" in can_process_refund(_tx(), [_payment(PaymentStatus.CONFIRMING)]).reason
    in_progress = can_process_refund(_tx(), [_payment(PaymentStatus.COMPLETED), _payment(PaymentStatus.REFUND_PENDING, 2)])
    assert not in_progress.valid and "refund_pending" in in_progress.reason
    retry_after_failure = can_process_refund(
        _tx(), [_payment(PaymentStatus.COMPLETED), _payment(PaymentStatus.REFUND_FAILED, 2)]
    )
    assert retry_after_failure.valid


def test_validate_refund_workflow_collects_every_problem():
    result = validate_refund_workflow(_tx(deposit=0), [])
    assert not result.valid
    assert len(result.errors) == 2


def test_calculate_refund_amount_policy():
    assert calculate_refund_amount(2000, ItemCondition.DAMAGED) == 1000
    assert calculate_refund_amount(2000, ItemCondition.MISSING) == 0
    assert calculate_refund_amount(2000, None) == 2000
    assert calculate_refund_amount(2000, "good") == 2000
    assert calculate_refund_amount(1999, "damaged") == 999


def test_refund_amount_bounds():
    assert is_valid_refund_amount(0, 2000).valid
    assert is_valid_refund_amount(2000, 2000).valid
    assert not is_valid_refund_amount(-1, 2000).valid
    assert not is_valid_refund_amount(2001, 2000).valid


def test_pay_later_graph():
    assert is_valid_pay_later_transition(PayLaterStatus.CARD_SETUP_PENDING, PayLaterStatus.CARD_SETUP_COMPLETE).valid
    assert is_valid_pay_later_transition(PayLaterStatus.CARD_SETUP_COMPLETE, PayLaterStatus.CHARGE_ATTEMPTED).valid
    assert is_valid_pay_later_transition(PayLaterStatus.CHARGE_REQUIRES_ACTION, PayLaterStatus.CHARGED).valid
    assert not is_valid_pay_later_transition(PayLaterStatus.CHARGED, PayLaterStatus.CHARGE_FAILED).valid
    assert not is_valid_pay_later_transition(PayLaterStatus.DECLINED, PayLaterStatus.CARD_SETUP_COMPLETE).valid
    assert not is_valid_pay_later_transition(None, PayLaterStatus.CHARGED).valid


def test_every_pay_later_status_has_display_text():
    assert set(PAY_LATER_STATUS_DISPLAY) == set(PayLaterStatus)


def test_money_helpers_use_integer_minor_units():
    assert to_minor_units(20.0) == 2000
    assert to_minor_units(0.1 + 0.2) == 30
    assert processing_fee(2000, 300) == 60
    assert processing_fee(1001, 300) == 31


def test_transaction_rejects_non_integer_deposit():
    with pytest.raises(DomainValidationException):
        _tx(deposit=20.5)
    with pytest.raises(DomainValidationException):
        _tx(deposit=-1)


def test_append_metadata_never_overwrites():
    payment = _payment(PaymentStatus.PENDING)
    payment.metadata = {"client_secret": "cs_1"}
    payment.append_metadata({"client_secret": "other", "confirmed": True})
    assert payment.metadata == {"client_secret": "cs_1", "confirmed": True}
