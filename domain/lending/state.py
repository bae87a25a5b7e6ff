"""
状态迁移校验

所有校验函数都是全函数：返回 TransitionCheck，从不抛异常，
由调用方决定是否转换为 InvalidStateTransitionException / RefundNotAllowedException。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from domain.lending.entity import (
    ItemCondition,
    PayLaterStatus,
    Payment,
    PaymentStatus,
    Transaction,
)


@dataclass(frozen=True)
class TransitionCheck:
    valid: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.valid


@dataclass(frozen=True)
class WorkflowCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)


PAYMENT_TRANSITIONS: dict[str, frozenset[str]] = {
    PaymentStatus.PENDING.value: frozenset({
        PaymentStatus.CONFIRMING.value,
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    }),
    PaymentStatus.CONFIRMING.value: frozenset({
        PaymentStatus.COMPLETED.value,
        PaymentStatus.FAILED.value,
    }),
    PaymentStatus.COMPLETED.value: frozenset({
        PaymentStatus.REFUND_PENDING.value,
        PaymentStatus.REFUNDED.value,
    }),
    PaymentStatus.FAILED.value: frozenset({PaymentStatus.PENDING.value}),  # 允许重试
    PaymentStatus.REFUND_PENDING.value: frozenset({
        PaymentStatus.REFUNDED.value,
        PaymentStatus.REFUND_FAILED.value,
    }),
    PaymentStatus.REFUND_FAILED.value: frozenset({PaymentStatus.REFUND_PENDING.value}),  # 允许重试
    PaymentStatus.REFUNDED.value: frozenset(),  # 终态
}


PAY_LATER_TRANSITIONS: dict[PayLaterStatus, frozenset[PayLaterStatus]] = {
    PayLaterStatus.CARD_SETUP_PENDING: frozenset({
        PayLaterStatus.CARD_SETUP_COMPLETE,
        PayLaterStatus.DECLINED,
        PayLaterStatus.EXPIRED,
    }),
    PayLaterStatus.CARD_SETUP_COMPLETE: frozenset({
        PayLaterStatus.APPROVED,
        PayLaterStatus.CHARGE_ATTEMPTED,
        PayLaterStatus.DECLINED,
        PayLaterStatus.EXPIRED,
    }),
    PayLaterStatus.APPROVED: frozenset({PayLaterStatus.CHARGE_ATTEMPTED}),
    PayLaterStatus.CHARGE_ATTEMPTED: frozenset({
        PayLaterStatus.CHARGED,
        PayLaterStatus.CHARGE_REQUIRES_ACTION,
        PayLaterStatus.CHARGE_FAILED,
    }),
    PayLaterStatus.CHARGE_REQUIRES_ACTION: frozenset({
        PayLaterStatus.CHARGED,
        PayLaterStatus.CHARGE_FAILED,
    }),
    PayLaterStatus.CHARGED: frozenset(),
    PayLaterStatus.CHARGE_FAILED: frozenset(),
    PayLaterStatus.DECLINED: frozenset(),
    PayLaterStatus.EXPIRED: frozenset(),
}


# 借用人可见的状态文案（与状态一一对应）
PAY_LATER_STATUS_DISPLAY: dict[PayLaterStatus, str] = {
    PayLaterStatus.CARD_SETUP_PENDING: "Waiting for card details",
    PayLaterStatus.CARD_SETUP_COMPLETE: "Card saved - awaiting review",
    PayLaterStatus.APPROVED: "Approved - deposit will be charged shortly",
    PayLaterStatus.CHARGE_ATTEMPTED: "Processing your deposit",
    PayLaterStatus.CHARGED: "Deposit charged successfully",
    PayLaterStatus.CHARGE_REQUIRES_ACTION: "Action required - please verify your card",
    PayLaterStatus.CHARGE_FAILED: "Charge failed - please contact the location",
    PayLaterStatus.DECLINED: "Request declined",
    PayLaterStatus.EXPIRED: "Link expired",
}


def _value(state) -> str:
    return state.value if hasattr(state, "value") else str(state)


def is_valid_payment_state_transition(current, target) -> TransitionCheck:
    current_value = _value(current)
    target_value = _value(target)
    allowed = PAYMENT_TRANSITIONS.get(current_value)
    if allowed is None:
        return TransitionCheck(False, f"Unknown current payment state: {current_value}")
    if target_value not in allowed:
        return TransitionCheck(
            False, f"Invalid payment state transition: {current_value} -> {target_value}"
        )
    return TransitionCheck(True)


def is_valid_transaction_state_transition(is_returned: bool, marking_as_returned: bool) -> TransitionCheck:
    """交易“归还”维度：只允许 active -> returned"""
    if is_returned and marking_as_returned:
        return TransitionCheck(False, "Transaction is already marked as returned")
    if is_returned and not marking_as_returned:
        return TransitionCheck(False, "Cannot change returned status back to active")
    if not is_returned and not marking_as_returned:
        return TransitionCheck(False, "Transaction is already active")
    return TransitionCheck(True)


def is_valid_pay_later_transition(current: Optional[PayLaterStatus], target: PayLaterStatus) -> TransitionCheck:
    if current is None:
        return TransitionCheck(False, "Transaction is not a pay-later transaction")
    allowed = PAY_LATER_TRANSITIONS.get(current)
    if allowed is None:
        return TransitionCheck(False, f"Unknown pay-later state: {_value(current)}")
    if target not in allowed:
        return TransitionCheck(
            False, f"Invalid pay-later transition: {_value(current)} -> {_value(target)}"
        )
    return TransitionCheck(True)


def can_process_refund(transaction: Transaction, payments: Iterable[Payment]) -> TransitionCheck:
    """
    退款资格校验，按顺序返回第一个不满足条件的原因：
    1. 交易尚未归还
    2. 至少存在一笔 completed 支付
    3. 不存在进行中或已完成的退款（refund_failed 除外）
    """
    payments = list(payments)
    if transaction.is_returned:
        return TransitionCheck(False, f"Transaction {transaction.id} is already marked as returned")

    if not any(_value(p.status) == PaymentStatus.COMPLETED.value for p in payments):
        return TransitionCheck(False, f"Transaction {transaction.id} has no completed payment to refund")

    for p in payments:
        status = _value(p.status)
        if "refund" in status and status != PaymentStatus.REFUND_FAILED.value:
            return TransitionCheck(
                False,
                f"Transaction {transaction.id} already has a refund in progress (status: {status})",
            )
    return TransitionCheck(True)


def is_valid_refund_amount(refund_amount: int, deposit_amount: int) -> TransitionCheck:
    if refund_amount < 0:
        return TransitionCheck(False, "Refund amount cannot be negative")
    if refund_amount > deposit_amount:
        return TransitionCheck(
            False, f"Refund amount ({refund_amount}) cannot exceed deposit amount ({deposit_amount})"
        )
    return TransitionCheck(True)


def calculate_refund_amount(deposit_amount: int, condition: ItemCondition | str | None = None) -> int:
    """按物品状况计算退款金额（分）：good/未指定全额，damaged 半额（向下取整），missing 为 0"""
    if condition is None:
        return deposit_amount
    condition_value = _value(condition)
    if condition_value == ItemCondition.DAMAGED.value:
        return deposit_amount // 2
    if condition_value == ItemCondition.MISSING.value:
        return 0
    return deposit_amount


def validate_refund_workflow(transaction: Transaction, payments: Iterable[Payment]) -> WorkflowCheck:
    """汇总所有问题，供运营排查使用"""
    errors: list[str] = []
    check = can_process_refund(transaction, payments)
    if not check.valid and check.reason:
        errors.append(check.reason)
    if transaction.deposit_amount <= 0:
        errors.append(f"Invalid deposit amount: {transaction.deposit_amount}")
    return WorkflowCheck(valid=not errors, errors=errors)


def pay_later_display_text(status: Optional[PayLaterStatus]) -> str:
    if status is None:
        return "Unknown"
    return PAY_LATER_STATUS_DISPLAY[status]
