"""
押金与支付API路由 - FastAPI表现层
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import (
    effective_role,
    get_current_staff,
    get_deposit_service,
)
from application.dtos.lending import (
    BulkConfirmRequest,
    ConfirmPaymentRequest,
    DepositRequest,
    PaymentDTO,
    RefundDepositRequest,
    TransactionDTO,
)
from application.services.deposit_service import DepositService
from core.response import success_response
from domain.common.exceptions import AuthorizationException
from domain.lending.authorization import (
    AuthorizationContext,
    authorization_error_message,
    is_authorized_for_location,
)
from domain.lending.entity import LendingUser

router = APIRouter(tags=["押金"])


def _resolve_location(user: LendingUser, location_id: Optional[int]) -> int:
    """运营者默认使用所属地点；显式指定其他地点时拒绝"""
    target = location_id if location_id is not None else user.location_id
    ctx = AuthorizationContext(
        role=effective_role(user),
        user_id=user.id,
        user_location_id=user.location_id,
        target_location_id=target,
        is_admin=user.is_admin,
    )
    if target is None or not is_authorized_for_location(ctx):
        raise AuthorizationException(authorization_error_message("location_access", effective_role(user)))
    return target


@router.post("/deposits", summary="创建押金交易")
async def create_deposit(
    payload: DepositRequest,
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    _resolve_location(user, payload.location_id)
    tx = await service.create_deposit_transaction(payload)
    return success_response(data=TransactionDTO.from_entity(tx).model_dump(mode="json"), message="Transaction created")


@router.post("/deposits/{transaction_id}/card", summary="发起卡支付")
async def initiate_card_payment(
    transaction_id: int,
    location_id: Optional[int] = Query(default=None),
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    target = _resolve_location(user, location_id)
    result = await service.initiate_card_payment(transaction_id, target)
    return success_response(data=result.model_dump(mode="json"), message="Card payment initiated")


@router.post("/deposits/{transaction_id}/cash", summary="发起现金支付")
async def initiate_cash_payment(
    transaction_id: int,
    location_id: Optional[int] = Query(default=None),
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    target = _resolve_location(user, location_id)
    result = await service.initiate_cash_payment(transaction_id, target)
    return success_response(data=result.model_dump(mode="json"), message="Cash payment awaiting confirmation")


@router.post("/deposits/{transaction_id}/refund", summary="退还押金")
async def refund_deposit(
    transaction_id: int,
    payload: RefundDepositRequest,
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    payment = await service.refund_deposit(transaction_id, user.id, effective_role(user), payload.amount_minor())
    return success_response(data=PaymentDTO.from_entity(payment).model_dump(mode="json"), message="Deposit refunded")


@router.post("/payments/bulk-confirm", summary="批量确认支付")
async def bulk_confirm_payments(
    payload: BulkConfirmRequest,
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    report = await service.bulk_confirm_payments(
        payload.payment_ids,
        user.id,
        effective_role(user),
        confirmed=payload.confirmed,
        notes=payload.notes or "Bulk confirmation",
    )
    return success_response(data=report.model_dump(mode="json"), message="Bulk confirmation processed")


@router.post("/payments/{payment_id}/confirm", summary="确认支付")
async def confirm_payment(
    payment_id: int,
    payload: ConfirmPaymentRequest,
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    payment = await service.confirm_payment(payment_id, user.id, effective_role(user), payload.confirmed, payload.notes)
    return success_response(data=PaymentDTO.from_entity(payment).model_dump(mode="json"), message="Payment updated")


@router.get("/payments/pending", summary="待确认支付列表")
async def list_pending_confirmations(
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    payments = await service.list_pending_confirmations(user.id, effective_role(user))
    return success_response(data=[PaymentDTO.from_entity(p).model_dump(mode="json") for p in payments])


@router.get("/locations/{location_id}/payments", summary="地点支付列表")
async def list_location_payments(
    location_id: int,
    user: LendingUser = Depends(get_current_staff),
    service: DepositService = Depends(get_deposit_service),
):
    payments = await service.list_payments_by_location(location_id, user.id, effective_role(user))
    return success_response(data=[PaymentDTO.from_entity(p).model_dump(mode="json") for p in payments])
