"""
延迟扣款API路由 - FastAPI表现层
"""
from typing import Optional

from fastapi import APIRouter, Depends

from api.dependencies import effective_role, get_current_staff, get_pay_later_service
from application.dtos.lending import CreatePayLaterRequest, DeclineRequest, TransactionDTO
from application.services.pay_later_service import PayLaterService
from core.response import success_response
from domain.common.exceptions import AuthorizationException
from domain.lending.authorization import authorization_error_message
from domain.lending.entity import LendingUser, UserRole

router = APIRouter(prefix="/pay-later", tags=["延迟扣款"])


def operator_scope(user: LendingUser) -> Optional[int]:
    """管理员不受地点限制；运营者必须已分配地点"""
    role = effective_role(user)
    if role == UserRole.ADMIN:
        return None
    if user.location_id is None:
        raise AuthorizationException(authorization_error_message("location_access", role))
    return user.location_id


@router.post("", summary="登记卡片（延迟扣款）")
async def create_pay_later(
    payload: CreatePayLaterRequest,
    service: PayLaterService = Depends(get_pay_later_service),
):
    """
    借用人自助登记卡片

    返回 SetupIntent 的 client_secret 与带魔法令牌的状态页链接，令牌只出现这一次。
    """
    result = await service.create_setup_intent(payload)
    return success_response(data=result.model_dump(mode="json"), message="Card setup started")


@router.post("/{transaction_id}/charge", summary="发起延迟扣款")
async def charge_pay_later(
    transaction_id: int,
    user: LendingUser = Depends(get_current_staff),
    service: PayLaterService = Depends(get_pay_later_service),
):
    result = await service.charge_transaction(
        transaction_id,
        operator_user_id=user.id,
        operator_location_id=operator_scope(user),
    )
    return success_response(data=result.model_dump(mode="json"), message=result.status.value)


@router.post("/{transaction_id}/decline", summary="拒绝延迟扣款")
async def decline_pay_later(
    transaction_id: int,
    payload: DeclineRequest,
    user: LendingUser = Depends(get_current_staff),
    service: PayLaterService = Depends(get_pay_later_service),
):
    tx = await service.decline_transaction(
        transaction_id,
        operator_user_id=user.id,
        operator_location_id=operator_scope(user),
        reason=payload.reason,
    )
    return success_response(data=TransactionDTO.from_entity(tx).model_dump(mode="json"), message="Declined")
