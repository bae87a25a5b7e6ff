"""
归还与退款报表API路由 - FastAPI表现层
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import effective_role, get_current_staff, get_item_return_service
from application.dtos.lending import BulkReturnRequest, ReturnData
from application.services.item_return_service import ItemReturnService
from core.response import success_response
from domain.lending.entity import LendingUser

router = APIRouter(tags=["归还"])


@router.post("/deposits/{transaction_id}/return", summary="处理物品归还")
async def process_item_return(
    transaction_id: int,
    payload: ReturnData,
    user: LendingUser = Depends(get_current_staff),
    service: ItemReturnService = Depends(get_item_return_service),
):
    """
    标记归还并登记待退款记录

    - **condition**: good / damaged / missing，决定默认退款金额
    - **refund_amount**: 显式退款金额（美元），覆盖默认值
    """
    result = await service.process_item_return(
        transaction_id,
        payload,
        effective_role(user),
        user.id,
        operator_location_id=user.location_id,
    )
    return success_response(data=result.model_dump(mode="json"), message="Item returned")


@router.post("/returns/bulk", summary="批量归还")
async def process_bulk_returns(
    payload: BulkReturnRequest,
    user: LendingUser = Depends(get_current_staff),
    service: ItemReturnService = Depends(get_item_return_service),
):
    report = await service.process_bulk_returns(payload.items, effective_role(user), user.id, is_admin=user.is_admin)
    return success_response(data=report.model_dump(mode="json"), message="Bulk return processed")


@router.get("/returns/report", summary="退款报表")
async def refund_report(
    location_id: Optional[int] = Query(default=None),
    start: Optional[datetime] = Query(default=None),
    end: Optional[datetime] = Query(default=None),
    user: LendingUser = Depends(get_current_staff),
    service: ItemReturnService = Depends(get_item_return_service),
):
    report = await service.generate_refund_report(
        user.id,
        effective_role(user),
        location_id=location_id,
        start=start,
        end=end,
        operator_location_id=user.location_id,
    )
    return success_response(data=report.model_dump(mode="json"))
