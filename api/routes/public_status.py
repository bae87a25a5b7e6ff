"""
借用人公开状态页 - 魔法链接访问，无需登录
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api.dependencies import get_pay_later_service
from application.services.pay_later_service import PayLaterService
from core.response import success_response

router = APIRouter(tags=["公开状态"])


@router.get("/status/{transaction_id}", summary="借用人状态页")
async def public_status(
    transaction_id: int,
    token: Optional[str] = Query(default=None),
    service: PayLaterService = Depends(get_pay_later_service),
):
    view = await service.get_public_status(transaction_id, token)
    if view is None:
        # 令牌错误、过期或交易不存在时统一返回 404，避免泄露交易是否存在
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return success_response(data=view.model_dump(mode="json"))
