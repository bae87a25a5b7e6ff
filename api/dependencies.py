"""
API依赖项 - 认证、授权与服务装配
"""
from functools import lru_cache
from typing import Optional

import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from api.middleware.request_id import user_id_var
from application.ports.locks import TransactionLocker
from application.ports.payment_gateway import PaymentGateway
from application.ports.retry_sink import RetryFailureSink
from application.services.deposit_service import DepositService
from application.services.inventory_sync import InventorySyncService
from application.services.item_return_service import ItemReturnService
from application.services.pay_later_service import PayLaterService
from application.services.token_service import TokenService
from application.services.webhook_service import WebhookService
from core.settings import lending_settings
from domain.lending.entity import LendingUser, UserRole
from infrastructure.adapters.retry_failure_sink import JsonlRetryFailureSink
from infrastructure.cache import get_transaction_locker
from infrastructure.external.payments import get_payment_gateway
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

# HTTP Bearer for direct API calls
http_bearer = HTTPBearer(
    scheme_name="Bearer",
    description="JWT Bearer token authentication",
    auto_error=False,
)


async def get_token(
    bearer_token: Optional[HTTPAuthorizationCredentials] = Depends(http_bearer)
) -> str:
    """从Bearer token中提取token"""
    if bearer_token and bearer_token.credentials:
        return bearer_token.credentials

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="未提供认证凭据",
        headers={"WWW-Authenticate": "Bearer"},
    )


@lru_cache
def get_token_service() -> TokenService:
    return TokenService()


@lru_cache
def get_gateway() -> PaymentGateway:
    return get_payment_gateway()


def get_locker() -> TransactionLocker:
    return get_transaction_locker()


@lru_cache
def get_failure_sink() -> RetryFailureSink:
    return JsonlRetryFailureSink(lending_settings.retry_failure_log_path)


def get_uow_factory():
    return SQLAlchemyUnitOfWork


async def get_current_user(
    token: str = Depends(get_token),
    tokens: TokenService = Depends(get_token_service),
    uow_factory=Depends(get_uow_factory),
) -> LendingUser:
    """获取当前登录用户（角色与所属地点）"""
    user_id = tokens.verify_access_token(token)
    user = None
    if user_id is not None:
        async with uow_factory(readonly=True) as uow:
            user = await uow.users.get_by_id(user_id)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="无效的认证凭据",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user_id_var.set(str(user.id))
    structlog.contextvars.bind_contextvars(user_id=user.id, role=user.role.value)
    return user


async def get_current_staff(current_user: LendingUser = Depends(get_current_user)) -> LendingUser:
    """运营者或管理员"""
    if current_user.role == UserRole.BORROWER and not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="需要运营者或管理员权限",
        )
    return current_user


def effective_role(user: LendingUser) -> UserRole:
    return UserRole.ADMIN if user.is_admin else user.role


async def get_deposit_service(
    uow_factory=Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    locker: TransactionLocker = Depends(get_locker),
) -> DepositService:
    return DepositService(uow_factory=uow_factory, gateway=gateway, locker=locker)


async def get_pay_later_service(
    uow_factory=Depends(get_uow_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    locker: TransactionLocker = Depends(get_locker),
) -> PayLaterService:
    return PayLaterService(uow_factory=uow_factory, gateway=gateway, locker=locker)


async def get_item_return_service(
    uow_factory=Depends(get_uow_factory),
    locker: TransactionLocker = Depends(get_locker),
    sink: RetryFailureSink = Depends(get_failure_sink),
) -> ItemReturnService:
    return ItemReturnService(
        uow_factory=uow_factory,
        locker=locker,
        inventory=InventorySyncService(uow_factory),
        failure_sink=sink,
    )


async def get_webhook_service(
    gateway: PaymentGateway = Depends(get_gateway),
    deposits: DepositService = Depends(get_deposit_service),
    pay_later: PayLaterService = Depends(get_pay_later_service),
) -> WebhookService:
    return WebhookService(gateway=gateway, deposit_service=deposits, pay_later_service=pay_later)
