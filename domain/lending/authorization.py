"""
授权守卫 - 基于 (角色, 用户, 地点) 的纯函数判定

所有判定函数无副作用、从不抛异常；require_authorization 负责把否定结果转换为异常。
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from domain.common.exceptions import AuthorizationException
from domain.lending.entity import UserRole


@dataclass(frozen=True)
class AuthorizationContext:
    role: UserRole
    user_id: Optional[int] = None
    user_location_id: Optional[int] = None
    target_location_id: Optional[int] = None
    is_admin: bool = False

    @property
    def is_administrator(self) -> bool:
        return self.is_admin or self.role == UserRole.ADMIN


def is_authorized_for_location(context: AuthorizationContext) -> bool:
    if context.is_administrator:
        return True
    if context.role == UserRole.OPERATOR:
        if context.user_location_id is None:
            return False
        # 未指定目标地点时，只要求运营者已分配地点
        if context.target_location_id is None:
            return True
        return context.user_location_id == context.target_location_id
    return False


def can_process_refund(context: AuthorizationContext) -> bool:
    if context.is_administrator:
        return True
    if context.role == UserRole.OPERATOR:
        return is_authorized_for_location(context)
    return False


def can_perform_bulk_operations(context: AuthorizationContext) -> bool:
    return context.is_administrator


def can_access_transaction(transaction_location_id: int, context: AuthorizationContext) -> bool:
    if context.is_administrator:
        return True
    if context.role == UserRole.OPERATOR:
        if context.user_location_id is None:
            return False
        return context.user_location_id == transaction_location_id
    return False


def authorization_error_message(operation: str, role: UserRole | str) -> str:
    role_value = role.value if isinstance(role, UserRole) else str(role)
    if operation == "refund":
        return f"{role_value}s are not authorized to process refunds"
    if operation == "bulk_operation":
        return f"{role_value}s are not authorized to perform bulk operations"
    if operation == "location_access":
        return f"{role_value}s are not authorized to access this location"
    return f"{role_value}s are not authorized to perform this operation"


def require_authorization(authorized: bool, message: str = "Not authorized to perform this action") -> None:
    if not authorized:
        raise AuthorizationException(message)
