"""领域层业务异常定义，供领域与基础设施使用。

核心（core）层仅负责全局映射与异常处理，尽量避免领域层反向依赖核心层。

分类：
- 授权类（FORBIDDEN）：在任何变更之前抛出，不重试；
- 校验类（参数/状态机/退款资格/并发）：不重试；
- 未找到类；
- 基础设施类：重试耗尽后以 ItemReturnFailedException 向上抛出。
"""
from __future__ import annotations

from typing import Optional
from shared.codes import BusinessCode


class BusinessException(Exception):
    """业务异常基类"""

    def __init__(
        self,
        code: int,
        message: str,
        error_type: str = "BusinessError",
        details: Optional[dict] = None,
        field: Optional[str] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.error_type = error_type
        self.details = details
        self.field = field
        super().__init__(self.message)


class DomainValidationException(BusinessException):
    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        details: dict | None = None,
    ):
        super().__init__(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=message,
            error_type="DomainValidationError",
            details=details,
            field=field,
        )


class AuthorizationException(BusinessException):
    def __init__(self, message: str = "Not authorized", *, details: dict | None = None):
        super().__init__(
            code=BusinessCode.FORBIDDEN,
            message=message,
            error_type="AuthorizationError",
            details=details,
        )


class LocationNotFoundException(BusinessException):
    def __init__(self, location_id: Optional[int] = None):
        details = {"location_id": location_id} if location_id is not None else None
        super().__init__(
            code=BusinessCode.LOCATION_NOT_FOUND,
            message="Location not found",
            error_type="LocationNotFound",
            details=details,
        )


class TransactionNotFoundException(BusinessException):
    def __init__(self, transaction_id: Optional[int] = None):
        details = {"transaction_id": transaction_id} if transaction_id is not None else None
        super().__init__(
            code=BusinessCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
            error_type="TransactionNotFound",
            details=details,
        )


class PaymentNotFoundException(BusinessException):
    def __init__(self, payment_id: Optional[int] = None):
        details = {"payment_id": payment_id} if payment_id is not None else None
        super().__init__(
            code=BusinessCode.PAYMENT_NOT_FOUND,
            message="Payment not found",
            error_type="PaymentNotFound",
            details=details,
        )


class InvalidStateTransitionException(BusinessException):
    def __init__(self, reason: str, *, entity: str, current: str | None, target: str | None):
        super().__init__(
            code=BusinessCode.INVALID_STATE_TRANSITION,
            message=reason,
            error_type="InvalidStateTransition",
            details={"entity": entity, "current": current, "target": target},
        )


class RefundNotAllowedException(BusinessException):
    def __init__(self, reason: str, *, transaction_id: Optional[int] = None, problems: Optional[list[str]] = None):
        details = {}
        if transaction_id is not None:
            details["transaction_id"] = transaction_id
        if problems:
            details["problems"] = problems
        details = details or None
        super().__init__(
            code=BusinessCode.REFUND_NOT_ALLOWED,
            message=reason,
            error_type="RefundNotAllowed",
            details=details,
        )


class PaymentInProgressException(BusinessException):
    def __init__(self, transaction_id: int, payment_id: Optional[int] = None):
        super().__init__(
            code=BusinessCode.PAYMENT_IN_PROGRESS,
            message="Another payment is already in progress for this transaction",
            error_type="PaymentInProgress",
            details={"transaction_id": transaction_id, "payment_id": payment_id},
        )


class ConcurrentPaymentException(BusinessException):
    """存储层唯一约束冲突：同一交易已有活动中的支付"""

    def __init__(self, transaction_id: Optional[int] = None):
        details = {"transaction_id": transaction_id} if transaction_id is not None else None
        super().__init__(
            code=BusinessCode.CONCURRENT_PAYMENT,
            message="Concurrent payment detected for this transaction",
            error_type="ConcurrentPayment",
            details=details,
        )


class RefundFailedException(BusinessException):
    def __init__(self, message: str, *, payment_id: Optional[int] = None, provider_code: str | None = None):
        super().__init__(
            code=BusinessCode.REFUND_FAILED,
            message=message,
            error_type="RefundFailed",
            details={"payment_id": payment_id, "provider_code": provider_code},
        )


class ItemReturnFailedException(BusinessException):
    def __init__(self, transaction_id: int, attempts: int, reason: str):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"Failed to process item return after {attempts} attempts: {reason}",
            error_type="ItemReturnFailed",
            details={"transaction_id": transaction_id, "attempts": attempts},
        )
