"""
Exceptions for payment providers mapped to unified BusinessException variants.
"""
from __future__ import annotations

from typing import Optional
from domain.common.exceptions import BusinessException
from shared.codes.payment_codes import PaymentCode


def _details(provider: str, provider_code: str | None, extra: Optional[dict]) -> dict:
    full_details = {"provider": provider, "provider_code": provider_code}
    if extra:
        full_details.update(extra)
    return full_details


class PaymentProviderError(BusinessException):
    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.PROVIDER_ERROR,
            message=message,
            error_type="PaymentProviderError",
            details=_details(provider, provider_code, details),
        )


class PaymentCardDeclinedError(BusinessException):
    """卡被拒付（不可重试）"""

    def __init__(self, message: str, *, provider: str, provider_code: str | None = None, details: Optional[dict] = None):
        super().__init__(
            code=PaymentCode.CARD_DECLINED,
            message=message,
            error_type="PaymentCardDeclinedError",
            details=_details(provider, provider_code, details),
        )


class PaymentRecoverableError(BusinessException):
    """瞬时故障（网络、限流、超时），在有幂等键时可安全重试"""

    def __init__(
        self,
        message: str,
        *,
        provider: str,
        provider_code: str | None = None,
        details: Optional[dict] = None,
        code: PaymentCode = PaymentCode.PROVIDER_RECOVERABLE,
    ):
        super().__init__(
            code=code,
            message=message,
            error_type="PaymentRecoverableError",
            details=_details(provider, provider_code, details),
        )


class PaymentSignatureError(BusinessException):
    def __init__(self, message: str, *, provider: str, details: Optional[dict] = None):
        full_details = {"provider": provider}
        if details:
            full_details.update(details)
        super().__init__(
            code=PaymentCode.SIGNATURE_ERROR,
            message=message,
            error_type="PaymentSignatureError",
            details=full_details,
        )
