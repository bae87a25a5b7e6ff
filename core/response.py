"""
统一响应信封 {code, message, data, error}

金额字段由各 DTO 自行决定单位（分或美元），这里只负责外层结构与时间格式。
"""
from datetime import datetime, timezone
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_serializer

from shared.codes import BusinessCode


T = TypeVar("T")


def utc_z(ts: datetime) -> str:
    """UTC ISO8601，以 Z 结尾；无时区的时间按 UTC 处理（SQLite 读回即为此类）"""
    aware = ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)
    return aware.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ErrorDetail(BaseModel):
    type: str
    details: Optional[dict] = None
    field: Optional[str] = None
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_serializer("timestamp")
    def _timestamp(self, timestamp: datetime) -> str:
        return utc_z(timestamp)


class Response(BaseModel, Generic[T]):
    code: int
    message: str
    data: Optional[T] = None
    error: Optional[ErrorDetail] = None


def success_response(data: Any = None, message: str = "Success", code: int = BusinessCode.SUCCESS) -> Response:
    return Response(code=code, message=message, data=data)


def error_response(
    code: int,
    message: str,
    error_type: str = "BusinessError",
    details: Optional[dict] = None,
    field: Optional[str] = None,
    request_id: Optional[str] = None,
) -> Response:
    """
    构造错误响应

    业务异常的 details（如 transaction_id、provider_code）原样透出，便于前台定位。
    """
    return Response(
        code=code,
        message=message,
        error=ErrorDetail(type=error_type, details=details, field=field, request_id=request_id),
    )
