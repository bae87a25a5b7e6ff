"""
访问日志中间件

每个请求记录一条完成日志（状态码、耗时）。魔法链接令牌、卡片 client_secret
与借用人联系方式在写入日志前脱敏；网关回调原文只用于验签，从不记录。
"""
import json
import time
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from core.config import settings
from core.logging_config import get_logger


logger = get_logger(__name__)

SKIP_PATHS = frozenset({"/health", "/docs", "/redoc", "/openapi.json"})
WEBHOOK_PREFIX = "/api/v1/webhooks/"

# 整体替换
SECRET_FIELDS = frozenset({"token", "raw_token", "client_secret", "public_status_url", "password", "secret"})
# 保留首尾字符，便于人工核对
CONTACT_FIELDS = frozenset({"borrower_email", "borrower_phone"})


def mask_contact(value: Any) -> Any:
    if not isinstance(value, str) or len(value) <= 4:
        return "***" if value else value
    return f"{value[:2]}***{value[-2:]}"


def redact(data: Any) -> Any:
    """递归脱敏 dict/list 中的敏感字段"""
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in SECRET_FIELDS:
                cleaned[key] = "***"
            elif lowered in CONTACT_FIELDS:
                cleaned[key] = mask_contact(value)
            else:
                cleaned[key] = redact(value)
        return cleaned
    if isinstance(data, list):
        return [redact(item) for item in data]
    return data


class LoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.log_body_by_default: bool = settings.LOG_REQUEST_BODY_ENABLE_BY_DEFAULT
        self.max_body_bytes: int = settings.LOG_REQUEST_BODY_MAX_BYTES

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in SKIP_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        fields: dict[str, Any] = {}
        if request.query_params:
            fields["query_params"] = redact(dict(request.query_params))
        if request.method in ("POST", "PUT", "PATCH") and self._should_log_body(request):
            body = await self._json_body(request)
            if body is not None:
                fields["body"] = body

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request_failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 1),
                error_type=type(exc).__name__,
                exc_info=True,
                **fields,
            )
            raise

        duration = time.perf_counter() - started
        response.headers["X-Process-Time"] = f"{duration:.3f}"
        status_code = response.status_code
        if status_code >= 500:
            log = logger.error
        elif status_code >= 400:
            log = logger.warning
        else:
            log = logger.info
        log("request_completed", status_code=status_code, duration_ms=round(duration * 1000, 1), **fields)
        return response

    def _should_log_body(self, request: Request) -> bool:
        if request.url.path.startswith(WEBHOOK_PREFIX):
            return False
        # X-Log-Body: true/false 可逐请求覆盖
        header = (request.headers.get("X-Log-Body") or "").lower()
        if header in {"true", "1", "yes"}:
            return True
        if header in {"false", "0", "no"}:
            return False
        return bool(self.log_body_by_default and settings.DEBUG)

    async def _json_body(self, request: Request) -> Any:
        if "application/json" not in request.headers.get("content-type", "").lower():
            return None
        raw = (await request.body())[: self.max_body_bytes]
        if not raw:
            return None
        try:
            return redact(json.loads(raw))
        except ValueError:
            return {"truncated": True, "bytes": len(raw)}
