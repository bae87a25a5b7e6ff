"""
请求上下文中间件

生成或透传 X-Request-ID，并把路径中的交易/支付/地点ID绑定到 structlog 上下文，
同一笔交易在路由、服务、仓储中的日志可以按 transaction_id 串联。
"""
import re
import uuid
from contextvars import ContextVar
from typing import Optional

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware


REQUEST_ID_HEADER = "X-Request-ID"

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)

# /deposits/{id}、/pay-later/{id}、/status/{id} 均以交易ID寻址
_PATH_IDS = (
    (re.compile(r"/(?:deposits|pay-later|status)/(\d+)"), "transaction_id"),
    (re.compile(r"/payments/(\d+)"), "payment_id"),
    (re.compile(r"/locations/(\d+)"), "location_id"),
)


def lending_ids_from_path(path: str) -> dict:
    found = {}
    for pattern, key in _PATH_IDS:
        match = pattern.search(path)
        if match:
            found[key] = int(match.group(1))
    return found


def resolve_client_ip(request: Request) -> str:
    """优先取代理头中的原始客户端地址"""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or (request.client.host if request.client else "unknown")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id
        request_id_var.set(request_id)
        user_id_var.set(None)

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            client_ip=resolve_client_ip(request),
            method=request.method,
            path=request.url.path,
            **lending_ids_from_path(request.url.path),
        )

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def get_request_id() -> Optional[str]:
    return request_id_var.get()
