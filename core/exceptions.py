"""
自定义异常映射与全局异常处理器
"""
from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
import traceback
import uuid
from starlette import status as http_status

from .response import error_response
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException


_HTTP_STATUS_BY_CODE = {
    BusinessCode.PARAM_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_MISSING: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_TYPE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.PARAM_VALIDATION_ERROR: http_status.HTTP_422_UNPROCESSABLE_ENTITY,

    BusinessCode.BUSINESS_ERROR: http_status.HTTP_400_BAD_REQUEST,
    BusinessCode.USER_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.TOKEN_INVALID: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.TOKEN_EXPIRED: http_status.HTTP_401_UNAUTHORIZED,

    BusinessCode.LOCATION_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.TRANSACTION_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.PAYMENT_NOT_FOUND: http_status.HTTP_404_NOT_FOUND,
    BusinessCode.INVALID_STATE_TRANSITION: http_status.HTTP_409_CONFLICT,
    BusinessCode.REFUND_NOT_ALLOWED: http_status.HTTP_409_CONFLICT,
    BusinessCode.PAYMENT_IN_PROGRESS: http_status.HTTP_409_CONFLICT,
    BusinessCode.CONCURRENT_PAYMENT: http_status.HTTP_409_CONFLICT,
    BusinessCode.REFUND_FAILED: http_status.HTTP_502_BAD_GATEWAY,

    BusinessCode.PERMISSION_ERROR: http_status.HTTP_403_FORBIDDEN,
    BusinessCode.UNAUTHORIZED: http_status.HTTP_401_UNAUTHORIZED,
    BusinessCode.FORBIDDEN: http_status.HTTP_403_FORBIDDEN,

    BusinessCode.SYSTEM_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.DATABASE_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.NETWORK_ERROR: http_status.HTTP_500_INTERNAL_SERVER_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
}


_HTTP_STATUS_BY_PAYMENT_CODE = {
    PaymentCode.PROVIDER_ERROR: http_status.HTTP_502_BAD_GATEWAY,
    PaymentCode.PROVIDER_RECOVERABLE: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.SIGNATURE_ERROR: http_status.HTTP_400_BAD_REQUEST,
    PaymentCode.TIMEOUT: http_status.HTTP_504_GATEWAY_TIMEOUT,
    PaymentCode.RATE_LIMITED: http_status.HTTP_503_SERVICE_UNAVAILABLE,
    PaymentCode.CARD_DECLINED: http_status.HTTP_402_PAYMENT_REQUIRED,
}


def business_code_to_http_status(code: int) -> int:
    """根据业务码映射HTTP状态码（默认400）。"""
    try:
        bc = BusinessCode(code)
    except ValueError:
        try:
            pc = PaymentCode(code)
        except ValueError:
            return http_status.HTTP_400_BAD_REQUEST
        return _HTTP_STATUS_BY_PAYMENT_CODE.get(pc, http_status.HTTP_400_BAD_REQUEST)
    return _HTTP_STATUS_BY_CODE.get(bc, http_status.HTTP_400_BAD_REQUEST)


def _request_id(request: Request) -> str:
    return getattr(getattr(request, "state", object()), "request_id", None) or str(uuid.uuid4())


def register_exception_handlers(app: FastAPI):
    """
    注册全局异常处理器

    Args:
        app: FastAPI应用实例
    """

    logger = get_logger(__name__)

    @app.exception_handler(BusinessException)
    async def business_exception_handler(request: Request, exc: BusinessException):
        """业务拒绝与网关故障"""
        status_code = business_code_to_http_status(exc.code)
        # 4xx 为预期内的拒绝；5xx 表示网关或重试耗尽，需要人工跟进
        log = logger.error if status_code >= 500 else logger.info
        log(
            "business_exception",
            error_type=exc.error_type,
            code=int(exc.code),
            status_code=status_code,
            message=exc.message,
            details=exc.details,
        )
        response = error_response(
            code=exc.code,
            message=exc.message,
            error_type=exc.error_type,
            details=exc.details,
            field=exc.field,
            request_id=_request_id(request),
        )
        headers = {"WWW-Authenticate": "Bearer"} if status_code == http_status.HTTP_401_UNAUTHORIZED else None
        return JSONResponse(status_code=status_code, content=response.model_dump(mode='json'), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """处理参数验证异常"""
        errors = exc.errors()

        # 提取第一个错误的详细信息
        first_error = errors[0] if errors else {}
        field = ".".join(str(loc) for loc in first_error.get("loc", [])[1:])

        response = error_response(
            code=BusinessCode.PARAM_VALIDATION_ERROR,
            message=f"Validation failed: {first_error.get('msg', 'unknown')}",
            error_type="ValidationError",
            details={"errors": jsonable_encoder(errors)},
            field=field,
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=http_status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=response.model_dump(mode='json')
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """处理HTTP异常"""
        code_mapping = {
            401: BusinessCode.UNAUTHORIZED,
            403: BusinessCode.FORBIDDEN,
            404: BusinessCode.NOT_FOUND,
            500: BusinessCode.SYSTEM_ERROR,
            503: BusinessCode.SERVICE_UNAVAILABLE
        }
        code = code_mapping.get(exc.status_code, BusinessCode.SYSTEM_ERROR)

        response = error_response(
            code=code,
            message=str(exc.detail),
            error_type="HTTPError",
            details={"status_code": exc.status_code},
            request_id=_request_id(request),
        )
        return JSONResponse(
            status_code=exc.status_code,
            content=response.model_dump(mode='json'),
            headers=getattr(exc, "headers", None)
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """处理所有未捕获的异常"""
        request_id = _request_id(request)

        # 在开发环境可以返回详细错误信息
        details = None
        if app.debug:
            details = {
                "exception": str(exc),
                "traceback": traceback.format_exc()
            }

        response = error_response(
            code=BusinessCode.SYSTEM_ERROR,
            message="Internal server error",
            error_type="SystemError",
            details=details,
            request_id=request_id,
        )

        logger.error(
            "unhandled_exception",
            request_id=request_id,
            error=str(exc),
            exc_info=True,
        )

        return JSONResponse(
            status_code=http_status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=response.model_dump(mode='json')
        )
