"""
Retry executor built on tenacity.

``with_retry`` never raises: it returns a ``RetryResult`` and the caller
decides whether exhaustion is fatal. Business rejections (authorization,
validation, state conflicts) are not retried; callers are expected to run
those checks before entering the retried region.
"""
from __future__ import annotations

import asyncio
import traceback
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from application.ports.retry_sink import RetryFailureRecord, RetryFailureSink
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


logger = get_logger(__name__)

T = TypeVar("T")

# Only these business codes represent transient faults worth retrying
RETRYABLE_CODES = frozenset({
    BusinessCode.DATABASE_ERROR,
    BusinessCode.NETWORK_ERROR,
    BusinessCode.SERVICE_UNAVAILABLE,
    PaymentCode.PROVIDER_RECOVERABLE,
    PaymentCode.TIMEOUT,
    PaymentCode.RATE_LIMITED,
})


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, BusinessException):
        return error.code in RETRYABLE_CODES
    return isinstance(error, Exception)


@dataclass
class RetryOptions:
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0
    on_retry: Optional[Callable[[int, BaseException], None]] = None


@dataclass
class RetryResult(Generic[T]):
    success: bool
    attempts: int
    data: Optional[T] = None
    error: Optional[BaseException] = None


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryResult[T]:
    """Run ``operation`` with exponential backoff.

    The wait before retry n is ``min(initial * multiplier ** (n - 1), max)``;
    ``max_retries=3`` allows at most four invocations in total.
    """
    opts = options or RetryOptions()
    attempts = 0

    def _before_sleep(retry_state) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_retries=opts.max_retries,
            error=str(error),
        )
        if opts.on_retry is not None:
            opts.on_retry(retry_state.attempt_number, error)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(opts.max_retries + 1),
        wait=wait_exponential(
            multiplier=opts.initial_delay_ms / 1000.0,
            exp_base=opts.backoff_multiplier,
            max=opts.max_delay_ms / 1000.0,
        ),
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep,
        sleep=sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                attempts += 1
                data = await operation()
            return RetryResult(success=True, attempts=attempts, data=data)
    except Exception as exc:
        logger.warning(
            "retry_exhausted" if is_retryable(exc) else "retry_aborted_non_retryable",
            attempts=attempts,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return RetryResult(success=False, attempts=attempts, error=exc)
    return RetryResult(success=False, attempts=attempts)


async def log_retry_failure(
    sink: RetryFailureSink,
    operation: str,
    context: dict[str, Any],
    error: BaseException,
) -> RetryFailureRecord:
    """Persist a structured record of an exhausted operation for reprocessing."""
    record = RetryFailureRecord(
        operation=operation,
        context=context,
        error_name=type(error).__name__,
        error_message=str(error),
        error_stack="".join(traceback.format_exception(type(error), error, error.__traceback__)),
        timestamp=datetime.now(timezone.utc).isoformat(),
        retryable=is_retryable(error),
    )
    logger.error(
        "retry_failure_logged",
        operation=operation,
        context=context,
        error_name=record.error_name,
        error_message=record.error_message,
    )
    try:
        await sink.append(record)
    except OSError as exc:
        logger.critical("retry_failure_sink_unavailable", operation=operation, error=str(exc), exc_info=True)
    return record
