"""
Base payment client implementing shared concerns: threading, retry, logging.

Concrete providers should subclass and implement provider-specific logic.
Blocking SDK calls run in a worker thread; only calls carrying an
idempotency key are retried, and only on recoverable errors.
"""
from __future__ import annotations

import functools
from typing import Any, Callable, Optional

import anyio
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential, retry_if_exception_type

from core.logging_config import get_logger
from application.dtos.payments import (
    CreateCustomer,
    CreatePaymentIntent,
    CreateSetupIntent,
    GatewayCustomer,
    PaymentIntent,
    RefundRequest,
    RefundResult,
    SetupIntent,
    WebhookEvent,
)
from application.ports.payment_gateway import PaymentGateway
from infrastructure.external.payments.exceptions import PaymentRecoverableError


logger = get_logger(__name__)


class BasePaymentClient(PaymentGateway):
    provider: str = "base"
    publishable_key: Optional[str] = None

    def __init__(self, *, retry: Optional[dict[str, Any]] = None) -> None:
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    def _translate_error(self, exc: Exception) -> Exception:
        """Map an SDK exception onto the payment exception hierarchy."""
        return exc

    async def _call(self, fn: Callable[..., Any], *args: Any, idempotency_key: Optional[str] = None, **kwargs: Any):
        """Run a blocking SDK call off the event loop with translated errors."""
        if idempotency_key is not None:
            kwargs["idempotency_key"] = idempotency_key

        async def _once():
            try:
                return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))
            except Exception as exc:
                translated = self._translate_error(exc)
                if translated is exc:
                    raise
                raise translated from exc

        if idempotency_key is None:
            return await _once()
        return await self._retry(_once)

    async def _retry(self, fn: Callable[[], Any]):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception_type(PaymentRecoverableError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self._log("payment_provider_retry", attempt=attempt.retry_state.attempt_number)
                return await fn()

    # Default implementations raise to force override where needed
    async def create_customer(self, req: CreateCustomer) -> GatewayCustomer:  # type: ignore[override]
        raise NotImplementedError

    async def create_setup_intent(self, req: CreateSetupIntent) -> SetupIntent:  # type: ignore[override]
        raise NotImplementedError

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent:  # type: ignore[override]
        raise NotImplementedError

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:  # type: ignore[override]
        raise NotImplementedError

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        raise NotImplementedError

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:  # type: ignore[override]
        raise NotImplementedError

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        raise NotImplementedError

    # Helpers
    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
