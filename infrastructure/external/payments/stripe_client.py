"""
Stripe adapter using the official stripe-python SDK.

Notes on SDK usage:
- Module-level helpers (`stripe.PaymentIntent.create` etc.) accept the
  `idempotency_key` kwarg. Webhook verification uses
  `stripe.Webhook.construct_event` with the `Stripe-Signature` header.
- Off-session charges that need step-up authentication raise a CardError
  with code `authentication_required`; that case is reported back as a
  `requires_action` intent instead of an error.
"""
from __future__ import annotations

import json
from typing import Any, Optional

import stripe

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
from infrastructure.external.payments.base import BasePaymentClient
from infrastructure.external.payments.exceptions import (
    PaymentCardDeclinedError,
    PaymentProviderError,
    PaymentRecoverableError,
    PaymentSignatureError,
)
from core.settings import PaymentSettings, payment_settings
from core.logging_config import get_logger
from shared.codes.payment_codes import PaymentCode


logger = get_logger(__name__)

STRIPE_REFUND_REASONS = frozenset({"duplicate", "fraudulent", "requested_by_customer"})


def _field(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


class StripeClient(BasePaymentClient):
    provider = "stripe"

    def __init__(self, settings: Optional[PaymentSettings] = None):
        cfg = settings or payment_settings
        super().__init__(retry={"max": cfg.retry.max, "base": cfg.retry.base_backoff})
        self._settings = cfg
        self.publishable_key = cfg.stripe.publishable_key
        if cfg.stripe.secret_key:
            # Configure module-level key for compatibility across SDK variants
            stripe.api_key = cfg.stripe.secret_key
        else:
            # 现金流程不依赖网关，未配置时仅在实际调用时报错
            logger.warning("stripe_secret_key_missing")

    async def _call(self, fn, *args, **kwargs):
        if not self._settings.stripe.secret_key:
            raise PaymentProviderError(
                "PAYMENT__STRIPE__SECRET_KEY not configured", provider=self.provider, provider_code="not_configured"
            )
        return await super()._call(fn, *args, **kwargs)

    def _translate_error(self, exc: Exception) -> Exception:
        if isinstance(exc, stripe.CardError):
            err = getattr(exc, "error", None)
            intent = _field(err, "payment_intent")
            return PaymentCardDeclinedError(
                getattr(exc, "user_message", None) or str(exc),
                provider=self.provider,
                provider_code=_field(err, "decline_code") or exc.code,
                details={
                    "stripe_code": exc.code,
                    "payment_intent_id": _field(intent, "id"),
                    "client_secret": _field(intent, "client_secret"),
                },
            )
        if isinstance(exc, stripe.RateLimitError):
            return PaymentRecoverableError(
                str(exc), provider=self.provider, provider_code=exc.code, code=PaymentCode.RATE_LIMITED
            )
        if isinstance(exc, stripe.APIConnectionError):
            return PaymentRecoverableError(
                str(exc), provider=self.provider, provider_code=exc.code, code=PaymentCode.TIMEOUT
            )
        if isinstance(exc, stripe.SignatureVerificationError):
            return PaymentSignatureError(str(exc), provider=self.provider)
        if isinstance(exc, stripe.StripeError):
            status = getattr(exc, "http_status", None) or 0
            if status >= 500:
                return PaymentRecoverableError(str(exc), provider=self.provider, provider_code=exc.code)
            return PaymentProviderError(str(exc), provider=self.provider, provider_code=exc.code)
        return PaymentProviderError(str(exc), provider=self.provider)

    def _to_intent(self, pi: Any) -> PaymentIntent:
        last_error = _field(pi, "last_payment_error")
        return PaymentIntent(
            intent_id=str(_field(pi, "id")),
            status=str(_field(pi, "status")),
            amount=_field(pi, "amount"),
            client_secret=_field(pi, "client_secret"),
            provider=self.provider,
            last_error_code=_field(last_error, "decline_code") or _field(last_error, "code"),
            last_error_message=_field(last_error, "message"),
        )

    async def create_customer(self, req: CreateCustomer) -> GatewayCustomer:  # type: ignore[override]
        params = {k: v for k, v in {"name": req.name, "email": req.email, "phone": req.phone}.items() if v}
        customer = await self._call(stripe.Customer.create, metadata=req.metadata, **params)
        self._log("stripe_customer_created", customer_id=_field(customer, "id"))
        return GatewayCustomer(customer_id=str(_field(customer, "id")), provider=self.provider)

    async def create_setup_intent(self, req: CreateSetupIntent) -> SetupIntent:  # type: ignore[override]
        si = await self._call(
            stripe.SetupIntent.create,
            customer=req.customer_id,
            usage=req.usage,
            payment_method_types=req.payment_method_types,
            metadata=req.metadata,
        )
        self._log("stripe_setup_intent_created", setup_intent_id=_field(si, "id"))
        return SetupIntent(
            setup_intent_id=str(_field(si, "id")),
            client_secret=_field(si, "client_secret"),
            status=str(_field(si, "status")),
            provider=self.provider,
        )

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent:  # type: ignore[override]
        params: dict[str, Any] = {
            "amount": req.amount,
            "currency": req.currency,
            "metadata": req.metadata,
        }
        if req.customer_id:
            params["customer"] = req.customer_id
        if req.payment_method_id:
            params["payment_method"] = req.payment_method_id
            params["payment_method_types"] = ["card"]
        else:
            params["automatic_payment_methods"] = {"enabled": True}
        if req.off_session:
            params["off_session"] = True
        if req.confirm:
            params["confirm"] = True

        try:
            pi = await self._call(stripe.PaymentIntent.create, idempotency_key=req.idempotency_key, **params)
        except PaymentCardDeclinedError as exc:
            details = exc.details or {}
            if details.get("stripe_code") == "authentication_required" and details.get("payment_intent_id"):
                self._log("stripe_payment_requires_action", payment_intent_id=details["payment_intent_id"])
                return PaymentIntent(
                    intent_id=details["payment_intent_id"],
                    status="requires_action",
                    amount=req.amount,
                    client_secret=details.get("client_secret"),
                    provider=self.provider,
                    last_error_code="authentication_required",
                    last_error_message=exc.message,
                )
            raise
        intent = self._to_intent(pi)
        self._log("stripe_payment_intent_created", payment_intent_id=intent.intent_id, status=intent.status)
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent:  # type: ignore[override]
        pi = await self._call(stripe.PaymentIntent.retrieve, intent_id)
        return self._to_intent(pi)

    async def refund(self, req: RefundRequest) -> RefundResult:  # type: ignore[override]
        params: dict[str, Any] = {
            "payment_intent": req.payment_intent_id,
            "amount": req.amount,
            "metadata": dict(req.metadata, reason=req.reason or ""),
        }
        if req.reason in STRIPE_REFUND_REASONS:
            params["reason"] = req.reason
        refund = await self._call(stripe.Refund.create, idempotency_key=req.idempotency_key, **params)
        self._log("stripe_refund_created", refund_id=_field(refund, "id"), payment_intent_id=req.payment_intent_id)
        return RefundResult(
            refund_id=str(_field(refund, "id")),
            status=str(_field(refund, "status") or ""),
            provider=self.provider,
            amount=_field(refund, "amount"),
        )

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None:  # type: ignore[override]
        await self._call(
            stripe.Customer.modify,
            customer_id,
            invoice_settings={"default_payment_method": payment_method_id},
        )

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent:  # type: ignore[override]
        secret = self._settings.stripe.webhook_secret
        if not secret:
            raise PaymentSignatureError("Missing PAYMENT__STRIPE__WEBHOOK_SECRET", provider=self.provider)
        sig = headers.get("Stripe-Signature") or headers.get("stripe-signature")
        if not sig:
            raise PaymentSignatureError("Missing Stripe-Signature header", provider=self.provider)
        try:
            event = stripe.Webhook.construct_event(
                payload=body,
                sig_header=sig,
                secret=secret,
                tolerance=self._settings.webhook.tolerance_seconds,
            )
        except (stripe.SignatureVerificationError, ValueError) as exc:
            raise PaymentSignatureError(str(exc), provider=self.provider) from exc
        # 签名已验证，数据直接取自原始负载，保证是普通 dict
        payload = json.loads(body)
        return WebhookEvent(
            id=str(_field(event, "id")),
            type=str(_field(event, "type")),
            provider=self.provider,
            data=payload.get("data", {}) or {},
            raw_headers=headers,
            raw_body=body,
        )
