"""
Payment gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable

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


@runtime_checkable
class PaymentGateway(Protocol):
    """Gateway protocol for the card processor.

    Implementations should be async and side-effect free beyond IO.
    Failures are raised as ``PaymentProviderError`` or its subclasses.
    """

    provider: str
    publishable_key: Optional[str]

    async def create_customer(self, req: CreateCustomer) -> GatewayCustomer: ...

    async def create_setup_intent(self, req: CreateSetupIntent) -> SetupIntent: ...

    async def create_payment_intent(self, req: CreatePaymentIntent) -> PaymentIntent: ...

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntent: ...

    async def refund(self, req: RefundRequest) -> RefundResult: ...

    async def set_default_payment_method(self, customer_id: str, payment_method_id: str) -> None: ...

    def parse_webhook(self, headers: dict[str, Any], body: bytes) -> WebhookEvent: ...
