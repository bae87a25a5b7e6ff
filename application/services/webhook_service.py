"""
Card processor webhook dispatch.

Verifies and parses the event through the gateway port, then routes it to
the pay-later or deposit workflow. Unknown event types are acknowledged and
ignored. Every handler is idempotent, so replays are harmless.
"""
from __future__ import annotations

from typing import Any, Optional

from application.dtos.payments import WebhookEvent
from application.ports.payment_gateway import PaymentGateway
from application.services.deposit_service import DepositService
from application.services.pay_later_service import PayLaterService
from core.logging_config import get_logger


logger = get_logger(__name__)


def _event_object(event: WebhookEvent) -> dict[str, Any]:
    obj = (event.data or {}).get("object")
    return obj if isinstance(obj, dict) else {}


def _metadata_transaction_id(obj: dict[str, Any]) -> Optional[int]:
    """Transaction id stamped into the intent metadata when the charge was created."""
    raw = (obj.get("metadata") or {}).get("transaction_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


class WebhookService:
    def __init__(
        self,
        gateway: PaymentGateway,
        deposit_service: DepositService,
        pay_later_service: PayLaterService,
    ) -> None:
        self.gateway = gateway
        self._deposits = deposit_service
        self._pay_later = pay_later_service

    def parse(self, headers: dict, body: bytes) -> WebhookEvent:
        event = self.gateway.parse_webhook(headers, body)
        logger.info("payment_webhook_parsed", provider=self.gateway.provider, event_type=event.type, event_id=event.id)
        return event

    async def handle(self, headers: dict, body: bytes) -> WebhookEvent:
        event = self.parse(headers, body)
        await self.dispatch(event)
        return event

    async def dispatch(self, event: WebhookEvent) -> bool:
        """Route a verified event. Returns False when the type is not handled."""
        obj = _event_object(event)
        object_id: Optional[str] = obj.get("id")
        transaction_id = _metadata_transaction_id(obj)

        if event.type == "setup_intent.succeeded":
            payment_method = obj.get("payment_method")
            if isinstance(payment_method, dict):
                payment_method = payment_method.get("id")
            if object_id and payment_method:
                await self._pay_later.handle_setup_succeeded(object_id, payment_method)
            return True

        if event.type == "payment_intent.succeeded":
            tx = await self._pay_later.handle_payment_intent_succeeded(object_id, transaction_id=transaction_id)
            if tx is None:
                await self._deposits.handle_gateway_webhook(object_id, "succeeded", obj.get("metadata"))
            return True

        if event.type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            tx = await self._pay_later.handle_payment_intent_failed(
                object_id,
                error_code=last_error.get("decline_code") or last_error.get("code"),
                error_message=last_error.get("message"),
                transaction_id=transaction_id,
            )
            if tx is None:
                await self._deposits.handle_gateway_webhook(object_id, "failed", obj.get("metadata"))
            return True

        if event.type == "payment_intent.requires_action":
            await self._pay_later.handle_payment_intent_requires_action(
                object_id, obj.get("client_secret"), transaction_id=transaction_id
            )
            return True

        if event.type == "charge.refunded":
            intent_id = obj.get("payment_intent")
            if intent_id:
                await self._deposits.handle_charge_refunded(intent_id, obj.get("amount_refunded"))
            return True

        logger.info("payment_webhook_unhandled", event_type=event.type, event_id=event.id)
        return False
