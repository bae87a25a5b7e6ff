"""
Card processor webhook receiver.

Keep this thin: signature verification and routing live in WebhookService.
Handlers are idempotent, so provider retries and replays are acknowledged
without side effects.
"""
from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_service
from application.services.webhook_service import WebhookService
from core.logging_config import get_logger
from core.response import success_response
from core.settings import payment_settings


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)


def _ip_permitted(remote_ip: str, allowlist: list[str]) -> bool:
    try:
        rip = ipaddress.ip_address(remote_ip)
    except ValueError:
        return False
    for entry in allowlist:
        try:
            if "/" in entry:
                if rip in ipaddress.ip_network(entry, strict=False):
                    return True
            elif remote_ip == entry:
                return True
        except ValueError:
            continue
    return False


@router.post("/stripe")
async def stripe_webhook(request: Request, service: WebhookService = Depends(get_webhook_service)):
    # Content-Type checks
    ct = (request.headers.get("content-type") or "").lower()
    if "application/json" not in ct:
        return success_response(message="Unsupported content type, expected application/json")

    # Optional IP allowlist
    allowlist = payment_settings.webhook.ip_allowlist or []
    if allowlist and request.client and request.client.host:
        if not _ip_permitted(request.client.host, allowlist):
            logger.warning("webhook_ip_rejected", remote_ip=request.client.host)
            return success_response(message="Source address not allowed")

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    event = await service.handle(headers, raw_body)

    # Return 200 to acknowledge receipt per provider conventions
    return success_response(
        data={"id": event.id, "type": event.type, "provider": event.provider},
        message="Webhook received",
    )
