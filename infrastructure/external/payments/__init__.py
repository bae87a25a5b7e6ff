"""
支付网关工厂

目前只接入 Stripe；现金押金不经过网关。
"""
from __future__ import annotations

from typing import Optional

from application.ports.payment_gateway import PaymentGateway
from core.settings import PaymentSettings, payment_settings


SUPPORTED_PROVIDERS = ("stripe",)


def get_payment_gateway(settings: Optional[PaymentSettings] = None) -> PaymentGateway:
    cfg = settings or payment_settings
    provider = cfg.default_provider.lower()
    if provider == "stripe":
        from .stripe_client import StripeClient
        return StripeClient(cfg)
    raise ValueError(f"Unsupported payment provider: {provider} (supported: {', '.join(SUPPORTED_PROVIDERS)})")
