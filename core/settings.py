"""
Payment and lending settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings so the engine can be configured
without a SECRET_KEY (workers, scripts, tests).
"""
from __future__ import annotations

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import BaseModel, Field


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class PaymentSettings(BaseSettings):
    default_provider: str = "stripe"
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)

    stripe: StripeSettings = Field(default_factory=StripeSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


class ReturnRetrySettings(BaseModel):
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0


class LendingSettings(BaseSettings):
    default_deposit_cents: int = 2000
    default_fee_bps: int = 300
    currency: str = "usd"
    magic_token_ttl_days: int = 30
    public_base_url: str = "http://localhost:8000"
    public_status_path: str = "/status"
    return_retry: ReturnRetrySettings = Field(default_factory=ReturnRetrySettings)
    retry_failure_log_path: str = "logs/retry_failures.jsonl"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LENDING__",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )


payment_settings = PaymentSettings()
lending_settings = LendingSettings()
