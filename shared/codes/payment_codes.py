"""
Payment specific codes.
"""
from __future__ import annotations

from enum import IntEnum


class PaymentCode(IntEnum):
    # Generic success
    SUCCESS = 0

    # Provider/Network errors (6xxxx)
    PROVIDER_ERROR = 60000
    PROVIDER_RECOVERABLE = 60001
    SIGNATURE_ERROR = 60002
    TIMEOUT = 60003
    RATE_LIMITED = 60004
    CARD_DECLINED = 60005
