"""
金额换算：边界上的浮点/十进制金额 <-> 引擎内部的最小货币单位整数
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP


@dataclass
class Money:
    amount: Decimal
    currency: str = "usd"

    def to_minor(self, exponent: int = 2) -> int:
        return int((self.amount * (Decimal(10) ** exponent)).quantize(Decimal(1), rounding=ROUND_HALF_UP))

    @classmethod
    def from_minor(cls, minor: int, currency: str = "usd", exponent: int = 2) -> "Money":
        return cls(Decimal(minor) / (Decimal(10) ** exponent), currency)


def to_minor_units(amount: float | Decimal | int, exponent: int = 2) -> int:
    """把边界金额（如 20.0 美元）换算为分；经 str 转换避免二进制浮点误差"""
    return Money(Decimal(str(amount))).to_minor(exponent)


def from_minor_units(minor: int, exponent: int = 2) -> float:
    return float(Money.from_minor(minor, exponent=exponent).amount)


def processing_fee(deposit_minor: int, fee_bps: int) -> int:
    """手续费 = ceil(押金 * 基点 / 10000)，纯整数运算"""
    return -(-deposit_minor * fee_bps // 10000)
