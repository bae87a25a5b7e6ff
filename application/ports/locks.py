"""
Per-transaction mutual exclusion port.

Every validate-then-mutate sequence on a transaction runs inside
``locker.hold(transaction_id)`` so two concurrent requests cannot both
pass a check before either writes.
"""
from __future__ import annotations

from typing import AsyncContextManager, Protocol, runtime_checkable


@runtime_checkable
class TransactionLocker(Protocol):
    def hold(self, transaction_id: int) -> AsyncContextManager[None]: ...
