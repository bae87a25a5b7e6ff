"""
Durable append-only sink for exhausted-retry records.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass
class RetryFailureRecord:
    operation: str
    context: dict[str, Any]
    error_name: str
    error_message: str
    timestamp: str
    error_stack: Optional[str] = None
    retryable: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class RetryFailureSink(Protocol):
    async def append(self, record: RetryFailureRecord) -> None: ...
