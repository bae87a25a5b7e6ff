"""缓存层对外暴露的接口"""
from .transaction_lock import (
    InProcessTransactionLocker,
    RedisTransactionLocker,
    TransactionLockTimeout,
    get_transaction_locker,
    shutdown_transaction_locker,
)

__all__ = [
    "InProcessTransactionLocker",
    "RedisTransactionLocker",
    "TransactionLockTimeout",
    "get_transaction_locker",
    "shutdown_transaction_locker",
]
