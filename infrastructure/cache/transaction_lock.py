"""单笔交易互斥锁实现（Redis 分布式锁 / 进程内锁）"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from redis import asyncio as aioredis
from redis.exceptions import LockError

from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode


logger = get_logger(__name__)


class TransactionLockTimeout(BusinessException):
    def __init__(self, transaction_id: int):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"Transaction {transaction_id} is busy, try again",
            error_type="TransactionLockTimeout",
            details={"transaction_id": transaction_id},
        )


class InProcessTransactionLocker:
    """进程内锁：每个交易ID一把 asyncio.Lock，适用于单进程部署与测试"""

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = {}

    @asynccontextmanager
    async def hold(self, transaction_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(transaction_id, asyncio.Lock())
        self._holders[transaction_id] = self._holders.get(transaction_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[transaction_id] -= 1
            if self._holders[transaction_id] == 0:
                # 无等待者时回收，避免锁表无限增长
                self._holders.pop(transaction_id, None)
                self._locks.pop(transaction_id, None)


class RedisTransactionLocker:
    """基于 redis-py 异步锁的分布式实现，多实例部署时使用"""

    def __init__(
        self,
        client: aioredis.Redis,
        namespace: str = "",
        timeout: int = 30,
        blocking_timeout: int = 10,
    ) -> None:
        self._client = client
        self._namespace = namespace.strip(":")
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout

    def _format_key(self, transaction_id: int) -> str:
        key = f"lock:transaction:{transaction_id}"
        if not self._namespace:
            return key
        return f"{self._namespace}:{key}"

    @asynccontextmanager
    async def hold(self, transaction_id: int) -> AsyncIterator[None]:
        lock_key = self._format_key(transaction_id)
        lock = self._client.lock(
            lock_key,
            timeout=self._timeout,
            blocking_timeout=self._blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("transaction_lock_timeout", transaction_id=transaction_id, key=lock_key)
            raise TransactionLockTimeout(transaction_id)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # 持有超时后锁已被自动释放
                logger.error("transaction_lock_release_failed", key=lock_key, error=str(e))


_redis_client: Optional[aioredis.Redis] = None
_locker: Optional[InProcessTransactionLocker | RedisTransactionLocker] = None


def get_transaction_locker() -> InProcessTransactionLocker | RedisTransactionLocker:
    """按配置返回全局锁实例：配置了 REDIS__URL 时使用 Redis，否则使用进程内锁"""
    global _redis_client, _locker

    if _locker is not None:
        return _locker

    if settings.redis.url:
        _redis_client = aioredis.from_url(
            settings.redis.url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis.max_connections,
        )
        _locker = RedisTransactionLocker(
            _redis_client,
            namespace=settings.redis.namespace,
            timeout=settings.redis.lock_timeout,
            blocking_timeout=settings.redis.lock_blocking_timeout,
        )
        logger.info("transaction_locker_initialized", backend="redis")
    else:
        _locker = InProcessTransactionLocker()
        logger.info("transaction_locker_initialized", backend="in_process")
    return _locker


async def shutdown_transaction_locker() -> None:
    """关闭Redis连接"""
    global _redis_client, _locker

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
    _locker = None
