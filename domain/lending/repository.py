"""
借用领域仓储接口 - 定义数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List

from .entity import AuditLogEntry, LendingUser, Location, Payment, PaymentStatus, Transaction


class LocationRepository(ABC):
    """地点仓储抽象接口"""

    @abstractmethod
    async def get_by_id(self, location_id: int) -> Optional[Location]:
        pass

    @abstractmethod
    async def increment_inventory(self, location_id: int, delta: int = 1) -> int:
        """原子调整库存并返回调整后的数量；地点不存在时抛出 LocationNotFoundException"""
        pass


class TransactionRepository(ABC):
    """交易仓储抽象接口"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def get_by_id(self, transaction_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_setup_intent_id(self, setup_intent_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def get_by_payment_intent_id(self, payment_intent_id: str) -> Optional[Transaction]:
        pass

    @abstractmethod
    async def list_by_location(self, location_id: int) -> List[Transaction]:
        pass

    @abstractmethod
    async def list_returned(
        self,
        location_id: Optional[int] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Transaction]:
        """按归还时间区间列出已归还交易"""
        pass

    @abstractmethod
    async def update(self, transaction: Transaction) -> Transaction:
        pass


class PaymentRepository(ABC):
    """支付仓储抽象接口"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录；同一交易已有活动支付时抛出 ConcurrentPaymentException"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_external_id(self, external_payment_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def list_by_transaction(self, transaction_id: int) -> List[Payment]:
        pass

    @abstractmethod
    async def list_by_status(self, statuses: List[PaymentStatus]) -> List[Payment]:
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        pass


class AuditLogRepository(ABC):
    """审计日志仓储（只追加）"""

    @abstractmethod
    async def add(self, entry: AuditLogEntry) -> AuditLogEntry:
        pass


class LendingUserRepository(ABC):
    """用户只读仓储（用于运营者地点查询）"""

    @abstractmethod
    async def get_by_id(self, user_id: int) -> Optional[LendingUser]:
        pass
