"""
支付仓储接口 - 定义账本数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from .entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Transaction,
    Webhook,
)


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        pass

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_uuid(self, payment_uuid: str, *, for_update: bool = False) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_provider_payment_id(
        self,
        provider: str,
        provider_payment_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """根据渠道支付ID获取支付，for_update=True 时加行锁"""
        pass

    @abstractmethod
    async def list_by_user(
        self,
        user_id: int,
        *,
        status: Optional[PaymentStatus] = None,
        provider: Optional[str] = None,
        type: Optional[PaymentType] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[Payment]:
        """获取用户的支付列表（按创建时间倒序）"""
        pass

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        pass

    @abstractmethod
    async def get_refunded_total(self, payment_id: int) -> Decimal:
        """统计某笔支付已发起（pending/succeeded）的退款总额"""
        pass

    @abstractmethod
    async def get_stats(self, user_id: int) -> dict:
        """
        用户支付统计

        返回键：total_payments / successful / failed / pending /
        total_amount / total_refunded / by_provider
        """
        pass


class PaymentMethodRepository(ABC):
    """支付方式仓储抽象接口"""

    @abstractmethod
    async def create(self, method: PaymentMethod) -> PaymentMethod:
        pass

    @abstractmethod
    async def get_by_id(self, method_id: int, *, for_update: bool = False) -> Optional[PaymentMethod]:
        pass

    @abstractmethod
    async def list_active_by_user(
        self,
        user_id: int,
        provider: Optional[str] = None,
    ) -> List[PaymentMethod]:
        """启用中的支付方式，默认优先、再按创建时间倒序"""
        pass

    @abstractmethod
    async def lock_user_provider(self, user_id: int, provider: str) -> List[PaymentMethod]:
        """锁定 (user, provider) 范围内的启用支付方式，用于维护唯一默认"""
        pass

    @abstractmethod
    async def clear_defaults(self, user_id: int, provider: str, *, exclude_id: Optional[int] = None) -> int:
        """清除 (user, provider) 范围内的默认标记，返回受影响行数"""
        pass

    @abstractmethod
    async def latest_active_sibling(self, user_id: int, provider: str, exclude_id: int) -> Optional[PaymentMethod]:
        """同一 (user, provider) 下最近创建的其他启用支付方式"""
        pass

    @abstractmethod
    async def update(self, method: PaymentMethod) -> PaymentMethod:
        pass


class TransactionRepository(ABC):
    """交易流水仓储抽象接口"""

    @abstractmethod
    async def create(self, transaction: Transaction) -> Transaction:
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[Transaction]:
        pass

    @abstractmethod
    async def count_by_payment(self, payment_id: int) -> int:
        pass


class WebhookRepository(ABC):
    """回调记录仓储抽象接口"""

    @abstractmethod
    async def create(self, webhook: Webhook) -> Webhook:
        """创建回调记录；(provider, provider_event_id) 冲突时抛出 WebhookAlreadyRecordedError"""
        pass

    @abstractmethod
    async def get_by_provider_event(
        self,
        provider: str,
        provider_event_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Webhook]:
        pass

    @abstractmethod
    async def update(self, webhook: Webhook) -> Webhook:
        pass
