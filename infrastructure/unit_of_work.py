"""SQLAlchemy Unit of Work 实现

一个 UoW 对应一个 AsyncSession / 一个数据库事务，账本四张表的仓储共享该会话，
因此"支付状态 + 交易记录"或"回调记录 + 支付更新"总是一起提交或一起回滚。
"""
from __future__ import annotations

from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, AsyncSessionTransaction

from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from infrastructure.database import AsyncSessionLocal
from infrastructure.repositories.payment_repository import (
    SQLAlchemyPaymentMethodRepository,
    SQLAlchemyPaymentRepository,
    SQLAlchemyTransactionRepository,
    SQLAlchemyWebhookRepository,
)


logger = get_logger(__name__)


class SQLAlchemyUnitOfWork(AbstractUnitOfWork):
    """基于SQLAlchemy的Unit of Work"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        session: Optional[AsyncSession] = None,
        *,
        readonly: bool = False,
    ) -> None:
        super().__init__(readonly=readonly)
        self._session_factory = session_factory
        self._external_session = session
        self.session: Optional[AsyncSession] = session
        self._transaction: Optional[AsyncSessionTransaction] = None

    def _bind_repositories(self, session: Optional[AsyncSession]) -> None:
        if session is None:
            self.payments = None  # type: ignore[assignment]
            self.payment_methods = None  # type: ignore[assignment]
            self.transactions = None  # type: ignore[assignment]
            self.webhooks = None  # type: ignore[assignment]
            return
        self.payments = SQLAlchemyPaymentRepository(session)
        self.payment_methods = SQLAlchemyPaymentMethodRepository(session)
        self.transactions = SQLAlchemyTransactionRepository(session)
        self.webhooks = SQLAlchemyWebhookRepository(session)

    async def __aenter__(self) -> "SQLAlchemyUnitOfWork":
        if self.session is None:
            self.session = self._session_factory()
        self._committed = False
        self._bind_repositories(self.session)
        # 只读模式不显式开启事务，查询走 autobegin
        if not self._readonly:
            self._transaction = await self.session.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            await super().__aexit__(exc_type, exc, tb)
        finally:
            self._transaction = None
            if self._external_session is None and self.session is not None:
                await self.session.close()
                self.session = None
            self._bind_repositories(None)

    async def commit(self) -> None:
        if self._readonly:
            self._committed = True
            return
        if self.session is not None and self.session.in_transaction():
            await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        if self.session is not None and self.session.in_transaction():
            await self.session.rollback()
            if not self._readonly:
                logger.debug("uow_rolled_back")
        self._committed = False


def uow_factory(session_factory: Callable[[], AsyncSession] = AsyncSessionLocal) -> Callable[..., SQLAlchemyUnitOfWork]:
    """绑定会话工厂，返回按需创建 UoW 的工厂函数"""

    def _make(*, readonly: bool = False) -> SQLAlchemyUnitOfWork:
        return SQLAlchemyUnitOfWork(session_factory, readonly=readonly)

    return _make
