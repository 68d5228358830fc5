"""
支付方式应用服务 - 注册、默认切换与停用

同一 (user, provider) 下至多一个启用中的默认支付方式；切换默认前先锁定
同组的启用记录，避免并发请求各自设置默认。
"""
from __future__ import annotations

from typing import Callable, List, Optional

from application.dtos.payments import RegisterPaymentMethodRequest, UpdatePaymentMethodRequest
from application.ports.payment_gateway import GatewayResolver
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import PaymentMethod, utcnow
from domain.payment.exceptions import NotFoundError


logger = get_logger(__name__)


class PaymentMethodManager:
    """支付方式管理"""

    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork], registry: GatewayResolver):
        self._uow_factory = uow_factory
        self._registry = registry

    async def register(self, user_id: int, data: RegisterPaymentMethodRequest) -> PaymentMethod:
        """在渠道侧创建持有人并绑定支付方式，再写入账本"""
        gateway = self._registry.resolve(data.provider)
        data = gateway.validate_payment_method(data)

        async with self._uow_factory() as uow:
            if data.is_default:
                await uow.payment_methods.lock_user_provider(user_id, gateway.provider)
                await uow.payment_methods.clear_defaults(user_id, gateway.provider)
            method = await gateway.create_payment_method(uow, user_id, data)

        logger.info(
            "payment_method_registered",
            user_id=user_id,
            provider=method.provider,
            payment_method_id=method.id,
            is_default=method.is_default,
        )
        return method

    async def set_default(self, user_id: int, method_id: int) -> PaymentMethod:
        async with self._uow_factory() as uow:
            method = await self._owned(uow, user_id, method_id, for_update=True)
            # 已停用的支付方式对调用方而言等同不存在
            if not method.is_active:
                raise NotFoundError("PaymentMethod", method_id)
            await uow.payment_methods.lock_user_provider(user_id, method.provider)
            await uow.payment_methods.clear_defaults(user_id, method.provider, exclude_id=method.id)
            method.is_default = True
            method.updated_at = utcnow()
            method = await uow.payment_methods.update(method)

        logger.info("payment_method_default_set", user_id=user_id, payment_method_id=method.id)
        return method

    async def update(self, user_id: int, method_id: int, data: UpdatePaymentMethodRequest) -> PaymentMethod:
        """
        局部切换 is_active / is_default，不调用渠道。

        先处理启停再处理默认：停用的方式不能成为默认（NotFoundError），
        停用原默认方式时同组最近创建的启用方式接任默认。
        """
        async with self._uow_factory() as uow:
            method = await self._owned(uow, user_id, method_id, for_update=True)
            await uow.payment_methods.lock_user_provider(user_id, method.provider)

            promoted: Optional[PaymentMethod] = None
            if data.is_active is True and not method.is_active:
                method.is_active = True
            elif data.is_active is False and method.is_active:
                was_default = method.is_default
                method.deactivate()
                if was_default:
                    promoted = await self._promote_sibling(uow, method)

            if data.is_default is True:
                if not method.is_active:
                    raise NotFoundError("PaymentMethod", method_id)
                await uow.payment_methods.clear_defaults(user_id, method.provider, exclude_id=method.id)
                method.is_default = True
            elif data.is_default is False:
                method.is_default = False

            method.updated_at = utcnow()
            method = await uow.payment_methods.update(method)

        logger.info(
            "payment_method_flags_updated",
            user_id=user_id,
            payment_method_id=method.id,
            is_active=method.is_active,
            is_default=method.is_default,
            promoted_id=promoted.id if promoted else None,
        )
        return method

    async def delete(self, user_id: int, method_id: int) -> bool:
        """
        停用支付方式（记录保留，供历史 Payment 引用）。

        若被停用的是默认方式，则同组最近创建的启用方式成为新的默认。
        """
        async with self._uow_factory() as uow:
            method = await self._owned(uow, user_id, method_id, for_update=True)
            gateway = self._registry.resolve(method.provider)
            was_default = method.is_active and method.is_default

            await uow.payment_methods.lock_user_provider(user_id, method.provider)
            await gateway.delete_payment_method(uow, method)

            promoted = await self._promote_sibling(uow, method) if was_default else None

        logger.info(
            "payment_method_deleted",
            user_id=user_id,
            payment_method_id=method_id,
            promoted_id=promoted.id if promoted else None,
        )
        return True

    async def list(self, user_id: int, provider: Optional[str] = None) -> List[PaymentMethod]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.payment_methods.list_active_by_user(user_id, provider)

    async def get(self, user_id: int, method_id: int) -> PaymentMethod:
        async with self._uow_factory(readonly=True) as uow:
            return await self._owned(uow, user_id, method_id)

    @staticmethod
    async def _owned(
        uow: AbstractUnitOfWork,
        user_id: int,
        method_id: int,
        *,
        for_update: bool = False,
    ) -> PaymentMethod:
        # 他人的支付方式同样按不存在处理，不泄露存在性
        method = await uow.payment_methods.get_by_id(method_id, for_update=for_update)
        if method is None or method.user_id != user_id:
            raise NotFoundError("PaymentMethod", method_id)
        return method

    @staticmethod
    async def _promote_sibling(uow: AbstractUnitOfWork, method: PaymentMethod) -> Optional[PaymentMethod]:
        promoted = await uow.payment_methods.latest_active_sibling(method.user_id, method.provider, method.id)
        if promoted is None:
            return None
        promoted.is_default = True
        promoted.updated_at = utcnow()
        return await uow.payment_methods.update(promoted)
