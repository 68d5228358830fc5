"""
支付仓储实现 - 使用SQLAlchemy实现账本数据访问
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import and_, case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from domain.payment.entity import (
    Payment,
    PaymentMethod,
    PaymentStatus,
    PaymentType,
    Transaction,
    Webhook,
    to_money,
)
from domain.payment.exceptions import WebhookAlreadyRecordedError
from domain.payment.repository import (
    PaymentMethodRepository,
    PaymentRepository,
    TransactionRepository,
    WebhookRepository,
)
from infrastructure.models.payment import (
    PaymentMethodModel,
    PaymentModel,
    TransactionModel,
    WebhookModel,
)
from core.logging_config import get_logger


logger = get_logger(__name__)


def _money(value) -> Decimal:
    return to_money(value) if value is not None else Decimal("0.00")


class SQLAlchemyPaymentRepository(PaymentRepository):
    """支付仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentModel) -> Payment:
        """将数据库模型转换为领域实体"""
        return Payment(
            id=model.id,
            uuid=model.uuid,
            user_id=model.user_id,
            payment_method_id=model.payment_method_id,
            provider=model.provider,
            provider_payment_id=model.provider_payment_id,
            provider_customer_id=model.provider_customer_id,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=PaymentStatus(model.status),
            type=PaymentType(model.type),
            description=model.description,
            metadata=model.extra_metadata or {},
            provider_response=model.provider_response or {},
            fee_amount=Decimal(str(model.fee_amount)) if model.fee_amount is not None else None,
            net_amount=Decimal(str(model.net_amount)) if model.net_amount is not None else None,
            refunded_payment_id=model.refunded_payment_id,
            processed_at=model.processed_at,
            failed_at=model.failed_at,
            failure_reason=model.failure_reason,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: Payment) -> PaymentModel:
        """将领域实体转换为数据库模型"""
        return PaymentModel(
            id=entity.id,
            uuid=entity.uuid,
            user_id=entity.user_id,
            payment_method_id=entity.payment_method_id,
            provider=entity.provider,
            provider_payment_id=entity.provider_payment_id,
            provider_customer_id=entity.provider_customer_id,
            amount=entity.amount,
            currency=entity.currency,
            status=entity.status.value,
            type=entity.type.value,
            description=entity.description,
            extra_metadata=entity.metadata,
            provider_response=entity.provider_response,
            fee_amount=entity.fee_amount,
            net_amount=entity.net_amount,
            refunded_payment_id=entity.refunded_payment_id,
            processed_at=entity.processed_at,
            failed_at=entity.failed_at,
            failure_reason=entity.failure_reason,
        )

    async def create(self, payment: Payment) -> Payment:
        """创建支付记录"""
        db_payment = self._to_model(payment)
        self.session.add(db_payment)
        await self.session.flush()
        await self.session.refresh(db_payment)
        logger.info(
            "payment_created",
            payment_id=db_payment.id,
            payment_uuid=db_payment.uuid,
            provider=db_payment.provider,
            type=db_payment.type,
            status=db_payment.status,
        )
        return self._to_entity(db_payment)

    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment_id)
        )
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_uuid(self, payment_uuid: str, *, for_update: bool = False) -> Optional[Payment]:
        query = select(PaymentModel).where(PaymentModel.uuid == payment_uuid)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

    async def get_by_provider_payment_id(
        self,
        provider: str,
        provider_payment_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Payment]:
        """根据渠道支付ID获取原始支付（退款行共享渠道ID，这里只取 payment 类型）"""
        query = (
            select(PaymentModel)
            .where(
                PaymentModel.provider == provider,
                PaymentModel.provider_payment_id == provider_payment_id,
                PaymentModel.type != PaymentType.REFUND.value,
            )
            .order_by(PaymentModel.id.asc())
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_payment = result.scalar_one_or_none()
        return self._to_entity(db_payment) if db_payment else None

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
        """获取用户的支付列表"""
        query = select(PaymentModel).where(PaymentModel.user_id == user_id)

        if status:
            query = query.where(PaymentModel.status == PaymentStatus(status).value)
        if provider:
            query = query.where(PaymentModel.provider == provider.lower())
        if type:
            query = query.where(PaymentModel.type == PaymentType(type).value)
        if from_date:
            query = query.where(PaymentModel.created_at >= from_date)
        if to_date:
            query = query.where(PaymentModel.created_at <= to_date)

        query = (
            query.order_by(PaymentModel.created_at.desc(), PaymentModel.id.desc())
            .offset(skip)
            .limit(limit)
        )

        result = await self.session.execute(query)
        return [self._to_entity(p) for p in result.scalars().all()]

    async def update(self, payment: Payment) -> Payment:
        """更新支付记录"""
        result = await self.session.execute(
            select(PaymentModel).where(PaymentModel.id == payment.id)
        )
        db_payment = result.scalar_one_or_none()

        if not db_payment:
            raise ValueError(f"Payment with id {payment.id} not found")

        # 更新可变字段
        db_payment.provider_payment_id = payment.provider_payment_id
        db_payment.provider_customer_id = payment.provider_customer_id
        db_payment.status = payment.status.value
        db_payment.extra_metadata = payment.metadata
        db_payment.provider_response = payment.provider_response
        db_payment.fee_amount = payment.fee_amount
        db_payment.net_amount = payment.net_amount
        db_payment.processed_at = payment.processed_at
        db_payment.failed_at = payment.failed_at
        db_payment.failure_reason = payment.failure_reason

        await self.session.flush()
        await self.session.refresh(db_payment)

        logger.info(
            "payment_updated",
            payment_id=db_payment.id,
            payment_uuid=db_payment.uuid,
            status=db_payment.status,
        )

        return self._to_entity(db_payment)

    async def get_refunded_total(self, payment_id: int) -> Decimal:
        result = await self.session.execute(
            select(func.sum(PaymentModel.amount)).where(
                PaymentModel.refunded_payment_id == payment_id,
                PaymentModel.type == PaymentType.REFUND.value,
                PaymentModel.status.in_(
                    [
                        PaymentStatus.PENDING.value,
                        PaymentStatus.PROCESSING.value,
                        PaymentStatus.SUCCEEDED.value,
                    ]
                ),
            )
        )
        return _money(result.scalar_one_or_none())

    async def get_stats(self, user_id: int) -> dict:
        """用户支付统计（单次聚合查询 + 按渠道分组）"""
        succeeded = PaymentModel.status == PaymentStatus.SUCCEEDED.value
        is_payment = PaymentModel.type != PaymentType.REFUND.value
        is_refund = PaymentModel.type == PaymentType.REFUND.value

        totals = (
            await self.session.execute(
                select(
                    func.count(PaymentModel.id),
                    func.sum(case((succeeded, 1), else_=0)),
                    func.sum(case((PaymentModel.status == PaymentStatus.FAILED.value, 1), else_=0)),
                    func.sum(case((PaymentModel.status == PaymentStatus.PENDING.value, 1), else_=0)),
                    func.sum(case((and_(succeeded, is_payment), PaymentModel.amount), else_=0)),
                    func.sum(case((and_(succeeded, is_refund), PaymentModel.amount), else_=0)),
                ).where(PaymentModel.user_id == user_id)
            )
        ).one()

        by_provider_rows = (
            await self.session.execute(
                select(PaymentModel.provider, func.sum(PaymentModel.amount))
                .where(PaymentModel.user_id == user_id, succeeded, is_payment)
                .group_by(PaymentModel.provider)
            )
        ).all()

        return {
            "total_payments": int(totals[0] or 0),
            "successful_payments": int(totals[1] or 0),
            "failed_payments": int(totals[2] or 0),
            "pending_payments": int(totals[3] or 0),
            "total_amount": _money(totals[4]),
            "total_refunded": _money(totals[5]),
            "by_provider": {provider: _money(amount) for provider, amount in by_provider_rows},
        }


class SQLAlchemyPaymentMethodRepository(PaymentMethodRepository):
    """支付方式仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: PaymentMethodModel) -> PaymentMethod:
        return PaymentMethod(
            id=model.id,
            user_id=model.user_id,
            provider=model.provider,
            type=model.type,
            provider_id=model.provider_id,
            external_id=model.external_id,
            metadata=model.extra_metadata or {},
            is_default=bool(model.is_default),
            is_active=bool(model.is_active),
            expires_at=model.expires_at,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _to_model(self, entity: PaymentMethod) -> PaymentMethodModel:
        return PaymentMethodModel(
            id=entity.id,
            user_id=entity.user_id,
            provider=entity.provider,
            type=entity.type.value,
            provider_id=entity.provider_id,
            external_id=entity.external_id,
            extra_metadata=entity.metadata,
            is_default=entity.is_default,
            is_active=entity.is_active,
            expires_at=entity.expires_at,
        )

    def _active_scope(self, user_id: int, provider: str):
        return select(PaymentMethodModel).where(
            PaymentMethodModel.user_id == user_id,
            PaymentMethodModel.provider == provider,
            PaymentMethodModel.is_active.is_(True),
        )

    async def create(self, method: PaymentMethod) -> PaymentMethod:
        db_method = self._to_model(method)
        self.session.add(db_method)
        await self.session.flush()
        await self.session.refresh(db_method)
        logger.info(
            "payment_method_created",
            payment_method_id=db_method.id,
            user_id=db_method.user_id,
            provider=db_method.provider,
            is_default=db_method.is_default,
        )
        return self._to_entity(db_method)

    async def get_by_id(self, method_id: int, *, for_update: bool = False) -> Optional[PaymentMethod]:
        query = select(PaymentMethodModel).where(PaymentMethodModel.id == method_id)
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_method = result.scalar_one_or_none()
        return self._to_entity(db_method) if db_method else None

    async def list_active_by_user(
        self,
        user_id: int,
        provider: Optional[str] = None,
    ) -> List[PaymentMethod]:
        query = select(PaymentMethodModel).where(
            PaymentMethodModel.user_id == user_id,
            PaymentMethodModel.is_active.is_(True),
        )
        if provider:
            query = query.where(PaymentMethodModel.provider == provider.lower())
        query = query.order_by(
            PaymentMethodModel.is_default.desc(),
            PaymentMethodModel.created_at.desc(),
            PaymentMethodModel.id.desc(),
        )
        result = await self.session.execute(query)
        return [self._to_entity(m) for m in result.scalars().all()]

    async def lock_user_provider(self, user_id: int, provider: str) -> List[PaymentMethod]:
        # SQLite 忽略 FOR UPDATE，依赖其库级写锁
        result = await self.session.execute(
            self._active_scope(user_id, provider)
            .order_by(PaymentMethodModel.id.asc())
            .with_for_update()
        )
        return [self._to_entity(m) for m in result.scalars().all()]

    async def clear_defaults(self, user_id: int, provider: str, *, exclude_id: Optional[int] = None) -> int:
        stmt = (
            update(PaymentMethodModel)
            .where(
                PaymentMethodModel.user_id == user_id,
                PaymentMethodModel.provider == provider,
                PaymentMethodModel.is_default.is_(True),
            )
            .values(is_default=False)
            .execution_options(synchronize_session="fetch")
        )
        if exclude_id is not None:
            stmt = stmt.where(PaymentMethodModel.id != exclude_id)
        result = await self.session.execute(stmt)
        cleared = result.rowcount or 0
        if cleared:
            logger.info(
                "payment_method_defaults_cleared",
                user_id=user_id,
                provider=provider,
                cleared=cleared,
            )
        return cleared

    async def latest_active_sibling(self, user_id: int, provider: str, exclude_id: int) -> Optional[PaymentMethod]:
        result = await self.session.execute(
            self._active_scope(user_id, provider)
            .where(PaymentMethodModel.id != exclude_id)
            .order_by(PaymentMethodModel.created_at.desc(), PaymentMethodModel.id.desc())
            .limit(1)
            .with_for_update()
        )
        db_method = result.scalar_one_or_none()
        return self._to_entity(db_method) if db_method else None

    async def update(self, method: PaymentMethod) -> PaymentMethod:
        result = await self.session.execute(
            select(PaymentMethodModel).where(PaymentMethodModel.id == method.id)
        )
        db_method = result.scalar_one_or_none()
        if not db_method:
            raise ValueError(f"PaymentMethod with id {method.id} not found")

        db_method.provider_id = method.provider_id
        db_method.external_id = method.external_id
        db_method.extra_metadata = method.metadata
        db_method.is_default = method.is_default
        db_method.is_active = method.is_active
        db_method.expires_at = method.expires_at

        await self.session.flush()
        await self.session.refresh(db_method)
        logger.info(
            "payment_method_updated",
            payment_method_id=db_method.id,
            is_default=db_method.is_default,
            is_active=db_method.is_active,
        )
        return self._to_entity(db_method)


class SQLAlchemyTransactionRepository(TransactionRepository):
    """交易流水仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: TransactionModel) -> Transaction:
        return Transaction(
            id=model.id,
            uuid=model.uuid,
            payment_id=model.payment_id,
            type=model.type,
            amount=Decimal(str(model.amount)),
            currency=model.currency,
            status=model.status,
            provider_transaction_id=model.provider_transaction_id,
            provider_response=model.provider_response or {},
            reference=model.reference,
            notes=model.notes,
            processed_at=model.processed_at,
            created_at=model.created_at,
        )

    async def create(self, transaction: Transaction) -> Transaction:
        db_tx = TransactionModel(
            uuid=transaction.uuid,
            payment_id=transaction.payment_id,
            type=transaction.type.value,
            amount=transaction.amount,
            currency=transaction.currency,
            status=transaction.status.value,
            provider_transaction_id=transaction.provider_transaction_id,
            provider_response=transaction.provider_response,
            reference=transaction.reference,
            notes=transaction.notes,
            processed_at=transaction.processed_at,
        )
        self.session.add(db_tx)
        await self.session.flush()
        await self.session.refresh(db_tx)
        logger.info(
            "transaction_created",
            transaction_id=db_tx.id,
            payment_id=db_tx.payment_id,
            type=db_tx.type,
            amount=str(db_tx.amount),
        )
        return self._to_entity(db_tx)

    async def list_by_payment(self, payment_id: int) -> List[Transaction]:
        result = await self.session.execute(
            select(TransactionModel)
            .where(TransactionModel.payment_id == payment_id)
            .order_by(TransactionModel.id.asc())
        )
        return [self._to_entity(t) for t in result.scalars().all()]

    async def count_by_payment(self, payment_id: int) -> int:
        result = await self.session.execute(
            select(func.count(TransactionModel.id)).where(TransactionModel.payment_id == payment_id)
        )
        return result.scalar_one()


class SQLAlchemyWebhookRepository(WebhookRepository):
    """回调记录仓储的SQLAlchemy实现"""

    def __init__(self, session: AsyncSession):
        self.session = session

    def _to_entity(self, model: WebhookModel) -> Webhook:
        return Webhook(
            id=model.id,
            uuid=model.uuid,
            provider=model.provider,
            event_type=model.event_type,
            provider_event_id=model.provider_event_id,
            payload=model.payload or {},
            status=model.status,
            attempts=model.attempts or 0,
            processed_at=model.processed_at,
            error_message=model.error_message,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    async def create(self, webhook: Webhook) -> Webhook:
        db_webhook = WebhookModel(
            uuid=webhook.uuid,
            provider=webhook.provider,
            event_type=webhook.event_type,
            provider_event_id=webhook.provider_event_id,
            payload=webhook.payload,
            status=webhook.status.value,
            attempts=webhook.attempts,
        )
        self.session.add(db_webhook)
        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.warning(
                "webhook_create_conflict",
                provider=webhook.provider,
                provider_event_id=webhook.provider_event_id,
            )
            raise WebhookAlreadyRecordedError(webhook.provider, webhook.provider_event_id) from exc
        await self.session.refresh(db_webhook)
        logger.info(
            "webhook_recorded",
            webhook_id=db_webhook.id,
            provider=db_webhook.provider,
            event_type=db_webhook.event_type,
            provider_event_id=db_webhook.provider_event_id,
        )
        return self._to_entity(db_webhook)

    async def get_by_provider_event(
        self,
        provider: str,
        provider_event_id: str,
        *,
        for_update: bool = False,
    ) -> Optional[Webhook]:
        query = select(WebhookModel).where(
            WebhookModel.provider == provider,
            WebhookModel.provider_event_id == provider_event_id,
        )
        if for_update:
            query = query.with_for_update()
        result = await self.session.execute(query)
        db_webhook = result.scalar_one_or_none()
        return self._to_entity(db_webhook) if db_webhook else None

    async def update(self, webhook: Webhook) -> Webhook:
        result = await self.session.execute(
            select(WebhookModel).where(WebhookModel.id == webhook.id)
        )
        db_webhook = result.scalar_one_or_none()
        if not db_webhook:
            raise ValueError(f"Webhook with id {webhook.id} not found")

        db_webhook.status = webhook.status.value
        db_webhook.attempts = webhook.attempts
        db_webhook.processed_at = webhook.processed_at
        db_webhook.error_message = webhook.error_message

        await self.session.flush()
        await self.session.refresh(db_webhook)
        return self._to_entity(db_webhook)
