"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, Column, Integer, String, Numeric, DateTime, Text, JSON,
    Index, ForeignKey, UniqueConstraint
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethodModel(Base):
    """支付方式表"""
    __tablename__ = "payment_methods"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")
    provider = Column(String(50), nullable=False, comment="支付提供商: stripe/paypal")
    type = Column(String(50), nullable=False, comment="类型: card/bank_account/wallet_account")
    provider_id = Column(String(255), nullable=True, comment="渠道侧持有人ID")
    external_id = Column(String(255), nullable=True, comment="渠道侧支付方式ID")
    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True, comment="展示用元数据")
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    payments = relationship("PaymentModel", back_populates="payment_method", lazy="select")

    __table_args__ = (
        Index("ix_payment_methods_user_provider", "user_id", "provider"),
        Index("ix_payment_methods_user_active", "user_id", "is_active"),
    )

    def __repr__(self):
        return (
            f"<PaymentMethodModel(id={self.id}, user_id={self.user_id}, "
            f"provider='{self.provider}', default={self.is_default}, active={self.is_active})>"
        )


class PaymentModel(Base):
    """
    支付数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Payment 中
    """
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False, comment="对外暴露的支付ID")
    user_id = Column(Integer, nullable=False, index=True, comment="用户ID")
    payment_method_id = Column(
        Integer,
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
        comment="支付方式ID",
    )
    refunded_payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
        comment="退款对应的原支付ID",
    )

    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_payment_id = Column(String(255), nullable=True, comment="渠道支付ID")
    provider_customer_id = Column(String(255), nullable=True, comment="渠道客户ID")

    # 金额信息（使用 Numeric 存储精确金额）
    amount = Column(Numeric(precision=10, scale=2), nullable=False, comment="支付金额")
    currency = Column(String(3), nullable=False, default="EUR", comment="货币代码 ISO-4217")
    fee_amount = Column(Numeric(precision=10, scale=2), nullable=True, comment="手续费")
    net_amount = Column(Numeric(precision=10, scale=2), nullable=True, comment="净额")

    status = Column(
        String(20),
        nullable=False,
        default="pending",
        comment="支付状态: pending/processing/succeeded/failed/canceled/refunded",
    )
    type = Column(String(20), nullable=False, default="payment", comment="payment/refund/subscription")
    description = Column(String(255), nullable=True)
    extra_metadata = Column("metadata", JSON, nullable=True, comment="调用方元数据")
    provider_response = Column(JSON, nullable=True, comment="渠道最新响应快照")

    processed_at = Column(DateTime(timezone=True), nullable=True, comment="支付成功时间")
    failed_at = Column(DateTime(timezone=True), nullable=True, comment="支付失败时间")
    failure_reason = Column(Text, nullable=True, comment="失败原因")

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    payment_method = relationship("PaymentMethodModel", back_populates="payments")
    transactions = relationship("TransactionModel", back_populates="payment", lazy="select")

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
        Index("ix_payments_provider_ref", "provider", "provider_payment_id"),
        Index("ix_payments_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<PaymentModel(id={self.id}, uuid='{self.uuid}', "
            f"provider='{self.provider}', amount={self.amount}, status='{self.status}')>"
        )


class TransactionModel(Base):
    """交易流水表 - 每次成功扣款/退款一条"""
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False)
    payment_id = Column(
        Integer,
        ForeignKey("payments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联的支付ID",
    )
    type = Column(String(20), nullable=False, comment="charge/refund/transfer/fee")
    amount = Column(Numeric(precision=10, scale=2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="succeeded", comment="pending/succeeded/failed")
    provider_transaction_id = Column(String(255), nullable=True, index=True)
    provider_response = Column(JSON, nullable=True)
    reference = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    payment = relationship("PaymentModel", back_populates="transactions")

    __table_args__ = (
        Index("ix_transactions_type_status", "type", "status"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(id={self.id}, payment_id={self.payment_id}, "
            f"type='{self.type}', amount={self.amount})>"
        )


class WebhookModel(Base):
    """渠道回调记录表"""
    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False)
    provider = Column(String(50), nullable=False)
    event_type = Column(String(100), nullable=False)
    provider_event_id = Column(String(255), nullable=False, comment="渠道事件ID")
    payload = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default="pending", comment="pending/processing/processed/failed")
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhooks_provider_event"),
        Index("ix_webhooks_provider_event_type", "provider", "event_type"),
        Index("ix_webhooks_status_created", "status", "created_at"),
    )

    def __repr__(self):
        return (
            f"<WebhookModel(id={self.id}, provider='{self.provider}', "
            f"event='{self.event_type}', status='{self.status}')>"
        )
