"""create_payment_ledger_tables

Revision ID: 3f2a9c41b7d0
Revises:
Create Date: 2025-11-13 13:55:07.412305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f2a9c41b7d0'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # payment_methods
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商: stripe/paypal'),
        sa.Column('type', sa.String(length=50), nullable=False, comment='类型: card/bank_account/wallet_account'),
        sa.Column('provider_id', sa.String(length=255), nullable=True, comment='渠道侧持有人ID'),
        sa.Column('external_id', sa.String(length=255), nullable=True, comment='渠道侧支付方式ID'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='展示用元数据'),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'], unique=False)
    op.create_index('ix_payment_methods_user_provider', 'payment_methods', ['user_id', 'provider'], unique=False)
    op.create_index('ix_payment_methods_user_active', 'payment_methods', ['user_id', 'is_active'], unique=False)

    # payments（退款也是一行 payment，refunded_payment_id 指向原支付）
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False, comment='对外暴露的支付ID'),
        sa.Column('user_id', sa.Integer(), nullable=False, comment='用户ID'),
        sa.Column('payment_method_id', sa.Integer(), nullable=True, comment='支付方式ID'),
        sa.Column('refunded_payment_id', sa.Integer(), nullable=True, comment='退款对应的原支付ID'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_payment_id', sa.String(length=255), nullable=True, comment='渠道支付ID'),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=True, comment='渠道客户ID'),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False, comment='支付金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='EUR', comment='货币代码 ISO-4217'),
        sa.Column('fee_amount', sa.Numeric(precision=10, scale=2), nullable=True, comment='手续费'),
        sa.Column('net_amount', sa.Numeric(precision=10, scale=2), nullable=True, comment='净额'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='支付状态: pending/processing/succeeded/failed/canceled/refunded'),
        sa.Column('type', sa.String(length=20), nullable=False, server_default='payment',
                  comment='payment/refund/subscription'),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='调用方元数据'),
        sa.Column('provider_response', sa.JSON(), nullable=True, comment='渠道最新响应快照'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='支付成功时间'),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True, comment='支付失败时间'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['refunded_payment_id'], ['payments.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('uuid'),
    )
    op.create_index('ix_payments_user_id', 'payments', ['user_id'], unique=False)
    op.create_index('ix_payments_refunded_payment_id', 'payments', ['refunded_payment_id'], unique=False)
    op.create_index('ix_payments_user_status', 'payments', ['user_id', 'status'], unique=False)
    op.create_index('ix_payments_provider_ref', 'payments', ['provider', 'provider_payment_id'], unique=False)
    op.create_index('ix_payments_status_created', 'payments', ['status', 'created_at'], unique=False)

    # transactions
    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='charge/refund/transfer/fee'),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='succeeded',
                  comment='pending/succeeded/failed'),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('reference', sa.String(length=255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('uuid'),
    )
    op.create_index('ix_transactions_payment_id', 'transactions', ['payment_id'], unique=False)
    op.create_index('ix_transactions_provider_transaction_id', 'transactions', ['provider_transaction_id'], unique=False)
    op.create_index('ix_transactions_type_status', 'transactions', ['type', 'status'], unique=False)

    # webhooks
    op.create_table(
        'webhooks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('uuid', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False, comment='渠道事件ID'),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending',
                  comment='pending/processing/processed/failed'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('uuid'),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhooks_provider_event'),
    )
    op.create_index('ix_webhooks_provider_event_type', 'webhooks', ['provider', 'event_type'], unique=False)
    op.create_index('ix_webhooks_status_created', 'webhooks', ['status', 'created_at'], unique=False)


def downgrade() -> None:
    op.drop_index('ix_webhooks_status_created', table_name='webhooks')
    op.drop_index('ix_webhooks_provider_event_type', table_name='webhooks')
    op.drop_table('webhooks')

    op.drop_index('ix_transactions_type_status', table_name='transactions')
    op.drop_index('ix_transactions_provider_transaction_id', table_name='transactions')
    op.drop_index('ix_transactions_payment_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_payments_status_created', table_name='payments')
    op.drop_index('ix_payments_provider_ref', table_name='payments')
    op.drop_index('ix_payments_user_status', table_name='payments')
    op.drop_index('ix_payments_refunded_payment_id', table_name='payments')
    op.drop_index('ix_payments_user_id', table_name='payments')
    op.drop_table('payments')

    op.drop_index('ix_payment_methods_user_active', table_name='payment_methods')
    op.drop_index('ix_payment_methods_user_provider', table_name='payment_methods')
    op.drop_index('ix_payment_methods_user_id', table_name='payment_methods')
    op.drop_table('payment_methods')
