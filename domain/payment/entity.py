"""
支付领域实体 - Payment 聚合根及其关联实体

Payment / PaymentMethod / Transaction / Webhook 四个实体对应账本中的四张表。
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional

from domain.payment.exceptions import InvalidStateError, ValidationError


TWO_PLACES = Decimal("0.01")


class PaymentStatus(str, Enum):
    """支付状态枚举"""
    PENDING = "pending"           # 待支付
    PROCESSING = "processing"     # 处理中
    SUCCEEDED = "succeeded"       # 支付成功
    FAILED = "failed"             # 支付失败
    CANCELED = "canceled"         # 已取消
    REFUNDED = "refunded"         # 保留值，退款不会修改原支付状态


class PaymentType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    SUBSCRIPTION = "subscription"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    WALLET_ACCOUNT = "wallet_account"


class TransactionType(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"
    TRANSFER = "transfer"
    FEE = "fee"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_money(value: Any) -> Decimal:
    """转换为两位小数的 Decimal（四舍五入）"""
    return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _new_uuid() -> str:
    return str(uuid.uuid4())


@dataclass
class Payment:
    """
    支付聚合根 - 管理支付生命周期

    业务规则：
    1. 金额必须大于0
    2. 状态机：pending -> processing -> succeeded | failed | canceled
    3. processed_at 只在到达 succeeded 时设置，之后不再清除
    4. failed_at / failure_reason 仅在 failed 状态下存在
    5. 退款永远生成新的 refund 类型 Payment，不修改原支付
    """

    id: Optional[int]
    user_id: int
    provider: str
    amount: Decimal
    currency: str
    status: PaymentStatus = PaymentStatus.PENDING
    type: PaymentType = PaymentType.PAYMENT
    uuid: str = field(default_factory=_new_uuid)
    payment_method_id: Optional[int] = None
    provider_payment_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    description: Optional[str] = None
    metadata: dict[str, str] = field(default_factory=dict)
    provider_response: dict[str, Any] = field(default_factory=dict)
    fee_amount: Optional[Decimal] = None
    net_amount: Optional[Decimal] = None
    refunded_payment_id: Optional[int] = None

    # 时间戳
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = to_money(self.amount)
        if self.amount <= 0:
            raise ValidationError(f"Payment amount must be greater than 0: {self.amount}", field="amount")
        if not self.currency or len(self.currency) != 3 or not self.currency.isalpha():
            raise ValidationError(f"Invalid currency code: {self.currency}", field="currency")
        self.currency = self.currency.upper()
        self.status = PaymentStatus(self.status)
        self.type = PaymentType(self.type)
        self.metadata = dict(self.metadata or {})
        self.provider_response = dict(self.provider_response or {})
        self.processed_at = _ensure_utc(self.processed_at)
        self.failed_at = _ensure_utc(self.failed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    # 查询
    def is_successful(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED

    def is_pending(self) -> bool:
        return self.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)

    def is_failed(self) -> bool:
        return self.status == PaymentStatus.FAILED

    def can_be_refunded(self) -> bool:
        return self.is_successful() and self.type == PaymentType.PAYMENT

    def formatted_amount(self) -> str:
        return f"{self.amount:.2f} {self.currency.upper()}"

    # 守卫
    def ensure_confirmable(self) -> None:
        if not self.is_pending():
            raise InvalidStateError(
                f"Payment in status '{self.status.value}' cannot be confirmed",
                entity="payment",
                status=self.status.value,
                entity_id=self.uuid,
            )

    def ensure_refundable(self) -> None:
        if not self.can_be_refunded():
            raise InvalidStateError(
                "Payment cannot be refunded",
                entity="payment",
                status=self.status.value,
                entity_id=self.uuid,
            )

    # 状态转换
    def apply_status(
        self,
        status: PaymentStatus,
        *,
        provider_response: Optional[dict] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        """按渠道返回的状态更新本地状态，并维护时间戳不变量"""
        now = utcnow()
        self.status = PaymentStatus(status)
        if provider_response is not None:
            self.provider_response = dict(provider_response)
        if self.status == PaymentStatus.SUCCEEDED and self.processed_at is None:
            self.processed_at = now
        if self.status == PaymentStatus.FAILED:
            self.failed_at = now
            self.failure_reason = failure_reason or self.failure_reason or "Payment failed"
        else:
            self.failed_at = None
            self.failure_reason = None
        self.updated_at = now

    def mark_succeeded(self, provider_response: Optional[dict] = None) -> bool:
        """标记成功；已成功时为幂等空操作，返回是否发生变更"""
        if self.status == PaymentStatus.SUCCEEDED:
            return False
        self.apply_status(PaymentStatus.SUCCEEDED, provider_response=provider_response)
        return True

    def mark_failed(self, reason: Optional[str] = None, provider_response: Optional[dict] = None) -> bool:
        """标记失败；已失败或已成功（不兼容终态）时不变更"""
        if self.status in (PaymentStatus.FAILED, PaymentStatus.SUCCEEDED):
            return False
        self.apply_status(PaymentStatus.FAILED, provider_response=provider_response, failure_reason=reason)
        return True

    def mark_canceled(self, provider_response: Optional[dict] = None) -> bool:
        """标记取消；已取消或已成功时不变更"""
        if self.status in (PaymentStatus.CANCELED, PaymentStatus.SUCCEEDED):
            return False
        self.apply_status(PaymentStatus.CANCELED, provider_response=provider_response)
        return True

    def fail_confirmation(self, reason: str) -> None:
        """确认调用渠道失败：直接置为 failed（确认路径不受终态检查限制）"""
        self.apply_status(PaymentStatus.FAILED, failure_reason=reason)


@dataclass
class PaymentMethod:
    """
    支付方式实体

    业务规则：同一 (user, provider) 下最多一个启用中的默认支付方式。
    支付方式永不物理删除（Payment 会引用），删除即 is_active=False。
    """

    id: Optional[int]
    user_id: int
    provider: str
    type: PaymentMethodType
    provider_id: Optional[str] = None   # 渠道侧持有人ID（Stripe customer / PayPal 邮箱）
    external_id: Optional[str] = None   # 渠道侧支付方式ID
    metadata: dict[str, Any] = field(default_factory=dict)
    is_default: bool = False
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = PaymentMethodType(self.type)
        self.metadata = dict(self.metadata or {})
        self.expires_at = _ensure_utc(self.expires_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < utcnow()

    def display_name(self) -> str:
        meta = self.metadata or {}
        if self.type == PaymentMethodType.CARD:
            return f"**** {meta.get('last4', '****')} ({meta.get('brand', 'Card')})"
        if self.type == PaymentMethodType.BANK_ACCOUNT:
            return f"Bank ****{meta.get('last4', '****')}"
        return meta.get("email") or "PayPal Account"

    def deactivate(self) -> None:
        self.is_active = False
        self.is_default = False
        self.updated_at = utcnow()


@dataclass
class Transaction:
    """交易流水 - 仅在 Payment 成功（扣款或退款）时生成"""

    id: Optional[int]
    payment_id: int
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus = TransactionStatus.SUCCEEDED
    uuid: str = field(default_factory=_new_uuid)
    provider_transaction_id: Optional[str] = None
    provider_response: dict[str, Any] = field(default_factory=dict)
    reference: Optional[str] = None
    notes: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = TransactionType(self.type)
        self.status = TransactionStatus(self.status)
        self.amount = to_money(self.amount)
        self.provider_response = dict(self.provider_response or {})
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)

    @classmethod
    def for_payment(cls, payment: Payment, type_: TransactionType, *, notes: Optional[str] = None) -> "Transaction":
        """按 Payment 当前状态生成流水：成功即 succeeded，失败/取消为 failed，其余 pending"""
        if payment.id is None:
            raise ValueError("Payment must be persisted before recording a transaction")
        if payment.status == PaymentStatus.SUCCEEDED:
            status = TransactionStatus.SUCCEEDED
        elif payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELED):
            status = TransactionStatus.FAILED
        else:
            status = TransactionStatus.PENDING
        return cls(
            id=None,
            payment_id=payment.id,
            type=type_,
            amount=payment.amount,
            currency=payment.currency,
            status=status,
            provider_transaction_id=payment.provider_payment_id,
            provider_response=payment.provider_response,
            reference=payment.uuid,
            notes=notes,
            processed_at=utcnow() if status == TransactionStatus.SUCCEEDED else None,
        )

    def formatted_amount(self) -> str:
        return f"{self.amount:.2f} {self.currency.upper()}"


@dataclass
class Webhook:
    """渠道回调记录，(provider, provider_event_id) 唯一，用于去重与重放检测"""

    id: Optional[int]
    provider: str
    event_type: str
    provider_event_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: WebhookStatus = WebhookStatus.PENDING
    attempts: int = 0
    uuid: str = field(default_factory=_new_uuid)
    processed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = WebhookStatus(self.status)
        self.payload = dict(self.payload or {})
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)

    def is_processed(self) -> bool:
        return self.status == WebhookStatus.PROCESSED

    def start_attempt(self) -> None:
        self.attempts += 1
        self.status = WebhookStatus.PROCESSING
        self.updated_at = utcnow()

    def mark_processed(self) -> None:
        self.status = WebhookStatus.PROCESSED
        self.processed_at = utcnow()
        self.error_message = None
        self.updated_at = self.processed_at

    def mark_failed(self, error_message: str) -> None:
        self.status = WebhookStatus.FAILED
        self.error_message = error_message
        self.updated_at = utcnow()
