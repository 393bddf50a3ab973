from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from storefront.models.tariff import Tariff

YEARLY_DISCOUNT = 0.1


class PaymentMode(str, Enum):
    PAY_NOW = "pay_now"
    PAY_LATER = "pay_later"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal_negative(self) -> bool:
        return self in (PaymentStatus.FAILED, PaymentStatus.CANCELLED)


class ProcessingState(str, Enum):
    PROCESSING = "processing"
    WAITING = "waiting"
    CHECKING = "checking"
    SUCCESS = "success"
    ERROR = "error"


PROCESSING_MESSAGES = {
    ProcessingState.PROCESSING: "Бухгалтер создает платежку",
    ProcessingState.WAITING: "Завершите оплату в открывшемся окне",
    ProcessingState.CHECKING: "Проверяем платеж",
    ProcessingState.SUCCESS: "Подписка активирована",
    ProcessingState.ERROR: "Платеж не прошел",
}


@dataclass(frozen=True)
class PurchaseDraft:
    tariff_id: str
    devices: int
    period_months: int
    discount: float
    payment_mode: PaymentMode

    @classmethod
    def for_tariff(
        cls,
        tariff: Tariff,
        devices: int = 1,
        period_months: int = 1,
        payment_mode: PaymentMode = PaymentMode.PAY_NOW,
    ) -> PurchaseDraft:
        discount = YEARLY_DISCOUNT if period_months == 12 else 0.0
        return cls(
            tariff_id=tariff.id,
            devices=devices,
            period_months=period_months,
            discount=discount,
            payment_mode=payment_mode,
        )

    def total_price(self, tariff: Tariff) -> float:
        gross = tariff.price * self.devices * self.period_months
        return round(gross * (1 - self.discount), 2)


@dataclass(frozen=True)
class PurchaseResult:
    order_id: str | None
    payment_url: str | None
    amount: float | None
    requires_payment: bool


@dataclass
class PaymentSession:
    order_id: str
    payment_url: str
    amount: float
    user_id: int
    chat_id: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: int | None = None
    window_ref: Callable[[], Any] | None = None


@dataclass(frozen=True)
class PaymentRecord:
    order_id: str
    status: PaymentStatus
    amount: float
    tariff_id: str | None = None
    tariff_name: str | None = None
    devices: int | None = None
    period_months: int | None = None
    discount: float | None = None
    original_status: str | None = None
    user_ref: str | None = None


@dataclass(frozen=True)
class FallbackContext:
    tariff_id: str | None = None
    tariff_name: str | None = None
    devices: int | None = None
    period_months: int | None = None
    discount: float | None = None
    amount: float | None = None
    current_tariff_id: str | None = None

    @classmethod
    def from_draft(
        cls,
        draft: PurchaseDraft,
        tariff: Tariff | None = None,
        amount: float | None = None,
        current_tariff_id: str | None = None,
    ) -> FallbackContext:
        return cls(
            tariff_id=draft.tariff_id,
            tariff_name=tariff.name if tariff else None,
            devices=draft.devices,
            period_months=draft.period_months,
            discount=draft.discount,
            amount=amount,
            current_tariff_id=current_tariff_id,
        )


@dataclass(frozen=True)
class SubscriptionResult:
    vpn_link: str
    tariff_name: str
    devices: int
    period_months: int
    payment_status: str
    expires_at: datetime | None
