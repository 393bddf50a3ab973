from __future__ import annotations

from aiogram.types import InlineKeyboardButton, InlineKeyboardMarkup, KeyboardButton, ReplyKeyboardMarkup

from storefront.models.payment import PaymentMode
from storefront.models.tariff import Tariff, TariffCatalog

BUY_BUTTON = "💳 Купить VPN"
STATUS_BUTTON = "📊 Статус"
DEVICE_OPTIONS = (1, 2, 3, 5)
PERIOD_OPTIONS = (1, 3, 6, 12)


def main_menu() -> ReplyKeyboardMarkup:
    return ReplyKeyboardMarkup(
        keyboard=[[KeyboardButton(text=BUY_BUTTON), KeyboardButton(text=STATUS_BUTTON)]],
        resize_keyboard=True,
    )


def tariffs_keyboard(catalog: TariffCatalog) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text=f"{tariff.name} · {tariff.price:g} ₽/мес", callback_data=f"buy:{tariff.id}")]
            for tariff in catalog
        ]
    )


def devices_keyboard(tariff: Tariff) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [
                InlineKeyboardButton(text=f"📱 {count}", callback_data=f"dev:{tariff.id}:{count}")
                for count in DEVICE_OPTIONS
            ],
            [InlineKeyboardButton(text="◀️ Назад", callback_data="nav:tariffs")],
        ]
    )


def periods_keyboard(tariff: Tariff, devices: int) -> InlineKeyboardMarkup:
    rows = []
    for months in PERIOD_OPTIONS:
        label = f"{months} мес."
        if months == 12:
            label = f"{label} (−10%)"
        rows.append([InlineKeyboardButton(text=label, callback_data=f"period:{tariff.id}:{devices}:{months}")])
    rows.append([InlineKeyboardButton(text="◀️ Назад", callback_data=f"buy:{tariff.id}")])
    return InlineKeyboardMarkup(inline_keyboard=rows)


def payment_mode_keyboard(tariff: Tariff, devices: int, months: int) -> InlineKeyboardMarkup:
    prefix = f"mode:{tariff.id}:{devices}:{months}"
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="💳 Оплатить сейчас", callback_data=f"{prefix}:{PaymentMode.PAY_NOW.value}")],
            [InlineKeyboardButton(text="🕒 Оплатить позже", callback_data=f"{prefix}:{PaymentMode.PAY_LATER.value}")],
        ]
    )


def payment_keyboard(order_id: str, payment_url: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="💳 Перейти к оплате", url=payment_url)],
            [InlineKeyboardButton(text="✅ Я оплатил", callback_data=f"paydone:{order_id}")],
            [InlineKeyboardButton(text="🔄 Проверить оплату", callback_data=f"paycheck:{order_id}")],
            [InlineKeyboardButton(text="✖️ Отменить", callback_data=f"paycancel:{order_id}")],
        ]
    )


def manual_check_keyboard(order_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup(
        inline_keyboard=[
            [InlineKeyboardButton(text="🔄 Проверить оплату", callback_data=f"paycheck:{order_id}")],
        ]
    )


def connection_keyboard(link: str) -> InlineKeyboardMarkup | None:
    if not link.startswith(("http://", "https://")):
        return None
    return InlineKeyboardMarkup(
        inline_keyboard=[[InlineKeyboardButton(text="🔌 Подключиться", url=link)]]
    )
