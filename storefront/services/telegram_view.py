from __future__ import annotations

import logging

from aiogram import Bot
from aiogram.exceptions import TelegramBadRequest, TelegramForbiddenError

from storefront.errors import FailureKind
from storefront.keyboards.common import connection_keyboard, manual_check_keyboard, payment_keyboard
from storefront.models.payment import (
    PROCESSING_MESSAGES,
    PaymentSession,
    ProcessingState,
    SubscriptionResult,
)
from storefront.services.subscription import SubscriptionService, SubscriptionStatus

logger = logging.getLogger(__name__)

TERMINAL_STATES = {ProcessingState.SUCCESS, ProcessingState.ERROR}


def format_processing_text(session: PaymentSession, state: ProcessingState) -> str:
    return (
        f"⏳ {PROCESSING_MESSAGES[state]}\n"
        "━━━━━━━━━━━━\n"
        f"Заказ: {session.order_id}\n"
        f"Сумма: {session.amount:.2f} ₽"
    )


def format_status_text(status: SubscriptionStatus | None) -> str:
    if status is None:
        return "Подписка не активна. Оформи доступ за пару минут."
    status_label = "активна" if status.status == "active" else status.status
    expires_text = status.expires_at.strftime("%d.%m.%Y") if status.expires_at else "—"
    return (
        "🛡 Статус доступа\n"
        "━━━━━━━━━━━━\n"
        f"Статус: {status_label}\n"
        f"Трафик: {status.used_traffic_gb:.2f} GB\n"
        f"Действует до: {expires_text}"
    )


class TelegramPaymentView:
    def __init__(self, bot: Bot, subscription_service: SubscriptionService):
        self.bot = bot
        self.subscription_service = subscription_service

    async def show_state(self, session: PaymentSession, state: ProcessingState) -> None:
        if session.message_id is None:
            return
        markup = None if state in TERMINAL_STATES else payment_keyboard(session.order_id, session.payment_url)
        try:
            await self.bot.edit_message_text(
                format_processing_text(session, state),
                chat_id=session.chat_id,
                message_id=session.message_id,
                reply_markup=markup,
            )
        except TelegramBadRequest as exc:
            if "message is not modified" not in str(exc):
                raise

    async def show_success(self, session: PaymentSession, result: SubscriptionResult) -> None:
        text = (
            "🛡 Оплата подтверждена\n"
            "━━━━━━━━━━━━\n"
            f"Тариф: {result.tariff_name}\n"
            f"Устройств: {result.devices}\n"
            f"Период: {result.period_months} мес."
        )
        keyboard = connection_keyboard(result.vpn_link)
        if not keyboard:
            logger.warning("Access link invalid for connection button: order_id=%s", session.order_id)
            text = f"{text}\n\nℹ️ Ссылка на подписку появится в статусе через минуту."
        await self._send(session.chat_id, text, keyboard)

    async def show_error(self, session: PaymentSession, failure: FailureKind, message: str) -> None:
        keyboard = manual_check_keyboard(session.order_id) if failure is FailureKind.BUDGET_EXHAUSTED else None
        await self._send(session.chat_id, f"❗️ {message}", keyboard)

    async def dismiss(self, session: PaymentSession) -> None:
        if session.message_id is None:
            return
        try:
            await self.bot.edit_message_reply_markup(
                chat_id=session.chat_id,
                message_id=session.message_id,
                reply_markup=None,
            )
        except TelegramBadRequest:
            logger.info("Processing message already cleared: order_id=%s", session.order_id)

    async def resync(self, session: PaymentSession) -> None:
        status = await self.subscription_service.get_status(session.user_id)
        keyboard = connection_keyboard(status.subscription_link) if status else None
        await self._send(session.chat_id, format_status_text(status), keyboard)

    async def _send(self, chat_id: int, text: str, keyboard=None) -> None:
        try:
            await self.bot.send_message(chat_id, text, reply_markup=keyboard)
        except TelegramForbiddenError:
            logger.info("Message skipped, bot blocked: chat_id=%s", chat_id)
