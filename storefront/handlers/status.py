from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.filters import CommandObject, CommandStart
from aiogram.types import Message

from storefront.config import Settings
from storefront.errors import ReconciliationError
from storefront.keyboards.common import STATUS_BUTTON, connection_keyboard, main_menu, manual_check_keyboard
from storefront.models.payment import FallbackContext, PaymentSession
from storefront.services.reconciliation import CheckOutcome, GuardState, ReconciliationCoordinator
from storefront.services.subscription import SubscriptionService
from storefront.services.telegram_view import format_status_text

router = Router()
logger = logging.getLogger(__name__)

ORDER_PAYLOAD_PREFIX = "order_"


def order_id_from_payload(payload: str | None) -> str | None:
    """Order id from a ``/start order_<id>`` deep link, the payment page's return URL."""
    if not payload:
        return None
    payload = payload.strip()
    if not payload.startswith(ORDER_PAYLOAD_PREFIX):
        return None
    return payload[len(ORDER_PAYLOAD_PREFIX):] or None


@router.message(CommandStart())
async def start(
    message: Message,
    command: CommandObject,
    settings: Settings,
    subscription_service: SubscriptionService,
    coordinator: ReconciliationCoordinator,
) -> None:
    order_id = order_id_from_payload(command.args)
    if order_id:
        await _recover_payment(message, order_id, settings, subscription_service, coordinator)
        return
    await message.answer(
        "Привет! Здесь можно оформить VPN и проверить статус подписки.",
        reply_markup=main_menu(),
    )


@router.message(F.text == STATUS_BUTTON)
async def show_status(message: Message, subscription_service: SubscriptionService) -> None:
    try:
        status = await subscription_service.get_status(message.from_user.id)
    except Exception:
        logger.exception("Failed to load subscription status: user_id=%s", message.from_user.id)
        await message.answer("Не удалось получить статус. Попробуйте позже.")
        return
    keyboard = connection_keyboard(status.subscription_link) if status else None
    if status and not keyboard:
        await message.answer("ℹ️ Ссылка на подписку еще не готова.")
    await message.answer(format_status_text(status), reply_markup=keyboard or main_menu())


async def _recover_payment(
    message: Message,
    order_id: str,
    settings: Settings,
    subscription_service: SubscriptionService,
    coordinator: ReconciliationCoordinator,
) -> None:
    user_id = message.from_user.id
    known = coordinator.session(order_id)
    if known and known.user_id != user_id:
        await message.answer("Заказ не найден.", reply_markup=main_menu())
        return

    current_tariff_id = None
    try:
        status = await subscription_service.get_status(user_id)
        current_tariff_id = status.tariff_id if status else None
    except Exception:
        logger.warning("Current subscription unavailable for recovery: user_id=%s", user_id, exc_info=True)

    session = known or PaymentSession(
        order_id=order_id,
        payment_url="",
        amount=0.0,
        user_id=user_id,
        chat_id=message.chat.id,
    )
    declined_before = coordinator.guard_state(order_id) is GuardState.DECLINED
    await message.answer("⏳ Проверяем оплату заказа…")
    try:
        outcome = await coordinator.recover(
            session,
            FallbackContext(current_tariff_id=current_tariff_id),
            attempts=settings.recovery_attempts,
            interval=settings.recovery_interval,
        )
    except ReconciliationError as exc:
        logger.error("Payment recovery could not resolve order: order_id=%s error=%s", order_id, exc)
        await message.answer("Заказ не найден или требует проверки поддержкой.", reply_markup=main_menu())
        return

    # activation and a fresh decline are reported by the payment view
    if outcome is CheckOutcome.NOT_PAID:
        await message.answer(
            "Оплата еще не поступила. Если вы уже оплатили, проверьте через минуту.",
            reply_markup=manual_check_keyboard(order_id),
        )
    elif outcome is CheckOutcome.ALREADY_RESOLVED:
        await message.answer("Заказ уже обработан.", reply_markup=main_menu())
    elif outcome is CheckOutcome.DECLINED and declined_before:
        await message.answer("Платеж не прошел.", reply_markup=main_menu())
