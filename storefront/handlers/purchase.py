from __future__ import annotations

import logging

from aiogram import F, Router
from aiogram.types import CallbackQuery, Message

from storefront.errors import PurchaseError, ReconciliationError, VerificationError
from storefront.keyboards.common import (
    BUY_BUTTON,
    connection_keyboard,
    devices_keyboard,
    payment_keyboard,
    payment_mode_keyboard,
    periods_keyboard,
    tariffs_keyboard,
)
from storefront.models.payment import (
    FallbackContext,
    PaymentMode,
    PaymentSession,
    ProcessingState,
    PurchaseDraft,
)
from storefront.models.tariff import Tariff, TariffCatalog
from storefront.services.purchase import PurchaseClient
from storefront.services.reconciliation import CheckOutcome, ReconciliationCoordinator
from storefront.services.subscription import SubscriptionService
from storefront.services.telegram_view import format_processing_text
from storefront.services.window import ManualWindowHandle

router = Router()
logger = logging.getLogger(__name__)

CHECK_ANSWERS = {
    CheckOutcome.ACTIVATED: "Оплата подтверждена ✅",
    CheckOutcome.NOT_PAID: "Оплата еще не поступила. Попробуйте через минуту.",
    CheckOutcome.DECLINED: "Платеж не прошел.",
    CheckOutcome.ALREADY_RESOLVED: "Заказ уже обработан.",
}


@router.message(F.text == BUY_BUTTON)
async def choose_plan(message: Message, tariff_catalog: TariffCatalog) -> None:
    await message.answer("Выбери тариф:", reply_markup=tariffs_keyboard(tariff_catalog))


@router.callback_query(F.data == "nav:tariffs")
async def back_to_tariffs(callback: CallbackQuery, tariff_catalog: TariffCatalog) -> None:
    await callback.message.edit_text("Выбери тариф:", reply_markup=tariffs_keyboard(tariff_catalog))
    await callback.answer()


@router.callback_query(F.data.startswith("buy:"))
async def choose_devices(callback: CallbackQuery, tariff_catalog: TariffCatalog) -> None:
    tariff = tariff_catalog.get(callback.data.split(":", maxsplit=1)[1])
    if not tariff:
        await callback.answer("Тариф не найден.", show_alert=True)
        return
    await callback.message.edit_text(
        f"Тариф {tariff.name}. Сколько устройств подключить?",
        reply_markup=devices_keyboard(tariff),
    )
    await callback.answer()


@router.callback_query(F.data.startswith("dev:"))
async def choose_period(callback: CallbackQuery, tariff_catalog: TariffCatalog) -> None:
    _, tariff_id, devices = callback.data.split(":")
    tariff = tariff_catalog.get(tariff_id)
    if not tariff:
        await callback.answer("Тариф не найден.", show_alert=True)
        return
    await callback.message.edit_text(
        "Выбери срок подписки. За год скидка 10%.",
        reply_markup=periods_keyboard(tariff, int(devices)),
    )
    await callback.answer()


@router.callback_query(F.data.startswith("period:"))
async def confirm_period(
    callback: CallbackQuery,
    tariff_catalog: TariffCatalog,
    purchase_client: PurchaseClient,
    subscription_service: SubscriptionService,
    coordinator: ReconciliationCoordinator,
) -> None:
    _, tariff_id, devices, months = callback.data.split(":")
    tariff = tariff_catalog.get(tariff_id)
    if not tariff:
        await callback.answer("Тариф не найден.", show_alert=True)
        return
    if tariff.allow_pay_later:
        draft = PurchaseDraft.for_tariff(tariff, int(devices), int(months))
        await callback.message.edit_text(
            f"К оплате {draft.total_price(tariff):.2f} ₽. Как будете платить?",
            reply_markup=payment_mode_keyboard(tariff, int(devices), int(months)),
        )
        await callback.answer()
        return
    draft = PurchaseDraft.for_tariff(tariff, int(devices), int(months), PaymentMode.PAY_NOW)
    await _start_purchase(callback, tariff, draft, purchase_client, subscription_service, coordinator)


@router.callback_query(F.data.startswith("mode:"))
async def confirm_mode(
    callback: CallbackQuery,
    tariff_catalog: TariffCatalog,
    purchase_client: PurchaseClient,
    subscription_service: SubscriptionService,
    coordinator: ReconciliationCoordinator,
) -> None:
    _, tariff_id, devices, months, mode = callback.data.split(":")
    tariff = tariff_catalog.get(tariff_id)
    if not tariff:
        await callback.answer("Тариф не найден.", show_alert=True)
        return
    draft = PurchaseDraft.for_tariff(tariff, int(devices), int(months), PaymentMode(mode))
    await _start_purchase(callback, tariff, draft, purchase_client, subscription_service, coordinator)


@router.callback_query(F.data.startswith("paydone:"))
async def payment_window_closed(callback: CallbackQuery, coordinator: ReconciliationCoordinator) -> None:
    order_id = callback.data.split(":", maxsplit=1)[1]
    session = coordinator.session(order_id)
    if not session or session.user_id != callback.from_user.id:
        await callback.answer("Заказ не найден.", show_alert=True)
        return
    handle = session.window_ref() if session.window_ref else None
    if isinstance(handle, ManualWindowHandle):
        handle.mark_closed()
    await callback.answer("Проверяем оплату…")


@router.callback_query(F.data.startswith("paycheck:"))
async def manual_payment_check(callback: CallbackQuery, coordinator: ReconciliationCoordinator) -> None:
    order_id = callback.data.split(":", maxsplit=1)[1]
    session = coordinator.session(order_id)
    if session and session.user_id != callback.from_user.id:
        await callback.answer("Заказ не найден.", show_alert=True)
        return
    try:
        outcome = await coordinator.check_now(order_id)
    except VerificationError:
        logger.exception("Manual payment check failed: order_id=%s", order_id)
        await callback.answer("Не удалось проверить оплату. Попробуйте позже.", show_alert=True)
        return
    except ReconciliationError as exc:
        logger.error("Manual payment check could not resolve order: order_id=%s error=%s", order_id, exc)
        await callback.answer("Заказ не найден или требует проверки поддержкой.", show_alert=True)
        return
    await callback.answer(CHECK_ANSWERS[outcome], show_alert=outcome is not CheckOutcome.ACTIVATED)


@router.callback_query(F.data.startswith("paycancel:"))
async def cancel_payment(callback: CallbackQuery, coordinator: ReconciliationCoordinator) -> None:
    order_id = callback.data.split(":", maxsplit=1)[1]
    session = coordinator.session(order_id)
    if not session or session.user_id != callback.from_user.id:
        await callback.answer("Заказ не найден.", show_alert=True)
        return
    await coordinator.cancel(order_id)
    await callback.message.edit_text("Оплата отменена.")
    await callback.answer()


async def _start_purchase(
    callback: CallbackQuery,
    tariff: Tariff,
    draft: PurchaseDraft,
    purchase_client: PurchaseClient,
    subscription_service: SubscriptionService,
    coordinator: ReconciliationCoordinator,
) -> None:
    user_id = callback.from_user.id
    try:
        purchase = await purchase_client.create_purchase(user_id, draft, tariff)
    except PurchaseError as exc:
        logger.exception("Failed to create purchase: user_id=%s tariff=%s", user_id, tariff.id)
        await callback.message.answer(f"Не удалось открыть оплату: {exc}")
        await callback.answer()
        return

    if not purchase.requires_payment:
        await callback.answer()
        try:
            result = await subscription_service.create_subscription(
                user_id=user_id,
                tariff=tariff,
                devices=draft.devices,
                period_months=draft.period_months,
                test_period=False,
                payment_mode=draft.payment_mode,
                discount=draft.discount,
            )
        except Exception:
            logger.exception("Pay-later activation failed: user_id=%s tariff=%s", user_id, tariff.id)
            await callback.message.answer("Не удалось оформить подписку. Попробуйте позже.")
            return
        await callback.message.answer(
            "Подписка оформлена с оплатой позже. Доступ открыт на несколько дней, "
            "оплатите подписку до окончания срока.",
            reply_markup=connection_keyboard(result.vpn_link),
        )
        return

    current_tariff_id = None
    try:
        status = await subscription_service.get_status(user_id)
        current_tariff_id = status.tariff_id if status else None
    except Exception:
        logger.warning("Current subscription unavailable for fallback: user_id=%s", user_id, exc_info=True)

    session = PaymentSession(
        order_id=purchase.order_id,
        payment_url=purchase.payment_url,
        amount=purchase.amount or 0.0,
        user_id=user_id,
        chat_id=callback.message.chat.id,
    )
    sent = await callback.message.answer(
        format_processing_text(session, ProcessingState.PROCESSING),
        reply_markup=payment_keyboard(session.order_id, session.payment_url),
    )
    session.message_id = sent.message_id
    context = FallbackContext.from_draft(
        draft,
        tariff=tariff,
        amount=purchase.amount,
        current_tariff_id=current_tariff_id,
    )
    await coordinator.start(session, context, window=ManualWindowHandle())
    await callback.answer()
