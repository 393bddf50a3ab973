from __future__ import annotations

from aiogram.client.default import DefaultBotProperties
from aiogram.fsm.storage.memory import MemoryStorage

import logging
import asyncio

from aiogram import Bot, Dispatcher

from storefront.config import Settings
from storefront.handlers import purchase, status
from storefront.services.context import DependencyMiddleware
from storefront.services.marzban import MarzbanService
from storefront.services.purchase import PurchaseClient
from storefront.services.reconciliation import ReconciliationCoordinator
from storefront.services.subscription import SubscriptionService
from storefront.services.telegram_view import TelegramPaymentView
from storefront.services.verification import VerificationClient


async def main() -> None:
    settings = Settings()
    logging.basicConfig(level=settings.log_level)

    bot = Bot(
        token=settings.telegram_token,
        default=DefaultBotProperties(parse_mode="HTML"),
    )

    async def notify_admins(message: str) -> None:
        for admin_id in settings.telegram_admin_ids:
            await bot.send_message(admin_id, message)

    marzban = MarzbanService(
        settings.marzban_base_url,
        settings.marzban_api_key,
        notify_admin=notify_admins,
        timeout_seconds=settings.http_timeout_seconds,
    )
    subscription_service = SubscriptionService(marzban, settings.pay_later_grace_days)
    verification_client = VerificationClient(settings.payment_api_base_url, settings.http_timeout_seconds)
    purchase_client = PurchaseClient(settings.payment_api_base_url, settings.http_timeout_seconds)
    tariff_catalog = settings.tariff_catalog()
    coordinator = ReconciliationCoordinator(
        verification_client,
        subscription_service,
        tariff_catalog,
        TelegramPaymentView(bot, subscription_service),
        timings=settings.poller_timings(),
        window_poll_interval=settings.window_poll_interval,
        window_settle_delay=settings.window_settle_delay,
        notify_admin=notify_admins,
        guard_history_size=settings.guard_history_size,
        idle_retention=settings.idle_order_retention,
    )
    dp = Dispatcher(storage=MemoryStorage())

    dependencies = dict(
        settings=settings,
        tariff_catalog=tariff_catalog,
        subscription_service=subscription_service,
        purchase_client=purchase_client,
        coordinator=coordinator,
    )
    dp.message.middleware(DependencyMiddleware(**dependencies))
    dp.callback_query.middleware(DependencyMiddleware(**dependencies))

    dp.include_router(status.router)
    dp.include_router(purchase.router)

    try:
        await dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types())
    finally:
        await coordinator.close()
        await verification_client.close()
        await purchase_client.close()
        await marzban.close()
        await bot.session.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logging.info("Bot stopped")
