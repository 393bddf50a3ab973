from __future__ import annotations

import asyncio
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from functools import partial
import logging
import time
from typing import Awaitable, Callable, Protocol
import weakref

from storefront.errors import (
    ActivationError,
    FailureKind,
    ReconciliationError,
    TariffResolutionError,
    VerificationError,
)
from storefront.models.payment import (
    FallbackContext,
    PaymentMode,
    PaymentRecord,
    PaymentSession,
    PaymentStatus,
    ProcessingState,
    SubscriptionResult,
)
from storefront.models.tariff import Tariff, TariffCatalog
from storefront.services.log_context import order_context
from storefront.services.normalizer import normalize
from storefront.services.poller import PollerTimings, PollOutcome, StagedPoller
from storefront.services.verification import PaymentVerifier
from storefront.services.window import WindowHandle, WindowObserver

logger = logging.getLogger(__name__)

FAILURE_MESSAGES = {
    FailureKind.DECLINED: "Платеж не прошел",
    FailureKind.BUDGET_EXHAUSTED: (
        "Платеж не завершен. Если вы уже оплатили, нажмите «Проверить оплату»."
    ),
    FailureKind.RESOLUTION_FATAL: (
        "Оплата получена, но подписку активировать не удалось. "
        "Перезапустите бота командой /start, мы уже разбираемся."
    ),
}


class GuardState(str, Enum):
    ACTIVATING = "activating"
    ACTIVATED = "activated"
    DECLINED = "declined"
    FATAL = "fatal"


class CheckOutcome(str, Enum):
    ACTIVATED = "activated"
    NOT_PAID = "not_paid"
    DECLINED = "declined"
    ALREADY_RESOLVED = "already_resolved"


class SubscriptionActivator(Protocol):
    async def create_subscription(
        self,
        *,
        user_id: int,
        tariff: Tariff,
        devices: int,
        period_months: int,
        test_period: bool,
        payment_mode: PaymentMode,
        discount: float,
    ) -> SubscriptionResult:
        ...


class ReconciliationView(Protocol):
    async def show_state(self, session: PaymentSession, state: ProcessingState) -> None:
        ...

    async def show_success(self, session: PaymentSession, result: SubscriptionResult) -> None:
        ...

    async def show_error(self, session: PaymentSession, failure: FailureKind, message: str) -> None:
        ...

    async def dismiss(self, session: PaymentSession) -> None:
        ...

    async def resync(self, session: PaymentSession) -> None:
        ...


@dataclass
class _OrderEntry:
    session: PaymentSession
    context: FallbackContext
    poller: StagedPoller | None = None
    task: asyncio.Task | None = None
    observer: WindowObserver | None = None
    idle_since: float | None = None


class ReconciliationCoordinator:
    def __init__(
        self,
        verifier: PaymentVerifier,
        activator: SubscriptionActivator,
        catalog: TariffCatalog,
        view: ReconciliationView,
        timings: PollerTimings | None = None,
        window_poll_interval: float = 1.0,
        window_settle_delay: float = 2.0,
        notify_admin: Callable[[str], Awaitable[None]] | None = None,
        guard_history_size: int = 1000,
        idle_retention: float = 3600.0,
    ):
        self._verifier = verifier
        self._activator = activator
        self._catalog = catalog
        self._view = view
        self._timings = timings or PollerTimings()
        self._window_poll_interval = window_poll_interval
        self._window_settle_delay = window_settle_delay
        self._notify_admin = notify_admin
        self._guard_history_size = guard_history_size
        self._idle_retention = idle_retention
        self._guards: dict[str, GuardState] = {}
        self._orders: dict[str, _OrderEntry] = {}

    def guard_state(self, order_id: str) -> GuardState | None:
        return self._guards.get(order_id)

    def session(self, order_id: str) -> PaymentSession | None:
        entry = self._orders.get(order_id)
        return entry.session if entry else None

    def is_active(self, order_id: str) -> bool:
        entry = self._orders.get(order_id)
        return bool(entry and entry.task and not entry.task.done())

    async def start(
        self,
        session: PaymentSession,
        context: FallbackContext,
        window: WindowHandle | None = None,
    ) -> None:
        order_id = session.order_id
        self._prune_idle()
        if order_id in self._guards:
            logger.info("Order already resolved, not polling: order_id=%s", order_id)
            return
        if order_id in self._orders:
            await self._teardown(order_id)

        entry = _OrderEntry(session=session, context=context)
        entry.poller = StagedPoller(
            order_id,
            check=partial(self._check_once, entry),
            on_state=partial(self._show_state, session),
            on_paid=partial(self._resolve_from_poller, order_id),
            on_failure=partial(self._on_poll_failure, entry),
            on_reset=partial(self._on_poll_reset, session),
            timings=self._timings,
        )
        self._orders[order_id] = entry
        entry.task = asyncio.create_task(self._drive(entry))
        if window is not None:
            session.window_ref = weakref.ref(window)
            entry.observer = WindowObserver(
                window,
                partial(self._on_window_closed, order_id),
                interval=self._window_poll_interval,
            )
            entry.observer.start()
        logger.info(
            "Payment reconciliation started: order_id=%s user_id=%s amount=%s",
            order_id,
            session.user_id,
            session.amount,
        )

    async def resolve(self, order_id: str, record: PaymentRecord) -> SubscriptionResult | None:
        if record.status is not PaymentStatus.PAID:
            raise ValueError(f"Only paid records can be resolved, got {record.status.value}")
        if order_id in self._guards:
            logger.info(
                "Skipping duplicate resolution: order_id=%s guard=%s",
                order_id,
                self._guards[order_id].value,
            )
            return None
        entry = self._orders.get(order_id)
        if entry is None:
            raise ReconciliationError(order_id, f"Unknown order {order_id}")
        self._set_guard(order_id, GuardState.ACTIVATING)
        session = entry.session

        try:
            tariff = self._resolve_tariff(record, entry.context)
        except TariffResolutionError as exc:
            await self._fail_resolution(entry, str(exc))
            raise

        logger.info(
            "Payment confirmed, activating subscription: order_id=%s tariff=%s devices=%s months=%s",
            order_id,
            tariff.id,
            record.devices,
            record.period_months,
        )
        try:
            result = await self._activator.create_subscription(
                user_id=session.user_id,
                tariff=tariff,
                devices=record.devices or 1,
                period_months=record.period_months or 1,
                test_period=False,
                payment_mode=PaymentMode.PAY_NOW,
                discount=record.discount or 0.0,
            )
        except Exception as exc:
            logger.exception("Subscription activation failed: order_id=%s", order_id)
            await self._fail_resolution(entry, f"Subscription activation failed: {exc}")
            raise ActivationError(order_id, str(exc)) from exc

        self._set_guard(order_id, GuardState.ACTIVATED)
        await self._teardown(order_id, forget=True)
        await self._notify("show_state", session, ProcessingState.SUCCESS)
        await self._notify("show_success", session, result)
        await self._notify("resync", session)
        logger.info("Subscription activated: order_id=%s user_id=%s", order_id, session.user_id)
        return result

    async def check_now(self, order_id: str) -> CheckOutcome:
        self._prune_idle()
        guard = self._guards.get(order_id)
        if guard is GuardState.DECLINED:
            return CheckOutcome.DECLINED
        if guard is not None:
            return CheckOutcome.ALREADY_RESOLVED
        entry = self._orders.get(order_id)
        if entry is None:
            raise ReconciliationError(order_id, f"Unknown order {order_id}")

        with order_context(order_id, entry.session.user_id):
            logger.info("Manual payment check: order_id=%s", order_id)
            raw = await self._verifier.verify(order_id)
            record = normalize(raw, order_id=order_id, fallback=entry.context)
            if record is None or record.status is PaymentStatus.PENDING:
                return CheckOutcome.NOT_PAID
            if record.status.is_terminal_negative:
                if order_id not in self._guards:
                    self._set_guard(order_id, GuardState.DECLINED)
                await self._teardown(order_id, forget=True)
                await self._notify(
                    "show_error",
                    entry.session,
                    FailureKind.DECLINED,
                    FAILURE_MESSAGES[FailureKind.DECLINED],
                )
                return CheckOutcome.DECLINED
            result = await self.resolve(order_id, record)
        return CheckOutcome.ACTIVATED if result is not None else CheckOutcome.ALREADY_RESOLVED

    async def recover(
        self,
        session: PaymentSession,
        context: FallbackContext,
        attempts: int = 4,
        interval: float = 4.0,
    ) -> CheckOutcome:
        """Re-check an order the user returned to from the payment page.

        The order may be unknown to this process (after a restart), so it is
        registered without a poller and kept for the manual check.
        """
        order_id = session.order_id
        self._prune_idle()
        if order_id not in self._guards and order_id not in self._orders:
            self._orders[order_id] = _OrderEntry(session=session, context=context, idle_since=time.monotonic())
            logger.info("Recovering payment after return: order_id=%s user_id=%s", order_id, session.user_id)

        outcome = CheckOutcome.NOT_PAID
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await asyncio.sleep(interval)
            try:
                outcome = await self.check_now(order_id)
            except VerificationError as exc:
                logger.warning("Recovery check inconclusive: attempt=%s/%s error=%s", attempt, attempts, exc)
                continue
            if outcome is not CheckOutcome.NOT_PAID:
                return outcome
        return outcome

    async def cancel(self, order_id: str) -> None:
        if self._guards.get(order_id) is GuardState.ACTIVATING:
            logger.info("Activation in progress, cancel ignored: order_id=%s", order_id)
            return
        await self._teardown(order_id, forget=True)
        logger.info("Payment reconciliation cancelled: order_id=%s", order_id)

    async def close(self) -> None:
        for order_id in list(self._orders):
            await self._teardown(order_id, forget=True)

    async def _drive(self, entry: _OrderEntry) -> None:
        order_id = entry.session.order_id
        with order_context(order_id, entry.session.user_id):
            try:
                outcome = await entry.poller.run()
            except ReconciliationError:
                logger.exception("Payment reconciliation failed: order_id=%s", order_id)
                return
            if self._superseded(order_id):
                return
            if outcome is PollOutcome.DECLINED:
                await self._teardown(order_id, forget=True)
            elif outcome is PollOutcome.EXHAUSTED:
                await self._teardown(order_id)
                entry.idle_since = time.monotonic()

    async def _check_once(self, entry: _OrderEntry) -> PaymentRecord | None:
        order_id = entry.session.order_id
        try:
            raw = await self._verifier.verify(order_id)
        except VerificationError as exc:
            logger.warning("Payment check inconclusive: %s", exc)
            return None
        return normalize(raw, order_id=order_id, fallback=entry.context)

    async def _resolve_from_poller(self, order_id: str, record: PaymentRecord) -> None:
        await self.resolve(order_id, record)

    async def _on_poll_failure(self, entry: _OrderEntry, kind: FailureKind) -> None:
        order_id = entry.session.order_id
        if self._superseded(order_id):
            logger.info("Order resolved by another path, failure not shown: order_id=%s", order_id)
            return
        if kind is FailureKind.DECLINED and order_id not in self._guards:
            self._set_guard(order_id, GuardState.DECLINED)
        await self._notify("show_error", entry.session, kind, FAILURE_MESSAGES[kind])

    async def _on_poll_reset(self, session: PaymentSession) -> None:
        if not self._superseded(session.order_id):
            await self._notify("dismiss", session)

    async def _on_window_closed(self, order_id: str) -> None:
        await asyncio.sleep(self._window_settle_delay)
        entry = self._orders.get(order_id)
        if entry is None or order_id in self._guards:
            return
        with order_context(order_id, entry.session.user_id):
            record = await self._check_once(entry)
            if record is None or record.status is not PaymentStatus.PAID:
                logger.info(
                    "Payment window closed, payment not confirmed yet: order_id=%s status=%s",
                    order_id,
                    record.status.value if record else "inconclusive",
                )
                return
            try:
                await self.resolve(order_id, record)
            except ReconciliationError:
                logger.exception("Payment reconciliation failed after window close: order_id=%s", order_id)

    def _resolve_tariff(self, record: PaymentRecord, context: FallbackContext) -> Tariff:
        tariff = (
            self._catalog.get(record.tariff_id)
            or self._catalog.find_by_name(record.tariff_name)
            or self._catalog.get(context.tariff_id)
            or self._catalog.get(context.current_tariff_id)
        )
        if tariff is None:
            raise TariffResolutionError(
                record.order_id,
                f"No tariff can be resolved for paid order {record.order_id} "
                f"(tariff_id={record.tariff_id}, tariff_name={record.tariff_name}, "
                f"ordered={context.tariff_id}, current={context.current_tariff_id})",
            )
        return tariff

    async def _fail_resolution(self, entry: _OrderEntry, reason: str) -> None:
        order_id = entry.session.order_id
        self._set_guard(order_id, GuardState.FATAL)
        logger.error("Paid order could not be activated: order_id=%s reason=%s", order_id, reason)
        await self._teardown(order_id, forget=True)
        await self._notify("show_state", entry.session, ProcessingState.ERROR)
        await self._notify(
            "show_error",
            entry.session,
            FailureKind.RESOLUTION_FATAL,
            FAILURE_MESSAGES[FailureKind.RESOLUTION_FATAL],
        )
        if self._notify_admin:
            try:
                await self._notify_admin(
                    "⚠️ Оплата получена, но подписка не активирована.\n"
                    f"Order: {order_id}\n"
                    f"User: {entry.session.user_id}\n"
                    f"Причина: {reason}"
                )
            except Exception:
                logger.exception("Failed to notify admins: order_id=%s", order_id)

    async def _show_state(self, session: PaymentSession, state: ProcessingState) -> None:
        if state is ProcessingState.ERROR and self._superseded(session.order_id):
            return
        await self._notify("show_state", session, state)

    def _superseded(self, order_id: str) -> bool:
        # activating, activated or fatal: the poller no longer owns the order
        return self._guards.get(order_id) not in (None, GuardState.DECLINED)

    def _set_guard(self, order_id: str, state: GuardState) -> None:
        self._guards.pop(order_id, None)
        self._guards[order_id] = state
        excess = len(self._guards) - self._guard_history_size
        if excess <= 0:
            return
        for stale_id, stale_state in list(self._guards.items()):
            if excess <= 0:
                break
            if stale_id == order_id or stale_state is GuardState.ACTIVATING:
                continue
            del self._guards[stale_id]
            excess -= 1

    def _prune_idle(self) -> None:
        now = time.monotonic()
        for order_id, entry in list(self._orders.items()):
            if entry.idle_since is None or now - entry.idle_since < self._idle_retention:
                continue
            if entry.task is not None and not entry.task.done():
                continue
            del self._orders[order_id]
            logger.info("Idle order forgotten: order_id=%s", order_id)

    async def _notify(self, method: str, session: PaymentSession, *args: object) -> None:
        try:
            await getattr(self._view, method)(session, *args)
        except Exception:
            logger.exception("Payment view update failed: method=%s order_id=%s", method, session.order_id)

    async def _teardown(self, order_id: str, forget: bool = False) -> None:
        entry = self._orders.pop(order_id, None) if forget else self._orders.get(order_id)
        if entry is None:
            return
        current = asyncio.current_task()
        task = entry.task
        if task is not None and task is not current and not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        if entry.observer is not None:
            await entry.observer.stop()
