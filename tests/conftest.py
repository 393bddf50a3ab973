from __future__ import annotations

import asyncio
from typing import Any

import pytest

from storefront.errors import FailureKind
from storefront.models.payment import (
    FallbackContext,
    PaymentMode,
    PaymentSession,
    ProcessingState,
    SubscriptionResult,
)
from storefront.models.tariff import Tariff, TariffCatalog
from storefront.services.poller import PollerTimings
from storefront.services.reconciliation import ReconciliationCoordinator


class FakeVerifier:
    """Replays queued verify answers; the last one repeats."""

    def __init__(self, *answers: Any):
        self.answers = list(answers)
        self.calls: list[str] = []

    async def verify(self, order_id: str) -> Any:
        self.calls.append(order_id)
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer


class FakeActivator:
    def __init__(self, fail: Exception | None = None, delay: float = 0):
        self.calls: list[dict[str, Any]] = []
        self.fail = fail
        self.delay = delay

    async def create_subscription(self, **kwargs: Any) -> SubscriptionResult:
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise self.fail
        tariff: Tariff = kwargs["tariff"]
        return SubscriptionResult(
            vpn_link=f"https://vpn.example/sub/{kwargs['user_id']}",
            tariff_name=tariff.name,
            devices=kwargs["devices"],
            period_months=kwargs["period_months"],
            payment_status="paid" if kwargs["payment_mode"] is PaymentMode.PAY_NOW else "unpaid",
            expires_at=None,
        )


class RecordingView:
    def __init__(self) -> None:
        self.events: list[tuple[Any, ...]] = []

    async def show_state(self, session: PaymentSession, state: ProcessingState) -> None:
        self.events.append(("state", state))

    async def show_success(self, session: PaymentSession, result: SubscriptionResult) -> None:
        self.events.append(("success", result.tariff_name))

    async def show_error(self, session: PaymentSession, failure: FailureKind, message: str) -> None:
        self.events.append(("error", failure))

    async def dismiss(self, session: PaymentSession) -> None:
        self.events.append(("dismiss",))

    async def resync(self, session: PaymentSession) -> None:
        self.events.append(("resync",))

    def states(self) -> list[ProcessingState]:
        return [event[1] for event in self.events if event[0] == "state"]

    def errors(self) -> list[FailureKind]:
        return [event[1] for event in self.events if event[0] == "error"]


def paid_answer(order_id: str = "o1", **extra: Any) -> dict[str, Any]:
    return {"success": True, "result": [{"orderid": order_id, "statuspay": "Оплачено", "sum": "150", **extra}]}


def pending_answer(order_id: str = "o1") -> dict[str, Any]:
    return {"success": True, "payment": {"orderId": order_id, "status": "pending"}}


@pytest.fixture()
def timings() -> PollerTimings:
    return PollerTimings(
        waiting_delay=0.01,
        checking_delay=0.01,
        attempt_interval=0.01,
        max_attempts=6,
        error_reset_delay=0.01,
    )


@pytest.fixture()
def catalog() -> TariffCatalog:
    return TariffCatalog(
        [
            Tariff(id="super", name="SUPER", price=150, allow_pay_later=True),
            Tariff(id="multi", name="MULTI", price=300, traffic_gb=500),
        ]
    )


@pytest.fixture()
def session() -> PaymentSession:
    return PaymentSession(
        order_id="o1",
        payment_url="https://pay.example/checkout?label=o1",
        amount=150.0,
        user_id=42,
        chat_id=42,
        message_id=100,
    )


@pytest.fixture()
def fallback() -> FallbackContext:
    return FallbackContext(tariff_id="super", tariff_name="SUPER", devices=1, period_months=1, discount=0.0, amount=150.0)


@pytest.fixture()
def view() -> RecordingView:
    return RecordingView()


@pytest.fixture()
def make_coordinator(catalog: TariffCatalog, timings: PollerTimings, view: RecordingView):
    def factory(verifier: FakeVerifier, activator: FakeActivator | None = None, **kwargs: Any):
        coordinator = ReconciliationCoordinator(
            verifier,
            activator or FakeActivator(),
            catalog,
            view,
            timings=kwargs.pop("timings", timings),
            window_poll_interval=kwargs.pop("window_poll_interval", 0.01),
            window_settle_delay=kwargs.pop("window_settle_delay", 0.01),
            **kwargs,
        )
        return coordinator

    return factory

