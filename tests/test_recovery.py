from __future__ import annotations

import pytest

from conftest import FakeActivator, FakeVerifier, paid_answer, pending_answer
from storefront.errors import FailureKind, VerificationError
from storefront.handlers.status import order_id_from_payload
from storefront.models.payment import FallbackContext, PaymentSession
from storefront.services.reconciliation import CheckOutcome, GuardState


@pytest.fixture()
def returned_session() -> PaymentSession:
    return PaymentSession(order_id="o1", payment_url="", amount=0.0, user_id=42, chat_id=42)


@pytest.mark.asyncio
async def test_unknown_order_activates_with_current_tariff(make_coordinator, returned_session, view) -> None:
    activator = FakeActivator()
    coordinator = make_coordinator(FakeVerifier(paid_answer("o1")), activator)

    outcome = await coordinator.recover(returned_session, FallbackContext(current_tariff_id="multi"), interval=0.01)

    assert outcome is CheckOutcome.ACTIVATED
    assert len(activator.calls) == 1
    assert activator.calls[0]["tariff"].id == "multi"
    assert coordinator.guard_state("o1") is GuardState.ACTIVATED
    assert ("success", "MULTI") in view.events


@pytest.mark.asyncio
async def test_pending_then_paid_is_retried(make_coordinator, returned_session) -> None:
    verifier = FakeVerifier(pending_answer(), paid_answer("o1"))
    activator = FakeActivator()
    coordinator = make_coordinator(verifier, activator)

    outcome = await coordinator.recover(returned_session, FallbackContext(current_tariff_id="super"), interval=0.01)

    assert outcome is CheckOutcome.ACTIVATED
    assert len(verifier.calls) == 2
    assert len(activator.calls) == 1


@pytest.mark.asyncio
async def test_unpaid_order_is_kept_for_manual_check(make_coordinator, returned_session) -> None:
    verifier = FakeVerifier(pending_answer())
    coordinator = make_coordinator(verifier)

    outcome = await coordinator.recover(returned_session, FallbackContext(), attempts=3, interval=0.01)

    assert outcome is CheckOutcome.NOT_PAID
    assert len(verifier.calls) == 3
    assert coordinator.session("o1") is returned_session
    assert coordinator.guard_state("o1") is None
    assert not coordinator.is_active("o1")
    assert await coordinator.check_now("o1") is CheckOutcome.NOT_PAID


@pytest.mark.asyncio
async def test_transport_errors_count_as_attempts(make_coordinator, returned_session) -> None:
    verifier = FakeVerifier(VerificationError("o1", "timeout"), paid_answer("o1"))
    activator = FakeActivator()
    coordinator = make_coordinator(verifier, activator)

    outcome = await coordinator.recover(returned_session, FallbackContext(current_tariff_id="super"), interval=0.01)

    assert outcome is CheckOutcome.ACTIVATED
    assert len(verifier.calls) == 2
    assert len(activator.calls) == 1


@pytest.mark.asyncio
async def test_resolved_order_is_not_rechecked(make_coordinator, returned_session) -> None:
    verifier = FakeVerifier(paid_answer("o1"))
    activator = FakeActivator()
    coordinator = make_coordinator(verifier, activator)
    await coordinator.recover(returned_session, FallbackContext(current_tariff_id="super"), interval=0.01)
    calls = len(verifier.calls)

    outcome = await coordinator.recover(returned_session, FallbackContext(current_tariff_id="super"), interval=0.01)

    assert outcome is CheckOutcome.ALREADY_RESOLVED
    assert len(verifier.calls) == calls
    assert len(activator.calls) == 1


@pytest.mark.asyncio
async def test_declined_order_is_reported(make_coordinator, returned_session, view) -> None:
    verifier = FakeVerifier({"success": True, "result": {"orderid": "o1", "statuspay": "rejected"}})
    coordinator = make_coordinator(verifier)

    outcome = await coordinator.recover(returned_session, FallbackContext(), interval=0.01)

    assert outcome is CheckOutcome.DECLINED
    assert len(verifier.calls) == 1
    assert coordinator.guard_state("o1") is GuardState.DECLINED
    assert view.errors() == [FailureKind.DECLINED]


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ("order_abc-123", "abc-123"),
        (" order_o1 ", "o1"),
        ("order_", None),
        ("ref_42", None),
        ("", None),
        (None, None),
    ],
)
def test_order_id_from_start_payload(payload, expected) -> None:
    assert order_id_from_payload(payload) == expected
