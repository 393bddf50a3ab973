from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from storefront.models.payment import PaymentMode
from storefront.models.tariff import Tariff
from storefront.services.subscription import SubscriptionService, username_for

MULTI = Tariff(id="multi", name="MULTI", price=300, traffic_gb=500)


class FakeMarzban:
    def __init__(self, existing: dict[str, Any] | None = None):
        self.users: dict[str, dict[str, Any]] = {}
        if existing:
            self.users[existing["username"]] = existing
        self.created: list[dict[str, Any]] = []
        self.updated: list[dict[str, Any]] = []

    async def get_user(self, username: str) -> dict[str, Any] | None:
        return self.users.get(username)

    async def create_user(self, username, expire_at, traffic_gb=None, note=None) -> dict[str, Any]:
        user = {"username": username, "expire": int(expire_at.timestamp()), "note": note}
        user["subscription_url"] = f"/sub/{username}"
        self.users[username] = user
        self.created.append({"username": username, "expire_at": expire_at, "traffic_gb": traffic_gb, "note": note})
        return user

    async def update_user(self, username, expire_at, traffic_gb=None, note=None) -> dict[str, Any]:
        user = self.users[username]
        user.update(expire=int(expire_at.timestamp()), note=note)
        self.updated.append({"username": username, "expire_at": expire_at, "traffic_gb": traffic_gb})
        return user

    async def get_subscription_link(self, username: str, user: dict[str, Any] | None = None) -> str:
        return f"https://panel.example{(user or self.users[username])['subscription_url']}"


async def _activate(service: SubscriptionService, **overrides: Any):
    kwargs = dict(
        user_id=7,
        tariff=MULTI,
        devices=2,
        period_months=3,
        test_period=False,
        payment_mode=PaymentMode.PAY_NOW,
        discount=0.0,
    )
    kwargs.update(overrides)
    return await service.create_subscription(**kwargs)


@pytest.mark.asyncio
async def test_new_paid_subscription_created_for_period() -> None:
    marzban = FakeMarzban()
    before = datetime.now(timezone.utc)

    result = await _activate(SubscriptionService(marzban))

    assert result.payment_status == "paid"
    assert result.vpn_link == "https://panel.example/sub/vpn_7"
    assert result.tariff_name == "MULTI"
    created = marzban.created[0]
    assert created["username"] == username_for(7)
    assert created["traffic_gb"] == 500
    assert created["note"] == "tariff=multi;devices=2;months=3;discount=0"
    assert created["expire_at"] - before >= timedelta(days=90)


@pytest.mark.asyncio
async def test_existing_subscription_is_extended_from_expiry() -> None:
    expiry = datetime.now(timezone.utc) + timedelta(days=10)
    marzban = FakeMarzban({"username": "vpn_7", "expire": int(expiry.timestamp()), "subscription_url": "/sub/vpn_7"})

    result = await _activate(SubscriptionService(marzban), period_months=1)

    assert marzban.created == []
    extended = marzban.updated[0]["expire_at"]
    assert timedelta(days=39) < extended - datetime.now(timezone.utc) <= timedelta(days=40)
    assert result.expires_at == extended


@pytest.mark.asyncio
async def test_pay_later_grants_grace_period() -> None:
    marzban = FakeMarzban()

    result = await _activate(SubscriptionService(marzban, pay_later_grace_days=5), payment_mode=PaymentMode.PAY_LATER)

    assert result.payment_status == "unpaid"
    assert result.expires_at - datetime.now(timezone.utc) <= timedelta(days=5)


@pytest.mark.asyncio
async def test_test_period_is_short_and_limited() -> None:
    marzban = FakeMarzban()

    result = await _activate(SubscriptionService(marzban), test_period=True)

    assert result.payment_status == "test_period"
    assert marzban.created[0]["traffic_gb"] == 3
    assert result.expires_at - datetime.now(timezone.utc) <= timedelta(days=1)


@pytest.mark.asyncio
async def test_status_reads_tariff_from_note() -> None:
    marzban = FakeMarzban(
        {
            "username": "vpn_7",
            "status": "active",
            "expire": 1_900_000_000,
            "used_traffic": 2 * 1024**3,
            "note": "tariff=multi;devices=2;months=3;discount=0",
            "subscription_url": "/sub/vpn_7",
        }
    )

    status = await SubscriptionService(marzban).get_status(7)

    assert status.tariff_id == "multi"
    assert status.used_traffic_gb == 2
    assert status.expires_at.tzinfo is timezone.utc
    assert await SubscriptionService(FakeMarzban()).get_status(8) is None
