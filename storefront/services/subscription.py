from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging

from storefront.models.payment import PaymentMode, SubscriptionResult
from storefront.models.tariff import Tariff
from storefront.services.marzban import MarzbanService

logger = logging.getLogger(__name__)

DAYS_PER_MONTH = 30
TEST_PERIOD = timedelta(days=1)
TEST_PERIOD_TRAFFIC_GB = 3


@dataclass(frozen=True)
class SubscriptionStatus:
    username: str
    status: str
    expires_at: datetime | None
    subscription_link: str
    used_traffic_gb: float
    tariff_id: str | None


def username_for(user_id: int) -> str:
    return f"vpn_{user_id}"


class SubscriptionService:
    def __init__(self, marzban: MarzbanService, pay_later_grace_days: int = 5):
        self.marzban = marzban
        self.pay_later_grace_days = pay_later_grace_days

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
        username = username_for(user_id)
        now = datetime.now(timezone.utc)
        traffic_gb = tariff.traffic_gb
        if test_period:
            term = TEST_PERIOD
            traffic_gb = TEST_PERIOD_TRAFFIC_GB
            payment_status = "test_period"
        elif payment_mode is PaymentMode.PAY_LATER:
            term = timedelta(days=self.pay_later_grace_days)
            payment_status = "unpaid"
        else:
            term = timedelta(days=DAYS_PER_MONTH * period_months)
            payment_status = "paid"

        note = f"tariff={tariff.id};devices={devices};months={period_months};discount={discount:g}"
        existing = await self.marzban.get_user(username)
        if existing:
            current_expiry = _from_timestamp(existing.get("expire"))
            start = max(now, current_expiry) if current_expiry else now
            expires_at = start + term
            user = await self.marzban.update_user(username, expires_at, traffic_gb=traffic_gb, note=note)
        else:
            expires_at = now + term
            user = await self.marzban.create_user(username, expires_at, traffic_gb=traffic_gb, note=note)

        vpn_link = await self.marzban.get_subscription_link(username, user or None)
        logger.info(
            "Subscription provisioned: user_id=%s tariff=%s months=%s status=%s expires_at=%s",
            user_id,
            tariff.id,
            period_months,
            payment_status,
            expires_at.isoformat(),
        )
        return SubscriptionResult(
            vpn_link=vpn_link,
            tariff_name=tariff.name,
            devices=devices,
            period_months=period_months,
            payment_status=payment_status,
            expires_at=expires_at,
        )

    async def get_status(self, user_id: int) -> SubscriptionStatus | None:
        username = username_for(user_id)
        user = await self.marzban.get_user(username)
        if not user:
            return None
        used_value = user.get("used_traffic") or 0
        used_bytes = int(used_value) if isinstance(used_value, (int, float)) else 0
        return SubscriptionStatus(
            username=username,
            status=str(user.get("status") or "unknown"),
            expires_at=_from_timestamp(user.get("expire")),
            subscription_link=await self.marzban.get_subscription_link(username, user),
            used_traffic_gb=used_bytes / 1024**3,
            tariff_id=_note_value(user.get("note"), "tariff"),
        )


def _from_timestamp(value: object) -> datetime | None:
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _note_value(note: object, key: str) -> str | None:
    if not isinstance(note, str):
        return None
    for part in note.split(";"):
        name, _, value = part.partition("=")
        if name.strip() == key and value.strip():
            return value.strip()
    return None
