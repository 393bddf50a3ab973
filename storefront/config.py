from __future__ import annotations

from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from storefront.models.tariff import Tariff, TariffCatalog
from storefront.services.poller import PollerTimings

DEFAULT_TARIFFS: list[dict[str, Any]] = [
    {"id": "super", "name": "SUPER", "price": 150, "traffic_gb": None, "allow_pay_later": True},
    {"id": "multi", "name": "MULTI", "price": 300, "traffic_gb": 500, "allow_pay_later": False},
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    telegram_token: str = ""
    telegram_admin_ids: list[int] = Field(default_factory=list)

    payment_api_base_url: str = "http://localhost:3001"
    marzban_base_url: str = "http://localhost:8000"
    marzban_api_key: str = ""
    http_timeout_seconds: float = 15

    stage_waiting_delay: float = 3
    stage_checking_delay: float = 2
    attempt_interval: float = 3
    max_attempts: int = 6
    error_reset_delay: float = 3
    window_poll_interval: float = 1
    window_settle_delay: float = 2
    recovery_attempts: int = 4
    recovery_interval: float = 4
    guard_history_size: int = 1000
    idle_order_retention: float = 3600

    pay_later_grace_days: int = 5
    log_level: str = "INFO"

    tariffs: list[dict[str, Any]] = Field(default_factory=lambda: [dict(t) for t in DEFAULT_TARIFFS])

    def poller_timings(self) -> PollerTimings:
        return PollerTimings(
            waiting_delay=self.stage_waiting_delay,
            checking_delay=self.stage_checking_delay,
            attempt_interval=self.attempt_interval,
            max_attempts=self.max_attempts,
            error_reset_delay=self.error_reset_delay,
        )

    def tariff_catalog(self) -> TariffCatalog:
        return TariffCatalog(
            Tariff(
                id=str(item["id"]),
                name=str(item.get("name") or item["id"]),
                price=float(item.get("price") or 0),
                traffic_gb=item.get("traffic_gb"),
                allow_pay_later=bool(item.get("allow_pay_later", False)),
            )
            for item in self.tariffs
        )
