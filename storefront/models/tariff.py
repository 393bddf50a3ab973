from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class Tariff:
    id: str
    name: str
    price: float
    traffic_gb: float | None = None
    allow_pay_later: bool = False


class TariffCatalog:
    def __init__(self, tariffs: Iterable[Tariff]):
        self._tariffs = list(tariffs)
        self._by_id = {tariff.id: tariff for tariff in self._tariffs}

    def __iter__(self):
        return iter(self._tariffs)

    def __len__(self) -> int:
        return len(self._tariffs)

    def get(self, tariff_id: str | None) -> Tariff | None:
        if not tariff_id:
            return None
        return self._by_id.get(str(tariff_id))

    def find_by_name(self, name: str | None) -> Tariff | None:
        if not name:
            return None
        wanted = name.strip().lower()
        for tariff in self._tariffs:
            if tariff.name.strip().lower() == wanted:
                return tariff
        return None
