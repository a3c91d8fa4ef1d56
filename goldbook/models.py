from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Literal, get_args

from pydantic import BaseModel, Field

AssetType = Literal["gold_22k", "gold_24k", "gold_quarter", "gold_full", "usd", "eur", "try", "silver"]
ASSET_TYPES: tuple[AssetType, ...] = get_args(AssetType)
BASE_CURRENCY: AssetType = "try"

# Grams of gold per unit, used when totals are shown in gold.
GRAM_EQUIVALENTS: dict[str, float] = {
    "gold_22k": 1.0,
    "gold_24k": 1.0,
    "gold_quarter": 1.75,
    "gold_full": 7.0,
}

DisplayCurrency = Literal["TRY", "USD", "EUR", "GOLD"]

PriceTable = dict[str, "float | None"]

_id_counter = itertools.count()


def now_ms() -> int:
    return int(time.time() * 1000)


def now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


def new_lot_id() -> str:
    # Millisecond timestamp keeps ids sortable; the counter suffix keeps them unique within one ms.
    return f"{now_ms()}-{next(_id_counter):06d}"


def empty_price_table() -> PriceTable:
    table: PriceTable = {t: None for t in ASSET_TYPES}
    table[BASE_CURRENCY] = 1.0
    return table


def empty_change_table() -> PriceTable:
    return {t: None for t in ASSET_TYPES}


class Lot(BaseModel):
    id: str = Field(default_factory=new_lot_id)
    asset_type: AssetType
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    description: str | None = None
    acquired_at: str = Field(default_factory=now_iso)
    price_at_acquisition: float | None = Field(None, gt=0, allow_inf_nan=False, description="Per-unit price in the base currency")


class HistoryEntry(BaseModel):
    kind: Literal["add", "remove"]
    lot: Lot
    ts: str = Field(default_factory=now_iso)
    description: str | None = None
    previous_amount: float | None = None


class PortfolioState(BaseModel):
    lots: list[Lot] = Field(default_factory=list)
    prices: dict[str, float | None] = Field(default_factory=empty_price_table)
    changes: dict[str, float | None] = Field(default_factory=empty_change_table)
    history: list[HistoryEntry] = Field(default_factory=list)

    def lots_of(self, asset_type: str) -> list[Lot]:
        return [lot for lot in self.lots if lot.asset_type == asset_type]


@dataclass(frozen=True)
class PriceSnapshot:
    sell_prices: PriceTable
    changes: PriceTable
    fetched_at: int
    buy_prices: PriceTable | None = None
    is_from_backup: bool = False
    source: str = ""

    def tagged(self, *, is_from_backup: bool) -> "PriceSnapshot":
        return replace(self, is_from_backup=is_from_backup)

    def missing_sell_prices(self) -> list[str]:
        return [t for t in ASSET_TYPES if self.sell_prices.get(t) is None]
