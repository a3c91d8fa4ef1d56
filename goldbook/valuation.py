from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from goldbook.ledger import average_cost
from goldbook.models import (
    ASSET_TYPES,
    BASE_CURRENCY,
    GRAM_EQUIVALENTS,
    HistoryEntry,
    Lot,
    PortfolioState,
)
from goldbook.numbers import is_positive_finite, round_to, safe_add, safe_divide, safe_multiply, safe_subtract, safe_sum

# Display currency -> asset whose price converts base-currency values into it.
_DISPLAY_RATE_ASSET: dict[str, str] = {
    "USD": "usd",
    "EUR": "eur",
    "GOLD": "gold_24k",
}


@dataclass(frozen=True)
class Valuation:
    currency: str
    total: float
    excluded: list[str] = field(default_factory=list)  # lot ids with no usable price

    @property
    def partial(self) -> bool:
        return bool(self.excluded)


@dataclass(frozen=True)
class ProfitLoss:
    amount: float
    percentage: float


@dataclass(frozen=True)
class AssetSummary:
    asset_type: str
    amount: float
    price: float | None
    change_pct: float | None
    value_base: float | None
    value: float | None
    average_cost: float | None
    total_cost: float | None
    profit_loss: ProfitLoss | None


def value_in_base(asset_type: str, amount: float, prices: dict[str, float | None]) -> float | None:
    if asset_type == BASE_CURRENCY:
        return amount
    price = prices.get(asset_type)
    if price is None:
        return None
    return safe_multiply(amount, price)


def convert_from_base(value: float, currency: str, prices: dict[str, float | None]) -> float | None:
    if currency == "TRY":
        return value
    rate_asset = _DISPLAY_RATE_ASSET.get(currency)
    if rate_asset is None:
        raise ValueError(f"unknown display currency: {currency!r}")
    rate = prices.get(rate_asset)
    if rate is None:
        return None
    return safe_divide(value, rate)


def lot_value(lot: Lot, currency: str, prices: dict[str, float | None]) -> float | None:
    """Value of one lot in `currency`, or None when any price on the way is unknown."""
    if currency == "GOLD" and lot.asset_type in GRAM_EQUIVALENTS:
        return safe_multiply(lot.amount, GRAM_EQUIVALENTS[lot.asset_type])
    base = value_in_base(lot.asset_type, lot.amount, prices)
    if base is None:
        return None
    return convert_from_base(base, currency, prices)


def portfolio_value(lots: Iterable[Lot], prices: dict[str, float | None], currency: str = "TRY") -> Valuation:
    total = 0.0
    excluded: list[str] = []
    for lot in lots:
        v = lot_value(lot, currency, prices)
        if v is None:
            excluded.append(lot.id)
            continue
        total = safe_add(total, v)
    return Valuation(currency=currency, total=round_to(total, 6), excluded=excluded)


def total_cost(amount: float, avg_cost: float | None) -> float | None:
    if avg_cost is None or not is_positive_finite(amount):
        return None
    return safe_multiply(amount, avg_cost)


def profit_loss(current_value_base: float | None, avg_cost: float | None, amount: float) -> ProfitLoss | None:
    if current_value_base is None or not is_positive_finite(avg_cost) or not is_positive_finite(amount):
        return None
    cost = safe_multiply(amount, avg_cost)
    if cost <= 0:
        return None
    diff = safe_subtract(current_value_base, cost)
    pct = safe_divide(diff * 100, cost)
    if pct is None:
        return None
    return ProfitLoss(amount=round_to(diff, 2), percentage=round_to(pct, 2))


def summarize(state: PortfolioState, currency: str = "TRY") -> list[AssetSummary]:
    """One row per held asset type, in the canonical asset order."""
    out: list[AssetSummary] = []
    history: list[HistoryEntry] = state.history
    for asset_type in ASSET_TYPES:
        lots = state.lots_of(asset_type)
        if not lots:
            continue
        amount = safe_sum(lot.amount for lot in lots)
        base = value_in_base(asset_type, amount, state.prices)
        values = [lot_value(lot, currency, state.prices) for lot in lots]
        value = None if any(v is None for v in values) else safe_sum(values)
        avg = average_cost(asset_type, history, amount)
        out.append(
            AssetSummary(
                asset_type=asset_type,
                amount=amount,
                price=state.prices.get(asset_type),
                change_pct=state.changes.get(asset_type),
                value_base=base,
                value=value,
                average_cost=avg,
                total_cost=total_cost(amount, avg),
                profit_loss=profit_loss(base, avg, amount),
            )
        )
    return out
