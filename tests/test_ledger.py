import asyncio
import math
import time

import pytest

from goldbook.ledger import Ledger, average_cost, cleanup_history
from goldbook.models import ASSET_TYPES, HistoryEntry, Lot, PriceSnapshot, empty_change_table, empty_price_table
from goldbook.numbers import nearly_equal
from goldbook.storage import Database, PortfolioRepository


def _assert_lot_sums(ledger: Ledger) -> None:
    for t in ASSET_TYPES:
        amounts = [lot.amount for lot in ledger.lots if lot.asset_type == t]
        assert nearly_equal(sum(amounts), ledger.total_of(t))
        assert all(a > 0 for a in amounts)


def _ledger_with(*amounts: float, asset_type: str = "gold_22k") -> Ledger:
    ledger = Ledger()
    for a in amounts:
        assert ledger.append(asset_type, a) is not None
    return ledger


def test_append_creates_lot_and_history() -> None:
    ledger = Ledger()
    lot = ledger.append("gold_quarter", 2, "wedding gift", price_at_acquisition=4000)
    assert lot is not None
    assert ledger.total_of("gold_quarter") == 2
    assert ledger.history[0].kind == "add"
    assert ledger.history[0].lot.id == lot.id
    assert ledger.history[0].description == "wedding gift"


@pytest.mark.parametrize("bad", [0, -1, math.nan, math.inf, None, "3", True])
def test_append_ignores_invalid_amounts(bad) -> None:
    ledger = Ledger()
    assert ledger.append("usd", bad) is None
    assert ledger.lots == []
    assert ledger.history == []


def test_lifo_reduction_consumes_newest_first() -> None:
    ledger = _ledger_with(5, 3, 2)
    first_id = ledger.lots[0].id

    entry = ledger.set_total("gold_22k", 6)
    assert entry is not None
    assert [lot.amount for lot in ledger.lots] == [5, 1]
    assert ledger.lots[0].id == first_id
    assert entry.kind == "remove"
    assert entry.lot.amount == 4
    assert entry.previous_amount == 10
    # Three adds plus exactly one remove.
    assert [e.kind for e in ledger.history] == ["remove", "add", "add", "add"]
    _assert_lot_sums(ledger)


def test_reduction_to_zero_deletes_every_lot_of_that_type() -> None:
    ledger = _ledger_with(1.5, 2.5)
    ledger.append("usd", 100)
    ledger.set_total("gold_22k", 0)
    assert ledger.total_of("gold_22k") == 0
    assert ledger.total_of("usd") == 100
    assert [lot.asset_type for lot in ledger.lots] == ["usd"]


def test_set_total_increase_appends_delta() -> None:
    ledger = _ledger_with(1.25)
    entry = ledger.set_total("gold_22k", 2, price_at_acquisition=2500)
    assert entry is not None and entry.kind == "add"
    assert [lot.amount for lot in ledger.lots] == [1.25, 0.75]
    assert ledger.lots[-1].price_at_acquisition == 2500


def test_set_total_noops() -> None:
    ledger = _ledger_with(3)
    before = (list(ledger.lots), list(ledger.history))
    assert ledger.set_total("gold_22k", 3) is None
    assert ledger.set_total("gold_22k", 3 + 1e-9) is None
    assert ledger.set_total("gold_22k", -1) is None
    assert ledger.set_total("gold_22k", math.nan) is None
    assert (ledger.lots, ledger.history) == before


def test_lot_sum_invariant_under_mixed_operations() -> None:
    ledger = Ledger()
    ledger.append("silver", 10.1)
    ledger.append("silver", 0.2)
    ledger.set_total("silver", 5.05)
    ledger.append("eur", 50)
    ledger.set_total("silver", 7.3)
    ledger.set_total("eur", 12.34)
    _assert_lot_sums(ledger)
    assert ledger.total_of("silver") == 7.3
    assert ledger.total_of("eur") == 12.34


def test_remove_lot() -> None:
    ledger = _ledger_with(5, 3)
    target = ledger.lots[0]
    entry = ledger.remove_lot(target.id)
    assert entry is not None
    assert entry.kind == "remove"
    assert entry.lot.id == target.id
    assert entry.previous_amount == 8
    assert ledger.total_of("gold_22k") == 3
    assert ledger.remove_lot("does-not-exist") is None


def test_reset_keeps_prices() -> None:
    ledger = _ledger_with(5)
    sell = empty_price_table()
    sell["gold_22k"] = 2700.0
    ledger.apply_prices(PriceSnapshot(sell_prices=sell, changes=empty_change_table(), fetched_at=1))
    assert ledger.reset() is True
    assert ledger.lots == []
    assert ledger.history == []
    assert ledger.state.prices["gold_22k"] == 2700.0


def test_apply_prices_keeps_known_values_over_unknown() -> None:
    ledger = Ledger()
    first = empty_price_table()
    first.update({"usd": 32.0, "eur": 35.0})
    changes = empty_change_table()
    changes["usd"] = 0.5
    ledger.apply_prices(PriceSnapshot(sell_prices=first, changes=changes, fetched_at=1))

    second = empty_price_table()
    second.update({"usd": 32.5, "try": 7.0})
    updated = ledger.apply_prices(PriceSnapshot(sell_prices=second, changes=empty_change_table(), fetched_at=2))

    assert updated == ["usd"]
    assert ledger.state.prices["usd"] == 32.5
    assert ledger.state.prices["eur"] == 35.0
    assert ledger.state.prices["try"] == 1.0
    assert ledger.state.changes["usd"] == 0.5


def test_history_is_capped() -> None:
    ledger = Ledger(history_cap=5)
    for i in range(8):
        ledger.append("usd", i + 1)
    assert len(ledger.history) == 5
    assert ledger.history[0].lot.amount == 8
    assert len(ledger.lots) == 8


def test_cleanup_history_keeps_newest() -> None:
    entries = [HistoryEntry(kind="add", lot=Lot(asset_type="usd", amount=i + 1)) for i in range(4)]
    assert cleanup_history(entries, 2) == entries[:2]
    assert cleanup_history(entries, 10) is entries


def test_duplicate_operation_dropped_while_persisting() -> None:
    repo = PortfolioRepository(Database("sqlite://"))

    async def run():
        ledger = Ledger(repository=repo)
        assert ledger.append("usd", 10) is not None
        await ledger.drain()

        first = ledger.set_total("usd", 4)
        second = ledger.set_total("usd", 2)
        assert first is not None
        assert second is None
        # A different asset type is not blocked.
        assert ledger.append("eur", 1) is not None
        await ledger.drain()

        third = ledger.set_total("usd", 2)
        assert third is not None
        await ledger.drain()
        return ledger

    ledger = asyncio.run(run())
    assert ledger.total_of("usd") == 2
    assert ledger.lock.held_keys() == []
    restored = repo.load_state()
    assert [(lot.asset_type, lot.amount) for lot in restored.lots] == [("usd", 2), ("eur", 1)]


def test_persistence_failure_is_swallowed_and_lock_released() -> None:
    class _BrokenRepo:
        history_cap = 1000

        def record_append(self, lot, entry):
            raise RuntimeError("database is locked")

    async def run():
        ledger = Ledger(repository=_BrokenRepo())
        assert ledger.append("usd", 1) is not None
        await ledger.drain()
        assert ledger.append("usd", 1) is not None
        await ledger.drain()
        return ledger

    ledger = asyncio.run(run())
    assert ledger.total_of("usd") == 2
    assert ledger.lock.held_keys() == []


class _SlowAppendRepo(PortfolioRepository):
    def record_append(self, lot, entry):
        time.sleep(0.2)
        super().record_append(lot, entry)


def test_writes_commit_in_mutation_order() -> None:
    repo = _SlowAppendRepo(Database("sqlite://"))

    async def run():
        ledger = Ledger(repository=repo)
        ledger.append("usd", 5)
        ledger.set_total("usd", 2)
        await ledger.drain()
        return ledger

    ledger = asyncio.run(run())
    assert ledger.total_of("usd") == 2
    restored = repo.load_state()
    assert [(lot.asset_type, lot.amount) for lot in restored.lots] == [("usd", 2)]
    assert [e.kind for e in restored.history] == ["remove", "add"]


def test_reset_after_slow_append_leaves_nothing_stored() -> None:
    repo = _SlowAppendRepo(Database("sqlite://"))

    async def run():
        ledger = Ledger(repository=repo)
        ledger.append("usd", 5)
        assert ledger.reset() is True
        await ledger.drain()
        return ledger

    ledger = asyncio.run(run())
    assert ledger.lots == []
    assert repo.load_state().lots == []


def test_reload_keeps_creation_order_for_lifo() -> None:
    repo = PortfolioRepository(Database("sqlite://"))
    oldest = Lot(id="1700000000001-000000", asset_type="eur", amount=2)
    middle = Lot(id="1700000000002-000001", asset_type="eur", amount=1)
    newest = Lot(id="1700000000003-000002", asset_type="eur", amount=3)
    for lot in (newest, middle, oldest):
        repo.record_append(lot, HistoryEntry(kind="add", lot=lot))

    ledger = Ledger.from_repository(repo)
    assert [lot.amount for lot in ledger.lots] == [2, 1, 3]
    ledger.set_total("eur", 2.5)
    assert [lot.amount for lot in ledger.lots] == [2, 0.5]


def test_average_cost_lifo_walk() -> None:
    ledger = Ledger()
    ledger.append("gold_24k", 2, price_at_acquisition=2000)
    ledger.append("gold_24k", 1, price_at_acquisition=2600)
    assert ledger.average_cost("gold_24k") == pytest.approx((2 * 2000 + 2600) / 3)


def test_average_cost_base_currency_and_empty() -> None:
    assert average_cost("try", [], 500) == 1.0
    assert average_cost("usd", [], 0) is None


def test_average_cost_gap_is_unknown() -> None:
    ledger = Ledger()
    ledger.append("usd", 100)
    ledger.append("usd", 50, price_at_acquisition=32)
    # The newest 50 are priced, the older 100 are not.
    assert ledger.average_cost("usd") is None
    assert average_cost("usd", ledger.history, 50) == 32


def test_average_cost_unaccounted_remainder_is_unknown() -> None:
    history = [HistoryEntry(kind="add", lot=Lot(asset_type="eur", amount=5, price_at_acquisition=35))]
    assert average_cost("eur", history, 8) is None


def test_average_cost_after_removal() -> None:
    ledger = Ledger()
    ledger.append("gold_22k", 10, price_at_acquisition=2000)
    ledger.set_total("gold_22k", 5)
    assert ledger.average_cost("gold_22k") == 2000
