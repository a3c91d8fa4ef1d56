from goldbook.ledger import Ledger
from goldbook.models import PriceSnapshot, empty_change_table, empty_price_table
from goldbook.storage import Database, PortfolioRepository


def test_repository_restores_ledger_state(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'data' / 'goldbook.db'}"
    repo = PortfolioRepository(Database(url))
    ledger = Ledger(repository=repo)
    ledger.append("gold_22k", 5, "bracelet", price_at_acquisition=2500)
    ledger.append("gold_22k", 3)
    ledger.append("gold_22k", 2)
    ledger.set_total("gold_22k", 6)
    ledger.append("usd", 100)
    sell = empty_price_table()
    sell.update({"usd": 32.0, "gold_22k": 2700.0})
    changes = empty_change_table()
    changes["usd"] = -0.3
    ledger.apply_prices(PriceSnapshot(sell_prices=sell, changes=changes, fetched_at=1))

    restored = Ledger.from_repository(PortfolioRepository(Database(url)))
    assert [(lot.asset_type, lot.amount) for lot in restored.lots] == [("gold_22k", 5), ("gold_22k", 1), ("usd", 100)]
    assert restored.lots[0].description == "bracelet"
    assert restored.lots[0].price_at_acquisition == 2500
    assert [e.kind for e in restored.history] == ["add", "remove", "add", "add", "add"]
    assert restored.history[1].previous_amount == 10
    assert restored.state.prices["usd"] == 32.0
    assert restored.state.prices["silver"] is None
    assert restored.state.prices["try"] == 1.0
    assert restored.state.changes["usd"] == -0.3


def test_history_trimmed_in_storage() -> None:
    repo = PortfolioRepository(Database("sqlite://"), history_cap=3)
    ledger = Ledger(repository=repo, history_cap=3)
    for i in range(6):
        ledger.append("eur", i + 1)
    state = repo.load_state()
    assert [e.lot.amount for e in state.history] == [6, 5, 4]
    assert len(state.lots) == 6


def test_clear_keeps_prices() -> None:
    repo = PortfolioRepository(Database("sqlite://"))
    ledger = Ledger(repository=repo)
    ledger.append("silver", 10)
    sell = empty_price_table()
    sell["silver"] = 38.0
    ledger.apply_prices(PriceSnapshot(sell_prices=sell, changes=empty_change_table(), fetched_at=1))
    ledger.reset()

    state = repo.load_state()
    assert state.lots == []
    assert state.history == []
    assert state.prices["silver"] == 38.0


def test_unknown_prices_do_not_overwrite_saved_ones() -> None:
    repo = PortfolioRepository(Database("sqlite://"))
    prices = empty_price_table()
    prices["usd"] = 32.0
    repo.save_prices(prices, empty_change_table())
    repo.save_prices(empty_price_table(), empty_change_table())
    assert repo.load_state().prices["usd"] == 32.0


def test_save_state_replaces_everything() -> None:
    repo = PortfolioRepository(Database("sqlite://"))
    Ledger(repository=repo).append("usd", 999)

    source = Ledger()
    source.append("gold_full", 1, price_at_acquisition=18000)
    source.append("gold_full", 2)
    source.set_total("gold_full", 2.5)
    source.state.prices["gold_full"] = 19000.0
    repo.save_state(source.state)

    state = repo.load_state()
    assert [lot.amount for lot in state.lots] == [1, 1.5]
    assert [e.kind for e in state.history] == ["remove", "add", "add"]
    assert state.prices["gold_full"] == 19000.0
