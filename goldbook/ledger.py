from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Hashable, Iterable

from goldbook.errors import InvalidAmountError
from goldbook.guard import OperationLock
from goldbook.models import (
    ASSET_TYPES,
    BASE_CURRENCY,
    AssetType,
    HistoryEntry,
    Lot,
    PortfolioState,
    PriceSnapshot,
    new_lot_id,
    now_iso,
)
from goldbook.numbers import (
    EPSILON,
    is_non_negative_finite,
    is_positive_finite,
    nearly_equal,
    safe_add,
    safe_divide,
    safe_multiply,
    safe_subtract,
    safe_sum,
)
from goldbook.storage import PortfolioRepository

logger = logging.getLogger(__name__)

MAX_HISTORY_ITEMS = 1000


def cleanup_history(history: list[HistoryEntry], cap: int = MAX_HISTORY_ITEMS) -> list[HistoryEntry]:
    """Keep the newest `cap` entries (history is stored newest first)."""
    if len(history) <= cap:
        return history
    logger.info("history truncated from %d to %d entries", len(history), cap)
    return history[:cap]


def _check_asset_type(asset_type: str) -> None:
    if asset_type not in ASSET_TYPES:
        raise ValueError(f"unknown asset type: {asset_type!r}")


def _require_positive(amount: Any) -> float:
    if not is_positive_finite(amount):
        raise InvalidAmountError(f"amount must be a positive finite number, got {amount!r}")
    return float(amount)


def _require_non_negative(amount: Any) -> float:
    if not is_non_negative_finite(amount):
        raise InvalidAmountError(f"total must be a non-negative finite number, got {amount!r}")
    return float(amount)


def _clean_price(price: Any) -> float | None:
    if price is None:
        return None
    if not is_positive_finite(price):
        logger.debug("ignoring invalid acquisition price %r", price)
        return None
    return float(price)


class Ledger:
    """Lots, derived totals and history for one portfolio.

    Every mutation updates the in-memory state synchronously and then hands the
    matching repository call to a single writer thread. While that write is in
    flight the operation's lock key stays held, so a repeated tap on the same
    control is dropped rather than applied twice.
    """

    def __init__(
        self,
        state: PortfolioState | None = None,
        *,
        repository: PortfolioRepository | None = None,
        history_cap: int = MAX_HISTORY_ITEMS,
        lock: OperationLock | None = None,
    ) -> None:
        self.state = state or PortfolioState()
        self.repository = repository
        self.history_cap = history_cap
        self.lock = lock or OperationLock()
        self._pending: set[asyncio.Future] = set()
        self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="goldbook-writer")
        self.state.prices[BASE_CURRENCY] = 1.0

    @classmethod
    def from_repository(cls, repository: PortfolioRepository, **kwargs: Any) -> "Ledger":
        state = repository.load_state()
        kwargs.setdefault("history_cap", repository.history_cap)
        return cls(state, repository=repository, **kwargs)

    # -- queries ------------------------------------------------------------

    @property
    def lots(self) -> list[Lot]:
        return self.state.lots

    @property
    def history(self) -> list[HistoryEntry]:
        return self.state.history

    def total_of(self, asset_type: str) -> float:
        return safe_sum(lot.amount for lot in self.state.lots if lot.asset_type == asset_type)

    def totals(self) -> dict[str, float]:
        return {t: self.total_of(t) for t in ASSET_TYPES}

    def average_cost(self, asset_type: str) -> float | None:
        return average_cost(asset_type, self.state.history, self.total_of(asset_type))

    # -- persistence --------------------------------------------------------

    def _persist(self, key: Hashable | None, method: str, *args: Any, **kwargs: Any) -> None:
        """Queue a repository method on the writer thread; release `key` once it finished, whatever the outcome.

        The writer has a single worker, so writes commit in the order the
        mutations happened even though callers never wait for them.
        """
        if self.repository is None:
            self._release(key)
            return
        fn = partial(getattr(self.repository, method), *args, **kwargs)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            try:
                self._writer.submit(fn).result()
            except Exception:
                logger.exception("failed to persist %s", method)
            finally:
                self._release(key)
            return

        fut = loop.run_in_executor(self._writer, fn)
        self._pending.add(fut)
        fut.add_done_callback(partial(self._persisted, key, method))

    def _persisted(self, key: Hashable | None, what: str, fut: asyncio.Future) -> None:
        self._pending.discard(fut)
        self._release(key)
        if fut.cancelled():
            logger.warning("persisting %s was cancelled", what)
            return
        err = fut.exception()
        if err is not None:
            logger.error("failed to persist %s", what, exc_info=err)

    def _release(self, key: Hashable | None) -> None:
        if key is not None:
            self.lock.release(key)

    async def drain(self) -> None:
        """Wait until every detached write has settled."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    # -- mutations ----------------------------------------------------------

    def _record_history(self, entry: HistoryEntry) -> None:
        self.state.history.insert(0, entry)
        self.state.history = cleanup_history(self.state.history, self.history_cap)

    def _append_lot(
        self,
        key: Hashable,
        asset_type: AssetType,
        amount: float,
        description: str | None,
        price_at_acquisition: float | None,
    ) -> Lot:
        lot = Lot(
            asset_type=asset_type,
            amount=amount,
            description=description,
            price_at_acquisition=price_at_acquisition,
        )
        entry = HistoryEntry(kind="add", lot=lot.model_copy(), description=description)
        self.state.lots.append(lot)
        self._record_history(entry)
        self._persist(key, "record_append", lot.model_copy(), entry)
        return lot

    def append(
        self,
        asset_type: AssetType,
        amount: float,
        description: str | None = None,
        price_at_acquisition: float | None = None,
    ) -> Lot | None:
        _check_asset_type(asset_type)
        try:
            amount = _require_positive(amount)
        except InvalidAmountError as e:
            logger.debug("append ignored: %s", e)
            return None

        key = ("append", asset_type)
        if not self.lock.try_acquire(key):
            return None
        try:
            return self._append_lot(key, asset_type, amount, description, _clean_price(price_at_acquisition))
        except Exception:
            self.lock.release(key)
            raise

    def set_total(
        self,
        asset_type: AssetType,
        new_total: float,
        description: str | None = None,
        price_at_acquisition: float | None = None,
    ) -> HistoryEntry | None:
        """Move the asset's total to `new_total`.

        Increases become one new lot. Decreases consume lots newest first (LIFO):
        fully covered lots are deleted and the boundary lot is shrunk in place.
        Either way exactly one history entry is written. Returns that entry, or
        None when nothing changed.
        """
        _check_asset_type(asset_type)
        try:
            new_total = _require_non_negative(new_total)
        except InvalidAmountError as e:
            logger.debug("set_total ignored: %s", e)
            return None

        current = self.total_of(asset_type)
        if nearly_equal(new_total, current):
            return None

        key = ("set_total", asset_type)
        if not self.lock.try_acquire(key):
            return None
        try:
            delta = safe_subtract(new_total, current)
            if delta > 0:
                self._append_lot(key, asset_type, delta, description, _clean_price(price_at_acquisition))
                return self.state.history[0]
            return self._reduce(key, asset_type, -delta, current, description)
        except Exception:
            self.lock.release(key)
            raise

    def _reduce(
        self,
        key: Hashable,
        asset_type: AssetType,
        to_remove: float,
        previous_total: float,
        description: str | None,
    ) -> HistoryEntry:
        remaining = to_remove
        deleted: list[str] = []
        updated: dict[str, float] = {}
        for lot in reversed(self.state.lots):
            if remaining <= EPSILON:
                break
            if lot.asset_type != asset_type:
                continue
            if lot.amount <= remaining + EPSILON:
                deleted.append(lot.id)
                remaining = safe_subtract(remaining, lot.amount)
            else:
                lot.amount = safe_subtract(lot.amount, remaining)
                updated[lot.id] = lot.amount
                remaining = 0.0

        gone = set(deleted)
        self.state.lots = [lot for lot in self.state.lots if lot.id not in gone]

        removed = Lot(
            id=new_lot_id(),
            asset_type=asset_type,
            amount=to_remove,
            description=description,
            acquired_at=now_iso(),
        )
        entry = HistoryEntry(kind="remove", lot=removed, description=description, previous_amount=previous_total)
        self._record_history(entry)
        self._persist(key, "record_reduction", deleted=deleted, updated=updated, entry=entry)
        return entry

    def remove_lot(self, lot_id: str) -> HistoryEntry | None:
        lot = next((lot for lot in self.state.lots if lot.id == lot_id), None)
        if lot is None:
            logger.debug("remove_lot ignored: unknown lot %s", lot_id)
            return None

        key = ("remove_lot", lot.asset_type)
        if not self.lock.try_acquire(key):
            return None
        try:
            previous_total = self.total_of(lot.asset_type)
            self.state.lots = [it for it in self.state.lots if it.id != lot_id]
            entry = HistoryEntry(
                kind="remove",
                lot=lot.model_copy(),
                description=lot.description,
                previous_amount=previous_total,
            )
            self._record_history(entry)
            self._persist(key, "record_removal", lot_id, entry)
            return entry
        except Exception:
            self.lock.release(key)
            raise

    def reset(self) -> bool:
        key = ("reset", None)
        if not self.lock.try_acquire(key):
            return False
        self.state.lots = []
        self.state.history = []
        self._persist(key, "clear")
        return True

    def apply_prices(self, snapshot: PriceSnapshot) -> list[str]:
        """Merge a snapshot into the price table; unknown values never overwrite known ones.

        Returns the asset types whose sell price was updated.
        """
        updated: list[str] = []
        for asset_type in ASSET_TYPES:
            if asset_type == BASE_CURRENCY:
                continue
            price = snapshot.sell_prices.get(asset_type)
            if price is not None and is_non_negative_finite(price):
                self.state.prices[asset_type] = float(price)
                updated.append(asset_type)
            change = snapshot.changes.get(asset_type)
            if change is not None:
                self.state.changes[asset_type] = change
        self.state.prices[BASE_CURRENCY] = 1.0
        if self.repository is not None and updated:
            self._persist(None, "save_prices", dict(self.state.prices), dict(self.state.changes))
        return updated


def average_cost(asset_type: str, history: Iterable[HistoryEntry], current_total: float) -> float | None:
    """Per-unit acquisition cost of the units still held, or None if it cannot be known.

    History is walked newest first. Add entries of this asset type cover the
    remaining units (each needs a price, or the result is unknown); remove
    entries add their amount back to the counter. The result is the cost of the
    covered units divided by their count, not by `current_total`: once a removal
    has pushed the walk past the holdings, dividing by the current total would
    overstate the average (buy 10 at 100, sell 5, and it would read 200).
    """
    if asset_type == BASE_CURRENCY:
        return 1.0
    if not is_positive_finite(current_total):
        return None

    remaining = float(current_total)
    cost = 0.0
    covered = 0.0
    for entry in history:
        if remaining <= EPSILON:
            break
        if entry.lot.asset_type != asset_type:
            continue
        if entry.kind == "remove":
            remaining = safe_add(remaining, entry.lot.amount)
            continue
        price = entry.lot.price_at_acquisition
        if price is None:
            return None
        used = min(entry.lot.amount, remaining)
        cost = safe_add(cost, safe_multiply(used, price))
        covered = safe_add(covered, used)
        remaining = safe_subtract(remaining, used)

    if remaining > EPSILON:
        return None
    return safe_divide(cost, covered)
