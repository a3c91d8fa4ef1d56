"""SQLite persistence for lots, history, the last-known price table and the backup slot.

Every multi-row change the ledger makes (one lot row plus one history row, or N
lot deletions/updates plus one history row) goes through a single transaction, so
a crash never leaves the two tables disagreeing.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional

from sqlalchemy import Float, Integer, String, Text, create_engine, delete, func, select, update
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from goldbook.models import ASSET_TYPES, BASE_CURRENCY, HistoryEntry, Lot, PortfolioState, empty_change_table, empty_price_table, now_ms

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class LotRow(Base):
    __tablename__ = "lots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    asset_type: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    acquired_at: Mapped[str] = mapped_column(String(40), nullable=False)
    price_at_acquisition: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[int] = mapped_column(Integer, nullable=False)


class HistoryRow(Base):
    __tablename__ = "history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    lot_id: Mapped[str] = mapped_column(String(64), nullable=False)
    asset_type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    lot_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    acquired_at: Mapped[str] = mapped_column(String(40), nullable=False)
    price_at_acquisition: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    previous_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ts: Mapped[str] = mapped_column(String(40), nullable=False)


class PriceRow(Base):
    __tablename__ = "prices"

    asset_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    change: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class PriceBackupRow(Base):
    __tablename__ = "price_backup"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sell_json: Mapped[str] = mapped_column(Text, nullable=False)
    buy_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changes_json: Mapped[str] = mapped_column(Text, nullable=False)
    fetched_at: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[int] = mapped_column(Integer, nullable=False)


class Database:
    def __init__(self, url: str) -> None:
        parsed = make_url(url)
        if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
        kwargs: dict = {}
        if parsed.get_backend_name() == "sqlite":
            # Writes run on worker threads (asyncio.to_thread).
            kwargs["connect_args"] = {"check_same_thread": False}
            if not parsed.database or parsed.database == ":memory:":
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        with self._sessions.begin() as session:
            yield session

    def dispose(self) -> None:
        self.engine.dispose()


def _created_at(lot: Lot) -> int:
    # Lot ids start with their creation time in ms; rows keep that so LIFO order survives a reload.
    head = lot.id.split("-", 1)[0]
    return int(head) if head.isdigit() else now_ms()


def _lot_to_row(lot: Lot) -> LotRow:
    return LotRow(
        id=lot.id,
        asset_type=lot.asset_type,
        amount=lot.amount,
        description=lot.description,
        acquired_at=lot.acquired_at,
        price_at_acquisition=lot.price_at_acquisition,
        created_at=_created_at(lot),
    )


def _row_to_lot(row: LotRow) -> Lot:
    return Lot(
        id=row.id,
        asset_type=row.asset_type,
        amount=row.amount,
        description=row.description,
        acquired_at=row.acquired_at,
        price_at_acquisition=row.price_at_acquisition,
    )


def _entry_to_row(entry: HistoryEntry) -> HistoryRow:
    return HistoryRow(
        kind=entry.kind,
        lot_id=entry.lot.id,
        asset_type=entry.lot.asset_type,
        amount=entry.lot.amount,
        lot_description=entry.lot.description,
        acquired_at=entry.lot.acquired_at,
        price_at_acquisition=entry.lot.price_at_acquisition,
        description=entry.description,
        previous_amount=entry.previous_amount,
        ts=entry.ts,
    )


def _row_to_entry(row: HistoryRow) -> HistoryEntry:
    return HistoryEntry(
        kind=row.kind,
        lot=Lot(
            id=row.lot_id,
            asset_type=row.asset_type,
            amount=row.amount,
            description=row.lot_description,
            acquired_at=row.acquired_at,
            price_at_acquisition=row.price_at_acquisition,
        ),
        ts=row.ts,
        description=row.description,
        previous_amount=row.previous_amount,
    )


class PortfolioRepository:
    def __init__(self, db: Database, *, history_cap: int = 1000) -> None:
        self.db = db
        self.history_cap = history_cap

    def load_state(self) -> PortfolioState:
        with self.db.transaction() as s:
            lots = [_row_to_lot(r) for r in s.scalars(select(LotRow).order_by(LotRow.created_at, LotRow.id))]
            history = [
                _row_to_entry(r) for r in s.scalars(select(HistoryRow).order_by(HistoryRow.id.desc()).limit(self.history_cap))
            ]
            prices = empty_price_table()
            changes = empty_change_table()
            for r in s.scalars(select(PriceRow)):
                if r.asset_type not in prices:
                    continue
                if r.price is not None:
                    prices[r.asset_type] = r.price
                changes[r.asset_type] = r.change
        prices[BASE_CURRENCY] = 1.0
        return PortfolioState(lots=lots, prices=prices, changes=changes, history=history)

    def _trim_history(self, s: Session) -> None:
        count = s.scalar(select(func.count()).select_from(HistoryRow)) or 0
        if count <= self.history_cap:
            return
        keep_from = s.scalar(select(HistoryRow.id).order_by(HistoryRow.id.desc()).offset(self.history_cap - 1).limit(1))
        if keep_from is not None:
            s.execute(delete(HistoryRow).where(HistoryRow.id < keep_from))

    def record_append(self, lot: Lot, entry: HistoryEntry) -> None:
        with self.db.transaction() as s:
            s.add(_lot_to_row(lot))
            s.add(_entry_to_row(entry))
            s.flush()
            self._trim_history(s)

    def record_reduction(self, *, deleted: Iterable[str], updated: dict[str, float], entry: HistoryEntry) -> None:
        with self.db.transaction() as s:
            deleted = list(deleted)
            if deleted:
                s.execute(delete(LotRow).where(LotRow.id.in_(deleted)))
            for lot_id, amount in updated.items():
                s.execute(update(LotRow).where(LotRow.id == lot_id).values(amount=amount))
            s.add(_entry_to_row(entry))
            s.flush()
            self._trim_history(s)

    def record_removal(self, lot_id: str, entry: HistoryEntry) -> None:
        self.record_reduction(deleted=[lot_id], updated={}, entry=entry)

    def clear(self) -> None:
        # Prices stay: they are market data, not user data.
        with self.db.transaction() as s:
            s.execute(delete(LotRow))
            s.execute(delete(HistoryRow))
        logger.info("portfolio cleared")

    def _write_prices(self, s: Session, prices: dict[str, float | None], changes: dict[str, float | None], ts: int) -> None:
        for asset_type in ASSET_TYPES:
            price = prices.get(asset_type)
            if price is None:
                continue
            row = s.get(PriceRow, asset_type)
            if row is None:
                s.add(PriceRow(asset_type=asset_type, price=price, change=changes.get(asset_type), updated_at=ts))
            else:
                row.price = price
                row.change = changes.get(asset_type)
                row.updated_at = ts

    def save_prices(self, prices: dict[str, float | None], changes: dict[str, float | None]) -> None:
        with self.db.transaction() as s:
            self._write_prices(s, prices, changes, now_ms())

    def save_state(self, state: PortfolioState) -> None:
        """Replace everything stored with `state` in one transaction."""
        ts = now_ms()
        with self.db.transaction() as s:
            s.execute(delete(LotRow))
            s.execute(delete(HistoryRow))
            for i, lot in enumerate(state.lots):
                row = _lot_to_row(lot)
                row.created_at = ts + i
                s.add(row)
            # Oldest first, so autoincrement ids keep the newest-first read order.
            for entry in reversed(state.history[: self.history_cap]):
                s.add(_entry_to_row(entry))
            self._write_prices(s, state.prices, state.changes, ts)
        logger.info("stored full portfolio state: %d lots, %d history entries", len(state.lots), len(state.history))
