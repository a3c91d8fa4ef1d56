from __future__ import annotations

import json
import logging
import math
from typing import Any, Callable

from goldbook.errors import StaleBackupError
from goldbook.models import ASSET_TYPES, BASE_CURRENCY, PriceSnapshot, PriceTable, now_ms
from goldbook.storage import Database, PriceBackupRow

logger = logging.getLogger(__name__)

MAX_BACKUP_AGE_MS = 24 * 60 * 60 * 1000
_SLOT_ID = 1


def _valid_number(v: Any, *, allow_negative: bool) -> bool:
    if v is None:
        return True
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return False
    if not math.isfinite(v):
        return False
    return allow_negative or v >= 0


def _validated_table(raw: str | None, *, allow_negative: bool) -> PriceTable | None:
    """Decode one stored table; None unless every asset key is present and every value is sane."""
    if raw is None:
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    out: PriceTable = {}
    for key in ASSET_TYPES:
        if key not in data:
            return None
        v = data[key]
        if not _valid_number(v, allow_negative=allow_negative):
            return None
        out[key] = float(v) if v is not None else None
    return out


class PriceBackupStore:
    """Single durable slot holding the last accepted price snapshot.

    Reads are fail-closed: anything that does not look exactly like what `save`
    writes is treated as "no backup" rather than repaired or defaulted.
    """

    def __init__(self, db: Database, *, max_age_ms: int = MAX_BACKUP_AGE_MS, clock: Callable[[], int] = now_ms) -> None:
        self.db = db
        self.max_age_ms = max_age_ms
        self._clock = clock

    def save(self, snapshot: PriceSnapshot) -> None:
        sell_json = json.dumps(snapshot.sell_prices)
        changes_json = json.dumps(snapshot.changes)
        buy_json = json.dumps(snapshot.buy_prices) if snapshot.buy_prices is not None else None
        ts = self._clock()
        with self.db.transaction() as s:
            row = s.get(PriceBackupRow, _SLOT_ID)
            if row is None:
                s.add(
                    PriceBackupRow(
                        id=_SLOT_ID,
                        sell_json=sell_json,
                        buy_json=buy_json,
                        changes_json=changes_json,
                        fetched_at=snapshot.fetched_at,
                        updated_at=ts,
                    )
                )
            else:
                row.sell_json = sell_json
                row.buy_json = buy_json
                row.changes_json = changes_json
                row.fetched_at = snapshot.fetched_at
                row.updated_at = ts

    def _read_row(self) -> tuple[str, str | None, str, int] | None:
        with self.db.transaction() as s:
            row = s.get(PriceBackupRow, _SLOT_ID)
            if row is None:
                return None
            return row.sell_json, row.buy_json, row.changes_json, row.fetched_at

    def _check_age(self, fetched_at: int) -> None:
        age = self._clock() - fetched_at
        if age > self.max_age_ms:
            raise StaleBackupError(age, self.max_age_ms)

    def load(self) -> PriceSnapshot | None:
        row = self._read_row()
        if row is None:
            return None
        sell_json, buy_json, changes_json, fetched_at = row
        try:
            self._check_age(fetched_at)
        except StaleBackupError as e:
            logger.info("ignoring price backup: %s", e)
            return None

        sell = _validated_table(sell_json, allow_negative=False)
        changes = _validated_table(changes_json, allow_negative=True)
        if sell is None or changes is None or sell[BASE_CURRENCY] != 1.0:
            logger.warning("ignoring price backup: stored tables failed validation")
            return None
        # A damaged buy table only costs us the buy side.
        buy = _validated_table(buy_json, allow_negative=False)
        return PriceSnapshot(
            sell_prices=sell,
            buy_prices=buy,
            changes=changes,
            fetched_at=fetched_at,
            is_from_backup=True,
            source="backup",
        )

    def has_backup(self) -> bool:
        return self._read_row() is not None

    def last_fetched_at(self) -> int | None:
        row = self._read_row()
        return row[3] if row else None
