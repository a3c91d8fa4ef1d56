from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from goldbook.models import now_iso

logger = logging.getLogger(__name__)


class Notice(str, Enum):
    BACKUP_IN_USE = "backup_in_use"
    PARTIAL_PRICE_UPDATE = "partial_price_update"
    PRICE_FETCH_FAILED = "price_fetch_failed"
    NO_NETWORK = "no_network"


MESSAGES: dict[Notice, str] = {
    Notice.BACKUP_IN_USE: "Live prices are unavailable; showing the last saved prices.",
    Notice.PARTIAL_PRICE_UPDATE: "Some prices could not be updated and keep their previous values.",
    Notice.PRICE_FETCH_FAILED: "Prices could not be updated.",
    Notice.NO_NETWORK: "No network connection detected.",
}


class NoticeRecord(BaseModel):
    kind: Notice
    message: str
    detail: str | None = None
    ts: str = Field(default_factory=now_iso)


NoticeSink = Callable[[Notice, "str | None"], None]


class NoticeLog:
    """In-memory sink keeping the most recent notices for the API to show."""

    def __init__(self, maxlen: int = 50) -> None:
        self._records: deque[NoticeRecord] = deque(maxlen=maxlen)

    def __call__(self, kind: Notice, detail: str | None = None) -> None:
        rec = NoticeRecord(kind=kind, message=MESSAGES[kind], detail=detail)
        self._records.appendleft(rec)
        logger.info("notice %s%s", kind.value, f": {detail}" if detail else "")

    def recent(self, limit: int | None = None) -> list[NoticeRecord]:
        items = list(self._records)
        return items[:limit] if limit is not None else items

    def clear(self) -> None:
        self._records.clear()
