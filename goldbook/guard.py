from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Hashable, Iterator

from goldbook.errors import FetchInProgressError

logger = logging.getLogger(__name__)


class FetchLock:
    """Rejects (does not queue) a second price fetch while one is running."""

    def __init__(self) -> None:
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    @contextmanager
    def hold(self) -> Iterator[None]:
        if self._held:
            raise FetchInProgressError("a price fetch is already in progress")
        self._held = True
        try:
            yield
        finally:
            self._held = False


class OperationLock:
    """Drops duplicate ledger mutations while an earlier one is still settling.

    Keys are chosen by the caller. The ledger uses (operation kind, asset type), so a
    second `set_total` for the same asset is dropped while the first one's
    persistence is in flight, but two different assets never collide.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, bool] = {}

    def is_locked(self, key: Hashable) -> bool:
        return self._locks.get(key, False)

    def try_acquire(self, key: Hashable) -> bool:
        if self._locks.get(key):
            logger.warning("operation skipped (already in progress): %s", key)
            return False
        self._locks[key] = True
        logger.debug("operation locked: %s", key)
        return True

    def release(self, key: Hashable) -> None:
        self._locks.pop(key, None)
        logger.debug("operation unlocked: %s", key)

    def held_keys(self) -> list[Hashable]:
        return [k for k, v in self._locks.items() if v]
