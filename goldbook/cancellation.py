from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from goldbook.errors import FetchCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared by every await in one logical request.

    The token is the single authority on whether a request is still wanted. Network
    code checks it between steps (`raise_if_cancelled`) and races long awaits
    against it (`guard`), so a cancel interrupts an in-flight HTTP call instead of
    waiting for it to time out.
    """

    def __init__(self, reason: str | None = None) -> None:
        self._event: asyncio.Event | None = None
        self._cancelled = False
        self.reason = reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str | None = None) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if reason:
            self.reason = reason
        if self._event is not None:
            self._event.set()
        logger.debug("request cancelled: %s", self.reason or "no reason given")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FetchCancelledError(self.reason or "request cancelled")

    async def wait(self) -> None:
        # The event is created lazily so tokens can be built outside a running loop.
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw`, abandoning it as soon as the token is cancelled."""
        self.raise_if_cancelled()
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, Exception):
            pass
        raise FetchCancelledError(self.reason or "request cancelled")


def check(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


async def guarded(token: CancellationToken | None, aw: Awaitable[T]) -> T:
    if token is None:
        return await aw
    return await token.guard(aw)


async def sleep(delay: float, token: CancellationToken | None = None) -> None:
    await guarded(token, asyncio.sleep(delay))


class RequestSlot:
    """Holds the token of the latest request for one logical purpose.

    Starting a new request cancels the previous one, so only the newest result is
    ever applied. Closing the slot (the owning view went away) cancels whatever is
    in flight.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._current: CancellationToken | None = None

    @property
    def current(self) -> CancellationToken | None:
        return self._current

    def start(self) -> CancellationToken:
        if self._current is not None:
            self._current.cancel(f"{self.name}: superseded by a newer request")
        self._current = CancellationToken()
        return self._current

    def is_current(self, token: CancellationToken) -> bool:
        return token is self._current and not token.cancelled

    def close(self) -> None:
        if self._current is not None:
            self._current.cancel(f"{self.name}: closed")
            self._current = None
