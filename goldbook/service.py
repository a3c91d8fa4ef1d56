from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from goldbook.cancellation import CancellationToken, RequestSlot
from goldbook.errors import FetchCancelledError, FetchInProgressError
from goldbook.ledger import Ledger
from goldbook.models import BASE_CURRENCY, PriceSnapshot
from goldbook.notices import Notice, NoticeSink
from goldbook.pipeline import PriceAcquisitionPipeline

logger = logging.getLogger(__name__)


@dataclass
class RefreshStatus:
    running: bool = False
    last_success_at: int | None = None
    last_source: str | None = None
    last_from_backup: bool = False
    last_error: str | None = None
    last_duration_ms: float | None = None
    missing: list[str] | None = None


def _discard_notice(kind: Notice, detail: str | None = None) -> None:
    return None


class PriceRefresher:
    """Runs the pipeline and merges its result into the ledger.

    A new refresh supersedes the one in flight: the old token is cancelled and
    its result, if it still arrives, is thrown away.
    """

    def __init__(
        self,
        pipeline: PriceAcquisitionPipeline,
        ledger: Ledger,
        *,
        notify: NoticeSink | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.ledger = ledger
        self.notify = notify or _discard_notice
        self.slot = RequestSlot("price-refresh")
        self.status = RefreshStatus()
        self._inflight: asyncio.Future | None = None

    async def refresh(self) -> PriceSnapshot | None:
        previous = self._inflight
        token = self.slot.start()
        if previous is not None and not previous.done():
            # The cancelled run still owns the fetch lock until it unwinds.
            await asyncio.wait({previous})
        run = asyncio.ensure_future(self._run(token))
        self._inflight = run
        return await run

    async def _run(self, token: CancellationToken) -> PriceSnapshot | None:
        self.status.running = True
        start = time.perf_counter()
        try:
            snapshot = await self.pipeline.acquire(token)
        except FetchCancelledError as e:
            logger.debug("price refresh cancelled: %s", e)
            return None
        except FetchInProgressError:
            logger.info("price refresh skipped: another fetch is running")
            return None
        except Exception as e:
            if not self.slot.is_current(token):
                return None
            self.status.last_error = f"{type(e).__name__}: {e}"
            logger.warning("price refresh failed, keeping previous prices: %s", e)
            if self.pipeline.last_reported_offline:
                self.notify(Notice.NO_NETWORK, None)
            self.notify(Notice.PRICE_FETCH_FAILED, self.status.last_error)
            return None
        finally:
            self.status.running = False
            self.status.last_duration_ms = (time.perf_counter() - start) * 1000.0

        if not self.slot.is_current(token):
            logger.debug("discarding superseded price result from %s", snapshot.source)
            return None

        self.ledger.apply_prices(snapshot)
        missing = [t for t in snapshot.missing_sell_prices() if t != BASE_CURRENCY]
        self.status.last_success_at = snapshot.fetched_at
        self.status.last_source = snapshot.source
        self.status.last_from_backup = snapshot.is_from_backup
        self.status.last_error = None
        self.status.missing = missing

        if snapshot.is_from_backup:
            if self.pipeline.last_reported_offline:
                self.notify(Notice.NO_NETWORK, None)
            self.notify(Notice.BACKUP_IN_USE, None)
        if missing:
            self.notify(Notice.PARTIAL_PRICE_UPDATE, ", ".join(missing))
        return snapshot

    async def close(self) -> None:
        self.slot.close()
        if self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})
        self._inflight = None
