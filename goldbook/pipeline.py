from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from goldbook import cancellation
from goldbook.backup import PriceBackupStore
from goldbook.cancellation import CancellationToken
from goldbook.errors import BackupUnavailableError, FetchCancelledError
from goldbook.guard import FetchLock
from goldbook.models import PriceSnapshot
from goldbook.providers import PriceProvider

logger = logging.getLogger(__name__)

ConnectivityCheck = Callable[[], Awaitable[bool]]


class PriceAcquisitionPipeline:
    """Fetch prices from the first provider that works, else from the backup slot.

    Providers are tried in list order. A fresh result is written to the backup
    store before it is returned; the write is best-effort and never costs the
    caller its fresh prices. Only one acquisition may run at a time per pipeline;
    a concurrent call fails fast with FetchInProgressError.
    """

    def __init__(
        self,
        providers: Sequence[PriceProvider],
        backup: PriceBackupStore,
        *,
        source_preference: Callable[[], str] | None = None,
        connectivity_check: ConnectivityCheck | None = None,
    ) -> None:
        self.providers = list(providers)
        self.backup = backup
        self.fetch_lock = FetchLock()
        self.source_preference = source_preference
        self.connectivity_check = connectivity_check
        self.last_reported_offline = False

    def active_providers(self) -> list[PriceProvider]:
        pref = self.source_preference() if self.source_preference else "auto"
        if pref == "primary":
            return self.providers[:1]
        if pref == "secondary":
            return self.providers[1:2] or self.providers[:1]
        return list(self.providers)

    async def _probe_connectivity(self) -> None:
        # Connectivity detection has false negatives: the result is only reported, never obeyed.
        self.last_reported_offline = False
        if self.connectivity_check is None:
            return
        try:
            online = await self.connectivity_check()
        except Exception as e:
            logger.debug("connectivity check failed: %s", e)
            return
        if not online:
            self.last_reported_offline = True
            logger.info("connectivity check reports offline; trying providers anyway")

    async def _save_backup(self, snapshot: PriceSnapshot) -> None:
        try:
            await asyncio.to_thread(self.backup.save, snapshot)
        except Exception:
            logger.exception("failed to persist price backup")

    async def _load_backup(self) -> PriceSnapshot | None:
        try:
            return await asyncio.to_thread(self.backup.load)
        except Exception:
            logger.exception("failed to read price backup")
            return None

    async def acquire(self, token: CancellationToken | None = None) -> PriceSnapshot:
        with self.fetch_lock.hold():
            return await self._acquire(token)

    async def _acquire(self, token: CancellationToken | None) -> PriceSnapshot:
        cancellation.check(token)
        await self._probe_connectivity()

        reasons: dict[str, str] = {}
        for provider in self.active_providers():
            cancellation.check(token)
            try:
                snapshot = await provider.fetch(token)
            except FetchCancelledError:
                raise
            except Exception as e:
                reasons[provider.name] = f"{type(e).__name__}: {e}"
                logger.warning("price provider %s failed: %s", provider.name, reasons[provider.name])
                continue

            # A result that arrives after cancellation is dropped before it touches the backup.
            cancellation.check(token)
            await self._save_backup(snapshot)
            cancellation.check(token)
            return snapshot.tagged(is_from_backup=False)

        cancellation.check(token)
        backup = await self._load_backup()
        cancellation.check(token)
        if backup is not None:
            logger.warning("all price providers failed, serving backup from %s", backup.fetched_at)
            return backup.tagged(is_from_backup=True)
        raise BackupUnavailableError(reasons)

    async def close(self) -> None:
        for provider in self.providers:
            try:
                await provider.close()
            except Exception:
                logger.exception("failed to close provider %s", provider.name)
