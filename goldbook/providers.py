from __future__ import annotations

import asyncio
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx

from goldbook import cancellation
from goldbook.cancellation import CancellationToken
from goldbook.errors import (
    FetchCancelledError,
    FetchTimeoutError,
    NoValidPriceError,
    PriceError,
    StructuralParseError,
)
from goldbook.models import BASE_CURRENCY, PriceSnapshot, PriceTable, empty_change_table, empty_price_table, now_ms

logger = logging.getLogger(__name__)

_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)


def new_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(15.0),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        headers={"User-Agent": _USER_AGENT},
    )


def _to_float(value: Any) -> float | None:
    """Lenient number parsing: accepts 12.5, "12.5", "12,5", "1.234,5", "%-0,42"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        v = float(value)
        return v if math.isfinite(v) else None
    s = str(value).strip().replace("%", "").replace("\u00a0", "").replace(" ", "")
    if not s:
        return None
    if "," in s and "." in s:
        if s.rfind(",") > s.rfind("."):
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif "," in s:
        s = s.replace(",", ".")
    try:
        v = float(s)
    except ValueError:
        return None
    return v if math.isfinite(v) else None


def _to_price(value: Any) -> float | None:
    v = _to_float(value)
    if v is None or v < 0:
        return None
    return v


def _parse_european(value: str | None) -> float | None:
    # "7.703,594" -> 7703.594 ("." groups thousands, "," is the decimal mark)
    if not value:
        return None
    s = value.replace("%", "").strip().replace(".", "").replace(",", ".")
    try:
        v = float(s)
    except ValueError:
        return None
    return v if math.isfinite(v) else None


def _has_any_price(table: PriceTable) -> bool:
    return any(v is not None and v > 0 for k, v in table.items() if k != BASE_CURRENCY)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    attempt_timeout: float = 10.0
    base_delay: float = 1.0
    max_delay: float = 10.0
    # Two timeouts in a row usually means the upstream is throttling us; back off harder.
    timeout_penalty: float = 3.0

    def delay_for(self, attempt: int, consecutive_timeouts: int) -> float:
        delay = min(self.base_delay * (2**attempt), self.max_delay)
        if consecutive_timeouts >= 2:
            delay *= self.timeout_penalty
        return delay


class PriceProvider(ABC):
    name: str = "provider"

    @abstractmethod
    async def fetch(self, token: CancellationToken | None = None) -> PriceSnapshot:
        """Fetch one market snapshot or raise."""

    async def close(self) -> None:
        return None


class HttpPriceProvider(PriceProvider):
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._owns_client = client is None
        self._client = client or new_http_client()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# Truncgil codes for each asset type.
_TRUNCGIL_CODES: dict[str, str] = {
    "usd": "USD",
    "eur": "EUR",
    "silver": "GUMUS",
    "gold_full": "TAMALTIN",
    "gold_quarter": "CEYREKALTIN",
    "gold_22k": "YIA",
    "gold_24k": "GRA",
}


def parse_truncgil_payload(data: Any, *, fetched_at: int | None = None) -> PriceSnapshot:
    if not isinstance(data, dict):
        raise StructuralParseError(f"expected a JSON object, got {type(data).__name__}")
    if not any(isinstance(data.get(code), dict) for code in _TRUNCGIL_CODES.values()):
        raise StructuralParseError("response contains none of the expected instruments")

    sell = empty_price_table()
    buy = empty_price_table()
    changes = empty_change_table()
    for asset_type, code in _TRUNCGIL_CODES.items():
        item = data.get(code)
        if not isinstance(item, dict):
            continue
        buying = _to_price(item.get("Buying"))
        selling = _to_price(item.get("Selling"))
        sell[asset_type] = selling if selling is not None else buying
        buy[asset_type] = buying
        changes[asset_type] = _to_float(item.get("Change"))

    if not _has_any_price(sell):
        raise NoValidPriceError("no valid price values in response")
    return PriceSnapshot(
        sell_prices=sell,
        buy_prices=buy,
        changes=changes,
        fetched_at=fetched_at if fetched_at is not None else now_ms(),
        source="truncgil",
    )


SleepFn = Callable[[float, "CancellationToken | None"], Awaitable[None]]


class TruncgilProvider(HttpPriceProvider):
    """Primary source: a structured JSON feed, fetched with bounded retries."""

    name = "truncgil"
    url = "https://finans.truncgil.com/v4/today.json"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        policy: RetryPolicy | None = None,
        sleep: SleepFn = cancellation.sleep,
    ) -> None:
        super().__init__(client)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep

    async def _attempt(self) -> PriceSnapshot:
        r = await self._client.get(self.url, headers={"Accept": "application/json"})
        if r.status_code != 200:
            raise httpx.HTTPStatusError(f"HTTP {r.status_code}", request=r.request, response=r)
        try:
            data = r.json()
        except ValueError as e:
            raise StructuralParseError(f"response is not JSON: {e}") from e
        return parse_truncgil_payload(data)

    async def fetch(self, token: CancellationToken | None = None) -> PriceSnapshot:
        policy = self.policy
        consecutive_timeouts = 0
        last_error: Exception | None = None
        for attempt in range(policy.max_attempts):
            cancellation.check(token)
            try:
                # The transport timeout is not trusted on its own; every attempt is boxed here too.
                return await cancellation.guarded(token, asyncio.wait_for(self._attempt(), policy.attempt_timeout))
            except (FetchCancelledError, StructuralParseError, NoValidPriceError):
                # Cancellation aborts everything; a malformed payload will not improve on retry.
                raise
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                consecutive_timeouts += 1
                last_error = FetchTimeoutError(f"attempt {attempt + 1} timed out after {policy.attempt_timeout}s")
                last_error.__cause__ = e
            except httpx.HTTPError as e:
                consecutive_timeouts = 0
                last_error = e

            if attempt + 1 >= policy.max_attempts:
                break
            delay = policy.delay_for(attempt, consecutive_timeouts)
            logger.warning(
                "%s attempt %d/%d failed (%s), retrying in %.2fs",
                self.name,
                attempt + 1,
                policy.max_attempts,
                last_error,
                delay,
            )
            await self._sleep(delay, token)

        if last_error is None:
            raise PriceError(f"{self.name}: no fetch attempts made (max_attempts={policy.max_attempts})")
        raise last_error


# Turkish market conventions: 22 karat is 91.6% pure; quarter and full coins weigh 1.75 g and 7 g.
GOLD_PURITY_22K = 0.916
QUARTER_WEIGHT_GRAMS = 1.75
FULL_WEIGHT_GRAMS = 7.0


def gold_prices_from_24k(gram_24k: float) -> dict[str, float]:
    gram_22k = gram_24k * GOLD_PURITY_22K
    return {
        "gold_24k": gram_24k,
        "gold_22k": gram_22k,
        "gold_quarter": gram_22k * QUARTER_WEIGHT_GRAMS,
        "gold_full": gram_22k * FULL_WEIGHT_GRAMS,
    }


# Widget pair ids.
_PAIR_EUR = "66"
_PAIR_USD = "18"
_PAIR_GOLD_GRAM = "50655"
_PAIR_SILVER = "1230330"


def _extract(html: str, css_class: str) -> str | None:
    m = re.search(rf'class="[^"]*{re.escape(css_class)}[^"]*">([^<]+)<', html, re.IGNORECASE)
    return m.group(1).strip() if m else None


def parse_investing_widget(html: str, *, fetched_at: int | None = None) -> PriceSnapshot:
    if not isinstance(html, str) or "pid-" not in html:
        raise StructuralParseError("widget markup not recognized")

    def quote(pair: str) -> tuple[float | None, float | None, float | None]:
        bid = _parse_european(_extract(html, f"pid-{pair}-bid"))
        ask = _parse_european(_extract(html, f"pid-{pair}-ask"))
        pct = _parse_european(_extract(html, f"pid-{pair}-pcp"))
        return bid, ask, pct

    eur_bid, eur_ask, eur_pct = quote(_PAIR_EUR)
    usd_bid, usd_ask, usd_pct = quote(_PAIR_USD)
    gold_bid, gold_ask, gold_pct = quote(_PAIR_GOLD_GRAM)
    silver_bid, silver_ask, silver_pct = quote(_PAIR_SILVER)

    if not eur_ask or not usd_ask or not gold_ask:
        raise NoValidPriceError("missing critical price data (EUR, USD or gold)")

    sell = empty_price_table()
    buy = empty_price_table()
    changes = empty_change_table()

    sell.update(gold_prices_from_24k(gold_ask))
    sell.update({"usd": usd_ask, "eur": eur_ask, "silver": silver_ask})
    if gold_bid:
        buy.update(gold_prices_from_24k(gold_bid))
    buy.update({"usd": usd_bid, "eur": eur_bid, "silver": silver_bid})
    # The widget only quotes gram gold; every gold variant moves with it.
    for t in ("gold_24k", "gold_22k", "gold_quarter", "gold_full"):
        changes[t] = gold_pct
    changes.update({"usd": usd_pct, "eur": eur_pct, "silver": silver_pct})

    for table in (sell, buy):
        for k, v in table.items():
            if v is not None and v < 0:
                table[k] = None

    return PriceSnapshot(
        sell_prices=sell,
        buy_prices=buy,
        changes=changes,
        fetched_at=fetched_at if fetched_at is not None else now_ms(),
        source="investing",
    )


class InvestingProvider(HttpPriceProvider):
    """Secondary source: scraped from a public live-rates widget."""

    name = "investing"
    url = (
        "https://tr.investingwidgets.com/live-currency-cross-rates"
        f"?theme=darkTheme&cols=bid,ask,changePerc&pairs={_PAIR_EUR},{_PAIR_GOLD_GRAM},{_PAIR_USD},{_PAIR_SILVER}"
    )

    def __init__(self, client: httpx.AsyncClient | None = None, *, timeout: float = 10.0) -> None:
        super().__init__(client)
        self.timeout = timeout

    async def _get(self) -> str:
        r = await self._client.get(self.url, headers={"Accept": "text/html"})
        if r.status_code != 200:
            raise httpx.HTTPStatusError(f"HTTP {r.status_code}", request=r.request, response=r)
        return r.text

    async def fetch(self, token: CancellationToken | None = None) -> PriceSnapshot:
        cancellation.check(token)
        try:
            html = await cancellation.guarded(token, asyncio.wait_for(self._get(), self.timeout))
        except asyncio.TimeoutError as e:
            raise FetchTimeoutError(f"{self.name} timed out after {self.timeout}s") from e
        return parse_investing_widget(html)


CONNECTIVITY_URL = "https://clients3.google.com/generate_204"


def make_connectivity_check(client: httpx.AsyncClient, *, url: str = CONNECTIVITY_URL, timeout: float = 3.0):
    """Build an advisory online probe. Only a refused or unresolvable connection counts as offline."""

    async def check() -> bool:
        try:
            await client.head(url, timeout=timeout)
        except (httpx.ConnectError, httpx.ConnectTimeout):
            return False
        except httpx.HTTPError as e:
            logger.debug("connectivity probe inconclusive: %s", e)
        return True

    return check
