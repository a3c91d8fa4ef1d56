import asyncio

import httpx
import pytest

from goldbook.cancellation import CancellationToken
from goldbook.errors import FetchCancelledError, FetchTimeoutError, NoValidPriceError, PriceError, StructuralParseError
from goldbook.providers import (
    InvestingProvider,
    RetryPolicy,
    TruncgilProvider,
    _to_float,
    parse_investing_widget,
    parse_truncgil_payload,
)

TRUNCGIL_OK = {
    "Update_Date": "2026-10-17 10:00:00",
    "USD": {"Buying": "32,10", "Selling": "32,20", "Change": "%0,45"},
    "EUR": {"Buying": "35.10", "Selling": "35.25", "Change": "%-0,12"},
    "GRA": {"Buying": "2.450,50", "Change": "%1,02"},
}

WIDGET_HTML = """
<table>
<tr><td class="col pid-66-bid">35,1000</td><td class="col pid-66-ask">35,2000</td><td class="col pid-66-pcp">%0,12</td></tr>
<tr><td class="col pid-18-bid">32,1000</td><td class="col pid-18-ask">32,2000</td><td class="col pid-18-pcp">%-0,42</td></tr>
<tr><td class="col pid-50655-bid">2.990,00</td><td class="col pid-50655-ask">3.000,00</td><td class="col pid-50655-pcp">%1,50</td></tr>
<tr><td class="col pid-1230330-bid">38,10</td><td class="col pid-1230330-ask">38,40</td><td class="col pid-1230330-pcp">%2,00</td></tr>
</table>
"""


class _Recorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay, token=None) -> None:
        self.delays.append(delay)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_to_float_formats() -> None:
    assert _to_float("12.5") == 12.5
    assert _to_float("12,5") == 12.5
    assert _to_float("1.234,5") == 1234.5
    assert _to_float("1,234.5") == 1234.5
    assert _to_float("%-0,42") == -0.42
    assert _to_float("abc") is None
    assert _to_float("") is None
    assert _to_float(True) is None


def test_parse_truncgil_payload_basic() -> None:
    snap = parse_truncgil_payload(TRUNCGIL_OK, fetched_at=123)
    assert snap.source == "truncgil"
    assert snap.fetched_at == 123
    assert snap.sell_prices["usd"] == 32.2
    assert snap.buy_prices["usd"] == 32.1
    assert snap.changes["usd"] == 0.45
    assert snap.changes["eur"] == -0.12
    # No Selling field: the buying price is used as the sell price.
    assert snap.sell_prices["gold_24k"] == 2450.5
    assert snap.sell_prices["silver"] is None
    assert snap.sell_prices["try"] == 1.0
    assert "silver" in snap.missing_sell_prices()


def test_parse_truncgil_payload_rejects_bad_shapes() -> None:
    with pytest.raises(StructuralParseError):
        parse_truncgil_payload(["USD"])
    with pytest.raises(StructuralParseError):
        parse_truncgil_payload({"Update_Date": "x"})
    with pytest.raises(NoValidPriceError):
        parse_truncgil_payload({"USD": {"Buying": "n/a", "Selling": ""}})


def test_retry_policy_delays() -> None:
    p = RetryPolicy()
    assert p.delay_for(0, 0) == 1.0
    assert p.delay_for(3, 0) == 8.0
    assert p.delay_for(4, 0) == 10.0
    assert p.delay_for(1, 2) == 6.0


def test_truncgil_retries_http_errors_then_succeeds() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=TRUNCGIL_OK)

    async def run():
        sleep = _Recorder()
        async with _client(handler) as client:
            provider = TruncgilProvider(client, sleep=sleep)
            snap = await provider.fetch()
        return snap, sleep.delays

    snap, delays = asyncio.run(run())
    assert calls["n"] == 3
    assert snap.sell_prices["usd"] == 32.2
    assert delays == [1.0, 2.0]


def test_truncgil_does_not_retry_malformed_payload() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, text="<html>maintenance</html>")

    async def run():
        async with _client(handler) as client:
            await TruncgilProvider(client, sleep=_Recorder()).fetch()

    with pytest.raises(StructuralParseError):
        asyncio.run(run())
    assert calls["n"] == 1


def test_truncgil_penalizes_consecutive_timeouts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    sleep = _Recorder()

    async def run():
        async with _client(handler) as client:
            await TruncgilProvider(client, sleep=sleep).fetch()

    with pytest.raises(FetchTimeoutError):
        asyncio.run(run())
    # Second gap: 1 * 2**1 with the x3 penalty after two timeouts in a row.
    assert sleep.delays == [1.0, 6.0]


def test_truncgil_cancelled_before_start_makes_no_request() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(200, json=TRUNCGIL_OK)

    token = CancellationToken()
    token.cancel("view closed")

    async def run():
        async with _client(handler) as client:
            await TruncgilProvider(client, sleep=_Recorder()).fetch(token)

    with pytest.raises(FetchCancelledError):
        asyncio.run(run())
    assert calls["n"] == 0


def test_truncgil_cancel_interrupts_inflight_request() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(5)
        return httpx.Response(200, json=TRUNCGIL_OK)

    async def run():
        token = CancellationToken()
        async with _client(handler) as client:
            provider = TruncgilProvider(client, policy=RetryPolicy(attempt_timeout=10), sleep=_Recorder())
            task = asyncio.create_task(provider.fetch(token))
            await asyncio.sleep(0.05)
            token.cancel("superseded")
            return await asyncio.wait_for(task, 1.0)

    with pytest.raises(FetchCancelledError):
        asyncio.run(run())


def test_parse_investing_widget_derives_gold() -> None:
    snap = parse_investing_widget(WIDGET_HTML, fetched_at=1)
    assert snap.source == "investing"
    assert snap.sell_prices["usd"] == 32.2
    assert snap.buy_prices["usd"] == 32.1
    assert snap.sell_prices["eur"] == 35.2
    assert snap.sell_prices["silver"] == 38.4
    assert snap.sell_prices["gold_24k"] == 3000.0
    assert snap.sell_prices["gold_22k"] == pytest.approx(2748.0)
    assert snap.sell_prices["gold_quarter"] == pytest.approx(2748.0 * 1.75)
    assert snap.sell_prices["gold_full"] == pytest.approx(2748.0 * 7)
    assert snap.buy_prices["gold_24k"] == 2990.0
    assert snap.changes["usd"] == -0.42
    assert snap.changes["gold_full"] == 1.5


def test_parse_investing_widget_requires_critical_pairs() -> None:
    with pytest.raises(StructuralParseError):
        parse_investing_widget("<html>blocked</html>")
    no_gold = WIDGET_HTML.replace("pid-50655-ask", "pid-50655-other")
    with pytest.raises(NoValidPriceError):
        parse_investing_widget(no_gold)


def test_investing_provider_fetch() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "tr.investingwidgets.com"
        return httpx.Response(200, text=WIDGET_HTML)

    async def run():
        async with _client(handler) as client:
            return await InvestingProvider(client).fetch()

    snap = asyncio.run(run())
    assert snap.sell_prices["usd"] == 32.2


def test_truncgil_without_attempts_raises_price_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    async def run():
        async with _client(handler) as client:
            await TruncgilProvider(client, policy=RetryPolicy(max_attempts=0), sleep=_Recorder()).fetch()

    with pytest.raises(PriceError, match="no fetch attempts"):
        asyncio.run(run())
