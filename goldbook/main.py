from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from goldbook.backup import PriceBackupStore
from goldbook.ledger import Ledger
from goldbook.models import AssetType, DisplayCurrency
from goldbook.notices import NoticeLog
from goldbook.pipeline import PriceAcquisitionPipeline
from goldbook.providers import (
    InvestingProvider,
    RetryPolicy,
    TruncgilProvider,
    make_connectivity_check,
    new_http_client,
)
from goldbook.scheduler import start_scheduler
from goldbook.service import PriceRefresher
from goldbook.settings import (
    PriceSource,
    Settings,
    SettingsOverride,
    add_recent_amount,
    clear_recent_amounts,
    effective_settings_dict,
    get_price_source,
    get_recent_amounts,
    load_settings_override,
    save_settings_override,
)
from goldbook.storage import Database, PortfolioRepository
from goldbook.valuation import portfolio_value, summarize

settings = Settings.load()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Goldbook")

db = Database(settings.db_url)
repository = PortfolioRepository(db, history_cap=settings.history_max_entries)
ledger = Ledger.from_repository(repository)
backup = PriceBackupStore(db, max_age_ms=int(settings.backup_max_age_hours * 3600 * 1000))

_http = new_http_client()
pipeline = PriceAcquisitionPipeline(
    [
        TruncgilProvider(
            _http,
            policy=RetryPolicy(
                max_attempts=settings.fetch_max_attempts,
                attempt_timeout=settings.fetch_timeout_seconds,
                base_delay=settings.fetch_base_delay_seconds,
                max_delay=settings.fetch_max_delay_seconds,
                timeout_penalty=settings.timeout_penalty,
            ),
        ),
        InvestingProvider(_http, timeout=settings.fetch_timeout_seconds),
    ],
    backup,
    source_preference=get_price_source,
    connectivity_check=make_connectivity_check(_http),
)
notices = NoticeLog()
refresher = PriceRefresher(pipeline, ledger, notify=notices)

_scheduler = None
_initial_refresh: asyncio.Task | None = None


class ApiLotCreateRequest(BaseModel):
    asset_type: AssetType
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    description: str | None = None
    price_at_acquisition: float | None = Field(None, gt=0, allow_inf_nan=False)


class ApiHoldingUpdateRequest(BaseModel):
    total: float = Field(..., ge=0, allow_inf_nan=False)
    description: str | None = None
    price_at_acquisition: float | None = Field(None, gt=0, allow_inf_nan=False)


class ApiSettingsUpdateRequest(BaseModel):
    price_source: PriceSource | None = None
    display_currency: DisplayCurrency | None = None


def _busy() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "operation already in progress"}, status_code=409)


@app.get("/health")
async def health() -> dict:
    return {
        "ok": True,
        "refresh": asdict(refresher.status),
        "has_backup": backup.has_backup(),
        "backup_fetched_at": backup.last_fetched_at(),
    }


@app.get("/api/portfolio")
async def api_portfolio(currency: DisplayCurrency | None = None, history_limit: int = 50) -> JSONResponse:
    cur = currency or settings.display_currency
    state = ledger.state
    valuation = portfolio_value(state.lots, state.prices, cur)
    payload = {
        "currency": cur,
        "lots": [lot.model_dump() for lot in state.lots],
        "totals": ledger.totals(),
        "prices": state.prices,
        "changes": state.changes,
        "valuation": {
            "total": valuation.total,
            "partial": valuation.partial,
            "excluded": valuation.excluded,
        },
        "assets": [asdict(s) for s in summarize(state, cur)],
        "history": [e.model_dump() for e in state.history[: max(0, history_limit)]],
        "notices": [n.model_dump(mode="json") for n in notices.recent(10)],
    }
    return JSONResponse(payload)


@app.post("/api/lots")
async def api_lots_create(req: ApiLotCreateRequest) -> JSONResponse:
    lot = ledger.append(req.asset_type, req.amount, req.description, req.price_at_acquisition)
    if lot is None:
        return _busy()
    add_recent_amount(req.asset_type, req.amount)
    await ledger.drain()
    return JSONResponse({"ok": True, "lot": lot.model_dump(), "total": ledger.total_of(req.asset_type)})


@app.put("/api/holdings/{asset_type}")
async def api_holdings_update(asset_type: AssetType, req: ApiHoldingUpdateRequest) -> JSONResponse:
    if ledger.lock.is_locked(("set_total", asset_type)):
        return _busy()
    entry = ledger.set_total(asset_type, req.total, req.description, req.price_at_acquisition)
    await ledger.drain()
    return JSONResponse(
        {
            "ok": True,
            "changed": entry is not None,
            "entry": entry.model_dump() if entry is not None else None,
            "total": ledger.total_of(asset_type),
        }
    )


@app.delete("/api/lots/{lot_id}")
async def api_lots_delete(lot_id: str) -> JSONResponse:
    lot = next((it for it in ledger.lots if it.id == lot_id), None)
    if lot is None:
        return JSONResponse({"ok": False, "error": "lot not found"}, status_code=404)
    if ledger.lock.is_locked(("remove_lot", lot.asset_type)):
        return _busy()
    ledger.remove_lot(lot_id)
    await ledger.drain()
    return JSONResponse({"ok": True, "total": ledger.total_of(lot.asset_type)})


@app.post("/api/reset")
async def api_reset() -> JSONResponse:
    if not ledger.reset():
        return _busy()
    await ledger.drain()
    return JSONResponse({"ok": True})


@app.post("/api/prices/refresh")
async def api_prices_refresh() -> JSONResponse:
    snapshot = await refresher.refresh()
    if snapshot is None:
        return JSONResponse(
            {"ok": False, "error": refresher.status.last_error or "refresh did not complete"},
            status_code=503,
        )
    await ledger.drain()
    return JSONResponse(
        {
            "ok": True,
            "source": snapshot.source,
            "is_from_backup": snapshot.is_from_backup,
            "fetched_at": snapshot.fetched_at,
            "missing": refresher.status.missing or [],
            "prices": ledger.state.prices,
        }
    )


@app.get("/api/recent-amounts/{asset_type}")
async def api_recent_amounts_get(asset_type: AssetType) -> JSONResponse:
    return JSONResponse({"ok": True, "amounts": get_recent_amounts(asset_type)})


@app.delete("/api/recent-amounts/{asset_type}")
async def api_recent_amounts_clear(asset_type: AssetType) -> JSONResponse:
    clear_recent_amounts(asset_type)
    return JSONResponse({"ok": True})


@app.get("/api/settings")
async def api_settings_get() -> JSONResponse:
    override = load_settings_override() or SettingsOverride()
    return JSONResponse({"ok": True, "override": override.model_dump(), "effective": effective_settings_dict(settings)})


@app.post("/api/settings")
async def api_settings_update(req: ApiSettingsUpdateRequest) -> JSONResponse:
    global settings
    prev = load_settings_override() or SettingsOverride()
    ov = SettingsOverride(
        price_source=req.price_source if req.price_source is not None else prev.price_source,
        display_currency=req.display_currency if req.display_currency is not None else prev.display_currency,
    )
    save_settings_override(ov)
    settings = Settings.load()
    logger.info("settings updated: %s", ov.model_dump())
    return JSONResponse({"ok": True, "override": ov.model_dump(), "effective": effective_settings_dict(settings)})


@app.on_event("startup")
async def _startup() -> None:
    global _scheduler
    global _initial_refresh
    _scheduler = start_scheduler(settings=settings, refresher=refresher)
    _initial_refresh = asyncio.create_task(refresher.refresh())


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _scheduler
    global _initial_refresh
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    await refresher.close()
    if _initial_refresh is not None:
        await asyncio.gather(_initial_refresh, return_exceptions=True)
        _initial_refresh = None
    await ledger.drain()
    ledger.close()
    await pipeline.close()
    await _http.aclose()
    db.dispose()
