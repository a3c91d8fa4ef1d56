from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

from goldbook.models import DisplayCurrency
from goldbook.numbers import is_positive_finite


def _get_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_str(name: str, default: str | None = None) -> str | None:
    v = os.environ.get(name)
    if v is None:
        return default
    s = v.strip()
    return s if s else default


DATA_DIR = Path(_get_str("GB_DATA_DIR") or Path(__file__).resolve().parent.parent / "data")
SETTINGS_OVERRIDE_PATH = DATA_DIR / "app_settings.json"
RECENT_AMOUNTS_PATH = DATA_DIR / "recent_amounts.json"

PriceSource = Literal["auto", "primary", "secondary"]


class SettingsOverride(BaseModel):
    price_source: PriceSource | None = None
    display_currency: DisplayCurrency | None = None


def load_settings_override() -> SettingsOverride | None:
    try:
        if not SETTINGS_OVERRIDE_PATH.exists():
            return None
        raw = SETTINGS_OVERRIDE_PATH.read_text(encoding="utf-8").strip()
        if not raw:
            return None
        return SettingsOverride.model_validate_json(raw)
    except (OSError, ValueError):
        return None


def save_settings_override(override: SettingsOverride) -> None:
    SETTINGS_OVERRIDE_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_OVERRIDE_PATH.write_text(override.model_dump_json(indent=2), encoding="utf-8")


def get_price_source() -> PriceSource:
    ov = load_settings_override()
    if ov and ov.price_source:
        return ov.price_source
    return "auto"


MAX_RECENT_AMOUNTS = 5


class RecentAmounts(BaseModel):
    """Last amounts typed per asset type, newest first."""

    by_asset: dict[str, list[float]] = Field(default_factory=dict)


def _load_recent_amounts() -> RecentAmounts:
    try:
        if not RECENT_AMOUNTS_PATH.exists():
            return RecentAmounts()
        raw = RECENT_AMOUNTS_PATH.read_text(encoding="utf-8").strip()
        if not raw:
            return RecentAmounts()
        return RecentAmounts.model_validate_json(raw)
    except (OSError, ValueError):
        return RecentAmounts()


def _save_recent_amounts(recent: RecentAmounts) -> None:
    RECENT_AMOUNTS_PATH.parent.mkdir(parents=True, exist_ok=True)
    RECENT_AMOUNTS_PATH.write_text(recent.model_dump_json(indent=2), encoding="utf-8")


def get_recent_amounts(asset_type: str) -> list[float]:
    amounts = _load_recent_amounts().by_asset.get(asset_type, [])
    return [a for a in amounts if is_positive_finite(a)][:MAX_RECENT_AMOUNTS]


def add_recent_amount(asset_type: str, amount: float) -> list[float]:
    """Move `amount` to the front of the asset's list, dropping the oldest past the limit."""
    if not is_positive_finite(amount):
        return get_recent_amounts(asset_type)
    recent = _load_recent_amounts()
    current = [a for a in get_recent_amounts(asset_type) if a != amount]
    recent.by_asset[asset_type] = ([float(amount)] + current)[:MAX_RECENT_AMOUNTS]
    _save_recent_amounts(recent)
    return recent.by_asset[asset_type]


def clear_recent_amounts(asset_type: str) -> None:
    recent = _load_recent_amounts()
    if recent.by_asset.pop(asset_type, None) is not None:
        _save_recent_amounts(recent)


@dataclass(frozen=True)
class Settings:
    db_url: str
    fetch_timeout_seconds: float
    fetch_max_attempts: int
    fetch_base_delay_seconds: float
    fetch_max_delay_seconds: float
    timeout_penalty: float
    backup_max_age_hours: float
    history_max_entries: int
    refresh_interval_seconds: int
    log_level: str
    display_currency: str

    @staticmethod
    def load() -> "Settings":
        base = Settings(
            db_url=_get_str("GB_DB_URL") or f"sqlite:///{DATA_DIR / 'goldbook.db'}",
            fetch_timeout_seconds=max(0.5, _get_float("GB_FETCH_TIMEOUT_SECONDS", 10.0)),
            fetch_max_attempts=max(1, _get_int("GB_FETCH_MAX_ATTEMPTS", 3)),
            fetch_base_delay_seconds=max(0.0, _get_float("GB_FETCH_BASE_DELAY_SECONDS", 1.0)),
            fetch_max_delay_seconds=max(0.0, _get_float("GB_FETCH_MAX_DELAY_SECONDS", 10.0)),
            timeout_penalty=max(1.0, _get_float("GB_TIMEOUT_PENALTY", 3.0)),
            backup_max_age_hours=max(1.0, _get_float("GB_BACKUP_MAX_AGE_HOURS", 24.0)),
            history_max_entries=max(10, _get_int("GB_HISTORY_MAX_ENTRIES", 1000)),
            refresh_interval_seconds=max(30, _get_int("GB_REFRESH_INTERVAL_SECONDS", 300)),
            log_level=(_get_str("GB_LOG_LEVEL", "INFO") or "INFO").upper(),
            display_currency="TRY",
        )
        ov = load_settings_override()
        if not ov:
            return base
        return replace(base, display_currency=ov.display_currency or base.display_currency)


def effective_settings_dict(settings: Settings) -> dict:
    d = asdict(settings)
    d["price_source"] = get_price_source()
    return d
