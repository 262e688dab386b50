"""Configuration for the copy-trading service.

Values are resolved, highest priority first, from constructor arguments, the
environment (``RPC__PRIMARY_URL`` style, nested with ``__``), ``.env`` and a
TOML file with profiles: ``[default.*]`` tables apply to every mode and
``[<mode>.*]`` tables override them key by key. ``BOT_MODE`` picks the
profile and ``APP_CONFIG_FILE`` the file.
"""

from __future__ import annotations

import os
import tomllib
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Type

from pydantic import AnyHttpUrl, BaseModel, Field, field_validator, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

DEFAULT_CONFIG_FILE = Path("config/app.toml")
CONFIG_FILE_ENV_VAR = "APP_CONFIG_FILE"
MODE_ENV_VAR = "BOT_MODE"
DEFAULT_PROFILE = "default"


class AppMode(str, Enum):
    """Supported runtime modes."""

    DRY_RUN = "dry_run"
    LIVE = "live"


def config_file_path() -> Path:
    configured = os.getenv(CONFIG_FILE_ENV_VAR)
    path = Path(configured) if configured else DEFAULT_CONFIG_FILE
    return path if path.is_absolute() else Path.cwd() / path


def merge_tables(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``overlay`` onto ``base`` without mutating either."""

    merged: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_tables(current, value)
        else:
            merged[key] = value
    return merged


def _profile_name(defaults: Mapping[str, Any]) -> str:
    requested = os.getenv(MODE_ENV_VAR)
    if not requested:
        declared = defaults.get("mode")
        if isinstance(declared, Mapping):
            requested = declared.get("active")
        elif isinstance(declared, str):
            requested = declared
    return str(requested or AppMode.DRY_RUN.value).lower()


def resolve_profile(document: Mapping[str, Any]) -> Dict[str, Any]:
    """Flatten a profiled TOML document into the settings for one mode.

    A document without a ``[default]`` table or a table for the selected
    mode is treated as a flat settings file.
    """

    defaults = document.get(DEFAULT_PROFILE)
    name = _profile_name(defaults if isinstance(defaults, Mapping) else {})
    overlay = document.get(name) if name != DEFAULT_PROFILE else None
    if not isinstance(defaults, Mapping) and not isinstance(overlay, Mapping):
        return dict(document)
    return merge_tables(
        defaults if isinstance(defaults, Mapping) else {},
        overlay if isinstance(overlay, Mapping) else {},
    )


class TomlProfileSource(PydanticBaseSettingsSource):
    """Settings source backed by the profiled TOML file, when it exists."""

    def __init__(self, settings_cls: Type[BaseSettings], path: Optional[Path] = None) -> None:
        super().__init__(settings_cls)
        self.path = path or config_file_path()
        self._values = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        with self.path.open("rb") as handle:
            values = resolve_profile(tomllib.load(handle))
        mode = values.get("mode")
        mode = dict(mode) if isinstance(mode, Mapping) else {}
        mode.setdefault("config_file", str(self.path))
        values["mode"] = mode
        return values

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        return self._values.get(field_name), field_name, False

    def __call__(self) -> Dict[str, Any]:
        return dict(self._values)


class ModeConfig(BaseModel):
    """Runtime mode and operational toggles."""

    active: AppMode = Field(default=AppMode.DRY_RUN)
    cluster: str = Field(default="mainnet-beta")
    config_file: Optional[Path] = None


class RPCConfig(BaseModel):
    """RPC configuration for Solana endpoints."""

    primary_url: AnyHttpUrl = Field(default="https://api.mainnet-beta.solana.com")
    fallback_urls: List[AnyHttpUrl] = Field(default_factory=list)
    request_timeout: float = Field(default=12.0, ge=1.0, le=60.0)
    commitment: str = Field(default="confirmed")

    @field_validator("fallback_urls", mode="before")
    @classmethod
    def _split_and_dedupe(cls, value: Any) -> List[str]:
        # Accepts a list or the comma-separated form used in env vars.
        items: Iterable[Any] = value.split(",") if isinstance(value, str) else (value or ())
        return list(dict.fromkeys(text for text in (str(item).strip() for item in items) if text))


class SwapConfig(BaseModel):
    """Swap provider endpoints (Jupiter aggregator)."""

    quote_url: AnyHttpUrl = Field(default="https://quote-api.jup.ag/v6/quote")
    swap_url: AnyHttpUrl = Field(default="https://quote-api.jup.ag/v6/swap")
    price_url: AnyHttpUrl = Field(default="https://lite-api.jup.ag/price/v3")
    token_url: AnyHttpUrl = Field(default="https://lite-api.jup.ag/tokens/v2/search")
    http_timeout: float = Field(default=10.0, ge=1.0, le=45.0)
    wrap_and_unwrap_sol: bool = True
    compute_unit_price_micro_lamports: str = Field(default="auto")
    fallback_quote_mint: str = Field(default="EPjFWdd5AufqSSqeM2qN1xzybapC8WdGCr3vZ9V4Wrh")


class ExecutionConfig(BaseModel):
    """Rate limiting and retry behaviour for swap execution."""

    rate_limiter_concurrency: int = Field(default=3, ge=1, le=32)
    rate_limiter_min_interval_seconds: float = Field(default=1.0, ge=0.0)
    retry_max_attempts: int = Field(default=3, ge=1, le=10)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0.0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0.0)


class SizingConfig(BaseModel):
    """Copy-trade sizing policy."""

    proportional_factor: float = Field(default=0.1, gt=0.0, le=1.0)
    hard_cap_sol: float = Field(default=1.0, gt=0.0)
    position_scale_factor: float = Field(default=0.5, gt=0.0, le=1.0)
    min_trade_sol: float = Field(default=0.001, ge=0.0)
    max_trade_sol: float = Field(default=100.0, gt=0.0)
    max_sell_fraction: float = Field(default=0.8, gt=0.0, le=1.0)
    default_sell_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    fee_buffer_sol: float = Field(default=0.01, ge=0.0)
    dust_epsilon: float = Field(default=1e-9, gt=0.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "SizingConfig":
        if self.min_trade_sol > self.max_trade_sol:
            raise ValueError("min_trade_sol must not exceed max_trade_sol")
        return self


class MonitorConfig(BaseModel):
    """Position monitor scheduling."""

    enabled: bool = True
    interval_seconds: float = Field(default=30.0, gt=0.0)


class CacheConfig(BaseModel):
    """Time-to-live policy per cached data class."""

    token_metadata_ttl_seconds: float = Field(default=300.0, gt=0.0)
    price_ttl_seconds: float = Field(default=30.0, gt=0.0)
    trackers_ttl_seconds: float = Field(default=30.0, gt=0.0)
    positions_ttl_seconds: float = Field(default=30.0, gt=0.0)
    blacklist_ttl_seconds: float = Field(default=60.0, gt=0.0)
    auto_sell_users_ttl_seconds: float = Field(default=30.0, gt=0.0)
    seen_signatures_ttl_seconds: float = Field(default=600.0, gt=0.0)
    max_entries: int = Field(default=4_096, ge=16)


class LimitsConfig(BaseModel):
    """Bounds on user-editable trading settings."""

    min_slippage_pct: float = Field(default=0.1, gt=0.0)
    max_slippage_pct: float = Field(default=50.0, gt=0.0)
    min_trade_amount: float = Field(default=0.01, ge=0.0)
    max_trade_amount: float = Field(default=100.0, gt=0.0)
    min_take_profit_pct: float = Field(default=1.0, gt=0.0)
    max_take_profit_pct: float = Field(default=1_000.0, gt=0.0)
    min_stop_loss_pct: float = Field(default=1.0, gt=0.0)
    max_stop_loss_pct: float = Field(default=95.0, gt=0.0, le=100.0)
    max_alpha_wallets: int = Field(default=3, ge=1)


class StorageConfig(BaseModel):
    """State persistence configuration."""

    database_path: Path = Field(default=Path("./copy_trader.sqlite3"))


class MonitoringConfig(BaseModel):
    """Logging and notification configuration."""

    log_level: str = Field(default="INFO")
    telegram_bot_token: Optional[str] = None
    telegram_api_url: AnyHttpUrl = Field(default="https://api.telegram.org")
    notification_throttle_seconds: float = Field(default=0.0, ge=0.0)
    http_timeout: float = Field(default=5.0, ge=1.0, le=30.0)


class AppConfig(BaseSettings):
    """Aggregated application configuration."""

    mode: ModeConfig = Field(default_factory=ModeConfig)
    rpc: RPCConfig = Field(default_factory=RPCConfig)
    swap: SwapConfig = Field(default_factory=SwapConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    sizing: SizingConfig = Field(default_factory=SizingConfig)
    monitor: MonitorConfig = Field(default_factory=MonitorConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        # The environment wins over the static file.
        return init_settings, env_settings, dotenv_settings, TomlProfileSource(settings_cls), file_secret_settings


@lru_cache(maxsize=1)
def get_app_config() -> AppConfig:
    """Process-wide configuration; tests reset it with ``cache_clear()``."""

    return AppConfig()


__all__ = [
    "AppConfig",
    "AppMode",
    "TomlProfileSource",
    "CacheConfig",
    "ExecutionConfig",
    "LimitsConfig",
    "ModeConfig",
    "MonitorConfig",
    "MonitoringConfig",
    "RPCConfig",
    "SizingConfig",
    "StorageConfig",
    "SwapConfig",
    "get_app_config",
]
