from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from solana_copy_trader.config import settings


def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "RPC__PRIMARY_URL",
        "RPC__FALLBACK_URLS",
        "RPC__REQUEST_TIMEOUT",
        "EXECUTION__RATE_LIMITER_CONCURRENCY",
        "SIZING__PROPORTIONAL_FACTOR",
        "MONITOR__INTERVAL_SECONDS",
        "MONITORING__TELEGRAM_BOT_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def test_app_config_loads_profiles_and_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    config_path = tmp_path / "app.toml"
    config_path.write_text(
        """
[default.mode]
active = "dry_run"

[default.rpc]
primary_url = "https://api.default"
request_timeout = 9.5

[default.sizing]
proportional_factor = 0.2
hard_cap_sol = 2.0

[default.monitor]
interval_seconds = 45

[live.mode]
active = "live"

[live.rpc]
primary_url = "https://api.mainnet"

[live.sizing]
hard_cap_sol = 0.5
"""
    )
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_CONFIG_FILE", str(config_path))
    monkeypatch.setenv("BOT_MODE", "live")
    monkeypatch.setenv("RPC__REQUEST_TIMEOUT", "18")

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()

        assert cfg.mode.active == settings.AppMode.LIVE
        assert cfg.mode.config_file == config_path
        assert "api.mainnet" in str(cfg.rpc.primary_url)
        assert cfg.rpc.request_timeout == 18.0
        # live inherits from default and overrides per key
        assert cfg.sizing.proportional_factor == 0.2
        assert cfg.sizing.hard_cap_sol == 0.5
        assert cfg.monitor.interval_seconds == 45.0
    finally:
        settings.get_app_config.cache_clear()


def test_defaults_without_config_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    _clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("APP_CONFIG_FILE", str(tmp_path / "missing.toml"))
    monkeypatch.delenv("BOT_MODE", raising=False)

    settings.get_app_config.cache_clear()
    try:
        cfg = settings.get_app_config()

        assert cfg.mode.active == settings.AppMode.DRY_RUN
        assert cfg.execution.rate_limiter_concurrency == 3
        assert cfg.execution.rate_limiter_min_interval_seconds == 1.0
        assert cfg.execution.retry_max_attempts == 3
        assert cfg.monitor.interval_seconds == 30.0
        assert cfg.sizing.proportional_factor == 0.1
        assert cfg.sizing.position_scale_factor == 0.5
        assert cfg.sizing.max_sell_fraction == 0.8
        assert cfg.limits.max_alpha_wallets == 3
        assert cfg.cache.seen_signatures_ttl_seconds == 600.0
    finally:
        settings.get_app_config.cache_clear()


def test_fallback_urls_accept_comma_separated_strings() -> None:
    cfg = settings.RPCConfig(
        fallback_urls="https://a.example, https://b.example,https://a.example"
    )

    assert [str(url).rstrip("/") for url in cfg.fallback_urls] == [
        "https://a.example",
        "https://b.example",
    ]


def test_sizing_rejects_inverted_bounds() -> None:
    with pytest.raises(ValidationError):
        settings.SizingConfig(min_trade_sol=5.0, max_trade_sol=1.0)
