from __future__ import annotations

import io
import json
import logging

import pytest

from solana_copy_trader.config.settings import MonitoringConfig
from solana_copy_trader.monitoring import logger as logger_module
from solana_copy_trader.monitoring.logger import StructuredFormatter, correlation_scope, current_correlation_id
from solana_copy_trader.monitoring.metrics import MetricsRegistry, prometheus_name


def _record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("solana_copy_trader.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_structured_formatter_emits_json_with_extras() -> None:
    record = _record("Recorded buy trade 7", user_id=3, correlation_id="sig-abc:3")

    payload = json.loads(StructuredFormatter().format(record))

    assert payload["message"] == "Recorded buy trade 7"
    assert payload["level"] == "INFO"
    assert payload["correlation_id"] == "sig-abc:3"
    assert payload["extra"] == {"user_id": 3}
    assert "job" not in payload


def test_records_inside_a_job_carry_its_fields(monkeypatch: pytest.MonkeyPatch) -> None:
    stream = io.StringIO()
    monkeypatch.setattr(logger_module, "_configured", False)
    root = logging.getLogger()
    previous_handlers, previous_level = list(root.handlers), root.level
    try:
        logger_module.configure_logging(MonitoringConfig(log_level="DEBUG"), stream=stream)
        log = logger_module.get_logger("solana_copy_trader.test_job")
        with correlation_scope("sig-xyz:9", user_id=9, token="MintA"):
            log.info("Copying buy", extra={"amount": 0.2})
        log.info("Outside")
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)

    inside, outside = (json.loads(line) for line in stream.getvalue().splitlines())
    assert inside["correlation_id"] == "sig-xyz:9"
    assert inside["job"] == {"user_id": 9, "token": "MintA"}
    assert inside["extra"] == {"amount": 0.2}
    assert outside["correlation_id"] == "-"
    assert "job" not in outside


def test_correlation_scope_nests_and_restores() -> None:
    assert current_correlation_id() == "-"
    with correlation_scope("outer"):
        with correlation_scope("inner"):
            assert current_correlation_id() == "inner"
        assert current_correlation_id() == "outer"
    assert current_correlation_id() == "-"


def test_prometheus_export_uses_namespace_and_summaries() -> None:
    registry = MetricsRegistry()
    registry.increment("auto_sell_executed.take_profit")
    registry.gauge("limiter.running", 2)
    registry.observe("swap.latency", 0.5)
    registry.observe("swap.latency", 1.5)

    text = registry.export_prometheus()

    assert "copy_trader_auto_sell_executed_take_profit 1.0" in text
    assert "# TYPE copy_trader_limiter_running gauge" in text
    assert 'copy_trader_swap_latency{quantile="0.5"} 0.5' in text
    assert "copy_trader_swap_latency_sum 2.0" in text
    assert "copy_trader_swap_latency_count 2" in text
    assert prometheus_name("9lives") == "_9lives"


def test_timer_records_even_when_the_block_fails() -> None:
    registry = MetricsRegistry(window=2)

    with pytest.raises(RuntimeError):
        with registry.time("swap_latency_seconds"):
            raise RuntimeError("boom")
    for value in (1.0, 2.0):
        registry.observe("swap_latency_seconds", value)

    assert registry.samples("swap_latency_seconds") == [1.0, 2.0]
    assert registry.snapshot()["samples"]["swap_latency_seconds"]["count"] == 3.0
