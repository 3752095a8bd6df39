from __future__ import annotations

import pytest

from filops_agents.core.config import DealDefaultsConfig, RuntimeConfig, Settings


def test_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ("FILOPS_LOG_LEVEL", "FILOPS_DATABASE_URL", "FILOPS_RUNTIME__ERROR_ALERT_THRESHOLD"):
        monkeypatch.delenv(key, raising=False)
    s = Settings(_env_file=None)
    assert s.log_level == "INFO"
    assert s.runtime == RuntimeConfig()
    assert s.deals == DealDefaultsConfig()
    assert s.runtime.heartbeat_stale_after_seconds == 300
    assert s.runtime.error_alert_threshold == 3
    assert s.deals.duration_days == 180
    assert s.deals.price_fil == "50"
    assert s.deals.collateral_fil == "100"


def test_prefixed_and_nested_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FILOPS_LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("FILOPS_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("FILOPS_RUNTIME__ERROR_ALERT_THRESHOLD", "5")
    monkeypatch.setenv("FILOPS_INTEGRATIONS__PRICING_API_URL", "http://pricing:9000")
    monkeypatch.setenv("FILOPS_DEALS__VERIFIED", "false")

    s = Settings(_env_file=None)
    assert s.log_level == "DEBUG"
    assert s.database_url == "sqlite+aiosqlite:///:memory:"
    assert s.runtime.error_alert_threshold == 5
    assert s.integrations.pricing_api_url == "http://pricing:9000"
    assert s.deals.verified is False


def test_runtime_bounds_enforced() -> None:
    with pytest.raises(ValueError):
        RuntimeConfig(heartbeat_stale_after_seconds=0)
    with pytest.raises(ValueError):
        RuntimeConfig(error_alert_threshold=0)
