import os

import pytest

from impact_gateway.config import DEFAULT_DEVICE_PATTERNS, ImpactSettings
from impact_gateway.errors import IMP_E_CONFIG, ImpactError
from impact_gateway.retry import RetryPolicy


def _clear(monkeypatch):
    for name in list(os.environ):
        if name.startswith("IMPACT_"):
            monkeypatch.delenv(name, raising=False)


def test_defaults_without_environment(monkeypatch):
    _clear(monkeypatch)
    s = ImpactSettings.from_env()
    assert s.ledger_path == "impact_ledger.db"
    assert s.device_patterns == DEFAULT_DEVICE_PATTERNS
    assert s.attestation_url is None
    assert s.operator_address == "0xoperator"
    assert s.base_amount == 50_000


def test_environment_values_are_read_and_clamped(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("IMPACT_LEDGER_PATH", "/var/lib/impact/ledger.db")
    monkeypatch.setenv("IMPACT_CONCURRENCY", "500")
    monkeypatch.setenv("IMPACT_RETRY_ATTEMPTS", "0")
    monkeypatch.setenv("IMPACT_HTTP_TIMEOUT_SECONDS", "oops")
    monkeypatch.setenv("IMPACT_DEVICE_PATTERNS", "(?i)^acme.*, (?i).*cam$")
    monkeypatch.setenv("IMPACT_GATEWAY_URL", "https://gw.example/ipfs/")
    monkeypatch.setenv("IMPACT_WEATHER_API_KEY", "  secret  ")

    s = ImpactSettings.from_env()
    assert s.ledger_path == "/var/lib/impact/ledger.db"
    assert s.concurrency == 64
    assert s.retry_attempts == 1
    assert s.http_timeout_seconds == 10.0
    assert s.device_patterns == ("(?i)^acme.*", "(?i).*cam$")
    assert s.gateway_url == "https://gw.example/ipfs"
    assert s.weather_api_key == "secret"


def test_secrets_stay_out_of_repr():
    s = ImpactSettings(pinata_jwt="jwt-value", news_api_key="news-key")
    assert "jwt-value" not in repr(s)
    assert "news-key" not in repr(s)


def test_overrides_apply_known_keys():
    s = ImpactSettings().with_overrides({"news_limit": 3, "device_patterns": "(?i)^acme.*", "claim_ttl_seconds": 0})
    assert s.news_limit == 3
    assert s.device_patterns == ("(?i)^acme.*",)
    assert s.claim_ttl_seconds == 1


def test_unknown_override_is_config_error():
    with pytest.raises(ImpactError) as ei:
        ImpactSettings().with_overrides({"news_limit": 3, "rpc_url": "http://x", "faucet": True})
    assert ei.value.code == IMP_E_CONFIG
    assert ei.value.details["keys"] == ["faucet", "rpc_url"]


def test_retry_policy_from_settings():
    p = RetryPolicy.from_settings(ImpactSettings(retry_attempts=5, retry_backoff_seconds=0.25, http_timeout_seconds=3))
    assert p == RetryPolicy(max_attempts=5, backoff_s=0.25, timeout_s=3.0)
