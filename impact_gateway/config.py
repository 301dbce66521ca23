"""Runtime configuration.

Everything external (endpoints, credentials, the operator key) is consumed as
opaque configuration from ``IMPACT_*`` environment variables or a JSON config
file, never hard-coded.

Environment variables:
- IMPACT_LEDGER_PATH: sqlite path of the dedup ledger.
- IMPACT_CLAIM_TTL_SECONDS: age after which an unfinished claim may be re-claimed.
- IMPACT_CONCURRENCY: batch / scheduler worker count.
- IMPACT_HTTP_TIMEOUT_SECONDS: fixed per-call timeout for collaborators.
- IMPACT_RETRY_ATTEMPTS / IMPACT_RETRY_BACKOFF_SECONDS: transient retry policy.
- IMPACT_NEWS_LIMIT: max related headlines per record.
- IMPACT_BASE_AMOUNT: funding base amount (smallest currency unit).
- IMPACT_DEVICE_PATTERNS: comma-separated regexes for allow-listed devices.
- IMPACT_GATEWAY_URL: content gateway prefix used in documents.
- IMPACT_ATTESTATION_URL / IMPACT_ATTESTATION_API_KEY
- IMPACT_GEOCODE_URL
- IMPACT_WEATHER_URL / IMPACT_WEATHER_API_KEY
- IMPACT_NEWS_URL / IMPACT_NEWS_API_KEY
- IMPACT_PINATA_URL / IMPACT_PINATA_JWT
- IMPACT_GOVERNANCE_URL / IMPACT_GOVERNANCE_API_KEY
- IMPACT_CONTRACT_ADDRESS: address of the in-process governance contract.
- IMPACT_OPERATOR_ADDRESS: address used as proposer/beneficiary default.
- IMPACT_AUDIT_LOG_PATH: optional tamper-evident audit log.
- IMPACT_INTAKE_DIR: root directory the HTTP scan endpoint may read; unset disables it.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from .errors import IMP_E_CONFIG, impact_error


DEFAULT_DEVICE_PATTERNS: Tuple[str, ...] = (
    r"(?i)^meta\b.*",
    r"(?i).*\bray-?ban\b.*",
)

DEFAULT_GATEWAY_URL = "https://gateway.pinata.cloud/ipfs"


def _get_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


def _get_str(name: str) -> Optional[str]:
    v = os.getenv(name)
    if v is None:
        return None
    v = v.strip()
    return v or None


@dataclass(frozen=True)
class ImpactSettings:
    ledger_path: str = "impact_ledger.db"
    claim_ttl_seconds: int = 900
    concurrency: int = 4
    http_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    news_limit: int = 5
    base_amount: int = 50_000
    device_patterns: Tuple[str, ...] = DEFAULT_DEVICE_PATTERNS
    gateway_url: str = DEFAULT_GATEWAY_URL

    attestation_url: Optional[str] = None
    attestation_api_key: Optional[str] = field(default=None, repr=False)
    geocode_url: Optional[str] = None
    weather_url: Optional[str] = None
    weather_api_key: Optional[str] = field(default=None, repr=False)
    news_url: Optional[str] = None
    news_api_key: Optional[str] = field(default=None, repr=False)
    pinata_url: Optional[str] = None
    pinata_jwt: Optional[str] = field(default=None, repr=False)
    governance_url: Optional[str] = None
    governance_api_key: Optional[str] = field(default=None, repr=False)
    contract_address: Optional[str] = None
    operator_address: str = "0xoperator"
    audit_log_path: Optional[str] = None
    intake_dir: Optional[str] = None

    @classmethod
    def from_env(cls) -> "ImpactSettings":
        patterns_raw = _get_str("IMPACT_DEVICE_PATTERNS")
        patterns = (
            tuple(p.strip() for p in patterns_raw.split(",") if p.strip())
            if patterns_raw
            else cls.device_patterns
        )
        settings = cls(
            ledger_path=_get_str("IMPACT_LEDGER_PATH") or cls.ledger_path,
            claim_ttl_seconds=_get_int("IMPACT_CLAIM_TTL_SECONDS", cls.claim_ttl_seconds),
            concurrency=_get_int("IMPACT_CONCURRENCY", cls.concurrency),
            http_timeout_seconds=_get_float("IMPACT_HTTP_TIMEOUT_SECONDS", cls.http_timeout_seconds),
            retry_attempts=_get_int("IMPACT_RETRY_ATTEMPTS", cls.retry_attempts),
            retry_backoff_seconds=_get_float("IMPACT_RETRY_BACKOFF_SECONDS", cls.retry_backoff_seconds),
            news_limit=_get_int("IMPACT_NEWS_LIMIT", cls.news_limit),
            base_amount=_get_int("IMPACT_BASE_AMOUNT", cls.base_amount),
            device_patterns=patterns,
            gateway_url=_get_str("IMPACT_GATEWAY_URL") or cls.gateway_url,
            attestation_url=_get_str("IMPACT_ATTESTATION_URL"),
            attestation_api_key=_get_str("IMPACT_ATTESTATION_API_KEY"),
            geocode_url=_get_str("IMPACT_GEOCODE_URL"),
            weather_url=_get_str("IMPACT_WEATHER_URL"),
            weather_api_key=_get_str("IMPACT_WEATHER_API_KEY"),
            news_url=_get_str("IMPACT_NEWS_URL"),
            news_api_key=_get_str("IMPACT_NEWS_API_KEY"),
            pinata_url=_get_str("IMPACT_PINATA_URL"),
            pinata_jwt=_get_str("IMPACT_PINATA_JWT"),
            governance_url=_get_str("IMPACT_GOVERNANCE_URL"),
            governance_api_key=_get_str("IMPACT_GOVERNANCE_API_KEY"),
            contract_address=_get_str("IMPACT_CONTRACT_ADDRESS"),
            operator_address=_get_str("IMPACT_OPERATOR_ADDRESS") or cls.operator_address,
            audit_log_path=_get_str("IMPACT_AUDIT_LOG_PATH"),
            intake_dir=_get_str("IMPACT_INTAKE_DIR"),
        )
        return settings.clamped()

    def clamped(self) -> "ImpactSettings":
        return dataclasses.replace(
            self,
            claim_ttl_seconds=max(1, min(int(self.claim_ttl_seconds), 7 * 24 * 3600)),
            concurrency=max(1, min(int(self.concurrency), 64)),
            http_timeout_seconds=max(0.1, min(float(self.http_timeout_seconds), 120.0)),
            retry_attempts=max(1, min(int(self.retry_attempts), 10)),
            retry_backoff_seconds=max(0.0, min(float(self.retry_backoff_seconds), 30.0)),
            news_limit=max(0, min(int(self.news_limit), 50)),
            base_amount=max(0, int(self.base_amount)),
            gateway_url=str(self.gateway_url).rstrip("/"),
        )

    def with_overrides(self, overrides: Mapping[str, Any]) -> "ImpactSettings":
        """Apply values from a JSON config file. Unknown keys are a config error."""
        known = {f.name for f in dataclasses.fields(self)}
        unknown = sorted(k for k in overrides if k not in known)
        if unknown:
            raise impact_error(IMP_E_CONFIG, "unknown configuration keys", keys=unknown)
        values: Dict[str, Any] = dict(overrides)
        if "device_patterns" in values:
            dp = values["device_patterns"]
            if isinstance(dp, str):
                dp = [dp]
            values["device_patterns"] = tuple(str(p) for p in dp)
        return dataclasses.replace(self, **values).clamped()
