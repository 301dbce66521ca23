"""Wiring: build a ready pipeline from ImpactSettings.

Each collaborator is configured only when its endpoint or credential is
present; an unconfigured lookup is skipped rather than failing. Without a
governance URL, proposals go to an in-process ImpactDAO on a LocalLedger and
the operator address is enrolled as an agent so it can propose.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from . import metrics
from .attestation import EvidenceVerifier, HttpAttestationService
from .audit_log import TamperEvidentAuditLog
from .config import ImpactSettings
from .crypto import Ed25519KeyPair, load_signing_key_from_env
from .enrichment import (
    NEWSAPI_URL,
    OPENWEATHER_URL,
    ContextEnricher,
    NewsApiLookup,
    NominatimPlaceLookup,
    OpenWeatherLookup,
)
from .governance import ImpactDAO, LocalLedger
from .governance_client import GovernanceClient, HttpGovernanceClient, LedgerGovernanceClient
from .ledger import DedupLedger
from .normalizer import EvidenceNormalizer
from .pipeline import EvidencePipeline
from .publisher import ProposalPublisher
from .retry import RetryPolicy
from .scoring import ImpactScorer, SceneAnalyzer
from .storage import PINATA_URL, ContentStore, LocalContentStore, PinataContentStore

logger = logging.getLogger("impact_gateway.runtime")


@dataclass
class GatewayRuntime:
    settings: ImpactSettings
    ledger: DedupLedger
    pipeline: EvidencePipeline
    store: ContentStore
    dao: Optional[ImpactDAO] = None
    signing_key: Optional[Ed25519KeyPair] = None
    _closers: List[Any] = field(default_factory=list, repr=False)

    async def aclose(self) -> None:
        for c in self._closers:
            await c.aclose()
        self._closers = []


def build_runtime(
    settings: ImpactSettings,
    *,
    signing_key: Optional[Ed25519KeyPair] = None,
    dao: Optional[ImpactDAO] = None,
    store: Optional[ContentStore] = None,
    analyzer: Optional[SceneAnalyzer] = None,
) -> GatewayRuntime:
    policy = RetryPolicy.from_settings(settings)
    timeout = settings.http_timeout_seconds
    closers: List[Any] = []

    if signing_key is None:
        signing_key = load_signing_key_from_env()
    if signing_key is None:
        logger.warning("IMPACT_SIGNING_KEY not set; device signatures and the audit log are disabled")

    ledger = DedupLedger(settings.ledger_path, claim_ttl_seconds=settings.claim_ttl_seconds)

    attestation = None
    if settings.attestation_url:
        attestation = HttpAttestationService(
            settings.attestation_url, api_key=settings.attestation_api_key, timeout_s=timeout
        )
        closers.append(attestation)
    verifier = EvidenceVerifier(
        device_patterns=settings.device_patterns,
        attestation=attestation,
        signing_key=signing_key,
        policy=policy,
    )

    places = None
    if settings.geocode_url:
        places = NominatimPlaceLookup(settings.geocode_url, timeout_s=timeout)
        closers.append(places)
    weather = None
    if settings.weather_api_key:
        weather = OpenWeatherLookup(
            settings.weather_api_key, base_url=settings.weather_url or OPENWEATHER_URL, timeout_s=timeout
        )
        closers.append(weather)
    news = None
    if settings.news_api_key:
        news_places = places
        if news_places is None:
            news_places = NominatimPlaceLookup(timeout_s=timeout)
            closers.append(news_places)
        news = NewsApiLookup(
            settings.news_api_key, news_places, base_url=settings.news_url or NEWSAPI_URL, timeout_s=timeout
        )
        closers.append(news)
    enricher = ContextEnricher(
        places=places,
        weather=weather,
        news=news,
        policy=policy,
        news_limit=settings.news_limit,
        on_lookup=lambda name, status: metrics.record_lookup(name, status.value),
    )

    if store is None:
        if settings.pinata_jwt:
            pinata = PinataContentStore(
                settings.pinata_jwt, base_url=settings.pinata_url or PINATA_URL, gateway=settings.gateway_url
            )
            closers.append(pinata)
            store = pinata
        else:
            logger.info("no pinning credentials; using the local content store")
            store = LocalContentStore(gateway=settings.gateway_url)

    governance: GovernanceClient
    if settings.governance_url and dao is None:
        http_gov = HttpGovernanceClient(
            settings.governance_url, api_key=settings.governance_api_key, timeout_s=timeout
        )
        closers.append(http_gov)
        governance = http_gov
    else:
        if dao is None:
            dao = ImpactDAO(LocalLedger(), address=settings.contract_address or "0xdao")
        if not dao.is_member(settings.operator_address):
            dao.session(settings.operator_address).join_as_agent()
        governance = LedgerGovernanceClient(dao, settings.operator_address)

    publisher = ProposalPublisher(
        store=store,
        governance=governance,
        default_beneficiary=settings.operator_address,
        policy=policy,
    )

    audit_log = None
    if settings.audit_log_path:
        if signing_key is not None:
            audit_log = TamperEvidentAuditLog(settings.audit_log_path, signing_key)
        else:
            logger.warning("IMPACT_AUDIT_LOG_PATH set without a signing key; audit log disabled")

    pipeline = EvidencePipeline(
        ledger=ledger,
        verifier=verifier,
        enricher=enricher,
        scorer=ImpactScorer(base_amount=settings.base_amount),
        publisher=publisher,
        normalizer=EvidenceNormalizer(),
        analyzer=analyzer,
        audit_log=audit_log,
    )
    return GatewayRuntime(
        settings=settings,
        ledger=ledger,
        pipeline=pipeline,
        store=store,
        dao=dao,
        signing_key=signing_key,
        _closers=closers,
    )
