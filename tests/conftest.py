from __future__ import annotations

import io
from datetime import datetime
from typing import List, Optional

import pytest
from PIL import Image

from impact_gateway.attestation import EvidenceVerifier
from impact_gateway.config import DEFAULT_DEVICE_PATTERNS
from impact_gateway.crypto import Ed25519KeyPair
from impact_gateway.enrichment import ContextEnricher
from impact_gateway.governance import ImpactDAO, LocalLedger
from impact_gateway.governance_client import LedgerGovernanceClient
from impact_gateway.ledger import DedupLedger
from impact_gateway.models import (
    NewsHeadline,
    PlaceInfo,
    TaskStatus,
    VerificationTask,
    WeatherReading,
)
from impact_gateway.pipeline import EvidencePipeline
from impact_gateway.publisher import ProposalPublisher
from impact_gateway.retry import RetryPolicy
from impact_gateway.scoring import ImpactScorer
from impact_gateway.storage import LocalContentStore

OPERATOR = "0xoperator"
FAST = RetryPolicy(max_attempts=2, backoff_s=0.0, timeout_s=2.0)


def make_jpeg(color=(200, 40, 40), size=(64, 48), *, make="Meta", model="Ray-Ban Stories",
              taken="2026:01:02 10:30:00") -> bytes:
    img = Image.new("RGB", size, color)
    exif = Image.Exif()
    if make:
        exif[0x010F] = make
    if model:
        exif[0x0110] = model
    if taken:
        exif[0x0132] = taken
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=90, exif=exif.tobytes())
    return buf.getvalue()


def make_png(color=(10, 120, 200), size=(40, 30)) -> bytes:
    img = Image.new("RGBA", size, color + (255,))
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class FakeAttestation:
    def __init__(self, status: TaskStatus = TaskStatus.VERIFIED, fail: Optional[Exception] = None):
        self.status = status
        self.fail = fail
        self.submitted: List[str] = []

    async def submit_task(self, content_hash: str, metadata_hash: str, device_signature: str) -> str:
        if self.fail is not None:
            raise self.fail
        self.submitted.append(content_hash)
        return f"task-{len(self.submitted)}"

    async def get_task(self, task_id: str) -> VerificationTask:
        return VerificationTask(task_id=task_id, content_hash="", metadata_hash="", device_signature="",
                                status=self.status)


class FakePlaces:
    def __init__(self, place: Optional[PlaceInfo] = None, fail: Optional[Exception] = None):
        self.place = place or PlaceInfo(address="Market St", city="San Francisco", state="California",
                                        country="United States")
        self.fail = fail
        self.calls = 0

    async def lookup(self, lat: float, lng: float) -> Optional[PlaceInfo]:
        self.calls += 1
        if self.fail is not None:
            raise self.fail
        return self.place


class FakeWeather:
    def __init__(self, historical_exc: Optional[Exception] = None, current_exc: Optional[Exception] = None):
        self.historical_exc = historical_exc
        self.current_exc = current_exc
        self.historical_calls = 0
        self.current_calls = 0

    async def historical(self, lat: float, lng: float, at: datetime) -> Optional[WeatherReading]:
        self.historical_calls += 1
        if self.historical_exc is not None:
            raise self.historical_exc
        return WeatherReading(conditions="heavy rain", temperature_c=12.5, source="historical")

    async def current(self, lat: float, lng: float) -> Optional[WeatherReading]:
        self.current_calls += 1
        if self.current_exc is not None:
            raise self.current_exc
        return WeatherReading(conditions="clear sky", temperature_c=18.0, source="current")


class FakeNews:
    def __init__(self, headlines: Optional[List[NewsHeadline]] = None, fail: Optional[Exception] = None):
        self.headlines = headlines if headlines is not None else [
            NewsHeadline(title="Flooding closes roads", url="https://news.example/1"),
            NewsHeadline(title="Volunteers clear debris", url="https://news.example/2"),
        ]
        self.fail = fail

    async def search(self, lat: float, lng: float, at: datetime, limit: int) -> List[NewsHeadline]:
        if self.fail is not None:
            raise self.fail
        return self.headlines[:limit]


@pytest.fixture
def dao():
    ledger = LocalLedger(start_time=1_700_000_000)
    dao = ImpactDAO(ledger, minimum_stake=100, voting_window_seconds=3600)
    dao.session(OPERATOR).join_as_agent()
    return dao


@pytest.fixture
def signing_key():
    return Ed25519KeyPair.from_seed(bytes(range(32)), "operator")


@pytest.fixture
def store():
    return LocalContentStore(gateway="https://ipfs.example/ipfs")


@pytest.fixture
def build_pipeline(tmp_path, dao, store, signing_key):
    """Factory for a fully local pipeline; keyword args override collaborators."""

    def _build(**overrides) -> EvidencePipeline:
        ledger = overrides.pop("ledger", None) or DedupLedger(str(tmp_path / "ledger.db"))
        verifier = overrides.pop("verifier", None) or EvidenceVerifier(
            device_patterns=DEFAULT_DEVICE_PATTERNS,
            attestation=overrides.pop("attestation", FakeAttestation()),
            signing_key=signing_key,
            policy=FAST,
        )
        enricher = overrides.pop("enricher", None) or ContextEnricher(
            places=FakePlaces(), weather=FakeWeather(), news=FakeNews(), policy=FAST
        )
        governance = overrides.pop("governance", None) or LedgerGovernanceClient(dao, OPERATOR)
        publisher = ProposalPublisher(store=store, governance=governance, default_beneficiary=OPERATOR, policy=FAST)
        return EvidencePipeline(
            ledger=ledger,
            verifier=verifier,
            enricher=enricher,
            scorer=overrides.pop("scorer", None) or ImpactScorer(base_amount=50_000),
            publisher=publisher,
            **overrides,
        )

    return _build
