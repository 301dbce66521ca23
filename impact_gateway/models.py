"""Records passed between pipeline stages.

Evidence and context records are owned by a single pipeline run and are
treated as read-only once built. The only shared state lives in the dedup
ledger and the governance contract.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .crypto import _iso_utc


class LookupStatus(str, Enum):
    OK = "ok"
    ABSENT = "absent"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class Mechanism(str, Enum):
    COMMUNITY_VOTE = "community-vote"
    HYBRID = "hybrid"
    TRADITIONAL = "traditional"


class UrgencyTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    REJECTED = "rejected"


# ---------------------------------------------------------------------------
# Evidence
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(frozen=True)
class DeviceDescriptor:
    make: str
    model: str

    @property
    def label(self) -> str:
        return f"{self.make} {self.model}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return {"make": self.make, "model": self.model}


@dataclass(frozen=True)
class CaptureMetadata:
    """Capture metadata extracted from the image and caller hints."""

    timestamp: datetime
    timestamp_source: str  # "exif" | "hint" | "received"
    device: Optional[DeviceDescriptor] = None
    location: Optional[GeoPoint] = None
    camera: Dict[str, Any] = field(default_factory=dict)
    width: int = 0
    height: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso_utc(self.timestamp),
            "timestamp_source": self.timestamp_source,
            "device": self.device.to_dict() if self.device else None,
            "location": self.location.to_dict() if self.location else None,
            "camera": dict(self.camera),
            "width": self.width,
            "height": self.height,
        }


@dataclass(frozen=True)
class Evidence:
    raw_hash: str
    content: bytes
    content_hash: str
    metadata: CaptureMetadata
    source_format: str
    reencoded: bool = False
    quality: Optional[int] = None

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class EvidenceSubmission:
    """One item handed to the pipeline by a producer."""

    data: bytes
    filename: str = ""
    format_hint: Optional[str] = None
    hints: Dict[str, Any] = field(default_factory=dict)
    description: Optional[str] = None
    beneficiary: Optional[str] = None
    received_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationTask:
    task_id: str
    content_hash: str
    metadata_hash: str
    device_signature: str
    status: TaskStatus = TaskStatus.PENDING


@dataclass(frozen=True)
class VerificationRecord:
    content_hash: str
    metadata_hash: str
    device_signature: str
    metadata_valid: bool
    device_valid: bool
    task_id: Optional[str] = None
    task_status: Optional[TaskStatus] = None
    attestation_performed: bool = False
    attestation_error: Optional[str] = None
    confidence: float = 0.0

    @property
    def verified(self) -> bool:
        return self.task_status == TaskStatus.VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "metadata_hash": self.metadata_hash,
            "device_signature": self.device_signature,
            "metadata_valid": self.metadata_valid,
            "device_valid": self.device_valid,
            "task_id": self.task_id,
            "task_status": self.task_status.value if self.task_status else None,
            "attestation_performed": self.attestation_performed,
            "attestation_error": self.attestation_error,
            "confidence": self.confidence,
        }


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlaceInfo:
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    def label(self) -> str:
        return ", ".join(p for p in (self.city, self.state, self.country) if p)

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address, "city": self.city, "state": self.state, "country": self.country}


@dataclass(frozen=True)
class WeatherReading:
    conditions: str
    temperature_c: float
    source: str = "historical"  # "historical" | "current"

    def to_dict(self) -> Dict[str, Any]:
        return {"conditions": self.conditions, "temperature_c": self.temperature_c, "source": self.source}


@dataclass(frozen=True)
class NewsHeadline:
    title: str
    url: str
    published_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "url": self.url, "published_at": self.published_at}


@dataclass(frozen=True)
class ContextRecord:
    place: Optional[PlaceInfo] = None
    place_status: LookupStatus = LookupStatus.SKIPPED
    weather: Optional[WeatherReading] = None
    weather_status: LookupStatus = LookupStatus.SKIPPED
    weather_fallback: bool = False
    news: List[NewsHeadline] = field(default_factory=list)
    news_status: LookupStatus = LookupStatus.SKIPPED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "place": self.place.to_dict() if self.place else None,
            "place_status": self.place_status.value,
            "weather": self.weather.to_dict() if self.weather else None,
            "weather_status": self.weather_status.value,
            "weather_fallback": self.weather_fallback,
            "news": [n.to_dict() for n in self.news],
            "news_status": self.news_status.value,
        }


@dataclass(frozen=True)
class SceneAnalysis:
    """Output of a vision collaborator."""

    description: str
    categories: List[str] = field(default_factory=list)
    objects: List[str] = field(default_factory=list)
    confidence: float = 0.0
    recommended_actions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "description": self.description,
            "categories": list(self.categories),
            "objects": list(self.objects),
            "confidence": self.confidence,
            "recommended_actions": list(self.recommended_actions),
        }


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CategoryScores:
    urgency: int
    scope: int
    sustainability: int
    feasibility: int
    community_benefit: int

    def values(self) -> List[int]:
        return [self.urgency, self.scope, self.sustainability, self.feasibility, self.community_benefit]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "urgency": self.urgency,
            "scope": self.scope,
            "sustainability": self.sustainability,
            "feasibility": self.feasibility,
            "community_benefit": self.community_benefit,
        }


@dataclass(frozen=True)
class ImpactAssessment:
    score: int
    sub_scores: CategoryScores
    category: str
    urgency: UrgencyTier
    affected_population: int
    mechanism: Mechanism
    funding_target: int
    milestones: List[str] = field(default_factory=list)
    stakeholders: List[str] = field(default_factory=list)
    recommended_actions: List[str] = field(default_factory=list)
    excluded_inputs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "sub_scores": self.sub_scores.to_dict(),
            "category": self.category,
            "urgency": self.urgency.value,
            "affected_population": self.affected_population,
            "mechanism": self.mechanism.value,
            "funding_target": self.funding_target,
            "milestones": list(self.milestones),
            "stakeholders": list(self.stakeholders),
            "recommended_actions": list(self.recommended_actions),
            "excluded_inputs": list(self.excluded_inputs),
        }


# ---------------------------------------------------------------------------
# Ledger / publication
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessedRecord:
    """One dedup ledger row."""

    content_hash: str
    state: str  # "claimed" | "success" | "failed"
    claimed_at: float
    updated_at: float
    attempts: int = 1
    proposal_id: Optional[str] = None
    tx_ref: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "state": self.state,
            "claimed_at": self.claimed_at,
            "updated_at": self.updated_at,
            "attempts": self.attempts,
            "proposal_id": self.proposal_id,
            "tx_ref": self.tx_ref,
            "error": self.error,
        }


@dataclass(frozen=True)
class SubmittedProposal:
    proposal_id: str
    tx_ref: str


@dataclass(frozen=True)
class PublishedProposal:
    image_cid: str
    analysis_cid: str
    description: str
    proposal_id: str
    tx_ref: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_cid": self.image_cid,
            "analysis_cid": self.analysis_cid,
            "proposal_id": self.proposal_id,
            "tx_ref": self.tx_ref,
        }


@dataclass(frozen=True)
class PipelineOutcome:
    status: OutcomeStatus
    content_hash: Optional[str] = None
    filename: str = ""
    proposal_id: Optional[str] = None
    tx_ref: Optional[str] = None
    analysis_cid: Optional[str] = None
    prior: Optional[ProcessedRecord] = None
    error: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": self.status.value,
            "content_hash": self.content_hash,
            "filename": self.filename,
            "proposal_id": self.proposal_id,
            "tx_ref": self.tx_ref,
            "analysis_cid": self.analysis_cid,
        }
        if self.prior is not None:
            d["prior"] = self.prior.to_dict()
        if self.error is not None:
            d["error"] = self.error
        return d


@dataclass
class BatchReport:
    outcomes: List[PipelineOutcome] = field(default_factory=list)

    def count(self, status: OutcomeStatus) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    def summary(self) -> Dict[str, int]:
        return {s.value: self.count(s) for s in OutcomeStatus}

    def to_dict(self) -> Dict[str, Any]:
        return {"summary": self.summary(), "outcomes": [o.to_dict() for o in self.outcomes]}
