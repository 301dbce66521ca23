"""Impact assessment scoring.

The scorer is a pure function of (evidence metadata, verification, context,
scene analysis): no I/O, no clock, no randomness. Identical inputs always
yield identical assessments, which makes pipeline retries safe.

The model that produces the five sub-scores is replaceable; whatever model is
plugged in, sub-scores are clamped to [0, 100] and the total is their plain
average. Mechanism and funding follow from the total:

    total >= 80  -> community-vote
    total >= 60  -> hybrid
    otherwise    -> traditional

    funding_target = floor(base_amount * total / 100)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import FrozenSet, List, Optional, Protocol, Tuple

from .models import (
    CaptureMetadata,
    CategoryScores,
    ContextRecord,
    ImpactAssessment,
    LookupStatus,
    Mechanism,
    SceneAnalysis,
    UrgencyTier,
    VerificationRecord,
)

URGENCY_KEYWORDS: FrozenSet[str] = frozenset(
    {"disaster", "emergency", "critical", "immediate", "flood", "fire"}
)

SEVERE_WEATHER = ("storm", "thunder", "rain", "snow", "hail", "extreme", "tornado")

COMMUNITY_CATEGORIES = ("community", "social", "health", "education", "infrastructure", "environment")

DEFAULT_BASE_AMOUNT = 50_000

MILESTONES = (
    "Community engagement and awareness",
    "Initial fundraising goal reached",
    "Implementation of first phase",
    "Impact assessment and reporting",
)

STAKEHOLDERS = (
    "Local community members",
    "Environmental experts",
    "Local government",
    "NGO partners",
)

DEFAULT_ACTIONS = (
    "Document current conditions",
    "Engage local stakeholders",
    "Create DAO proposal for resource allocation",
    "Monitor progress and impact",
)


class SceneAnalyzer(Protocol):
    async def analyze(self, image: bytes) -> Optional[SceneAnalysis]:
        ...


class NullSceneAnalyzer:
    """Vision analysis is an external collaborator; without one there is no scene."""

    async def analyze(self, image: bytes) -> Optional[SceneAnalysis]:
        return None


@dataclass(frozen=True)
class ScoringInput:
    metadata: CaptureMetadata
    verification: VerificationRecord
    context: ContextRecord
    scene: Optional[SceneAnalysis] = None


class ScoringModel(Protocol):
    def sub_scores(self, inputs: ScoringInput) -> Tuple[CategoryScores, List[str]]:
        """Return raw sub-scores and the names of inputs excluded as skipped."""
        ...


def clamp_score(value: float) -> int:
    return int(max(0, min(100, int(Decimal(str(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP)))))


def _has_keyword(labels: List[str], keywords: FrozenSet[str]) -> bool:
    return any(kw in label.lower() for label in labels for kw in keywords)


def _lookup_bonus(status: LookupStatus, full: float) -> float:
    # Skipped lookups count as neutral (half credit); absent earns nothing.
    if status == LookupStatus.OK:
        return full
    if status == LookupStatus.SKIPPED:
        return full / 2
    return 0.0


class RuleScoringModel:
    """Default deterministic rule model."""

    def sub_scores(self, inputs: ScoringInput) -> Tuple[CategoryScores, List[str]]:
        ctx = inputs.context
        scene = inputs.scene
        labels = list(scene.categories) if scene else []
        objects = list(scene.objects) if scene else []
        words = labels + objects + ([scene.description] if scene else [])

        excluded = [
            name
            for name, status in (("place", ctx.place_status), ("weather", ctx.weather_status), ("news", ctx.news_status))
            if status == LookupStatus.SKIPPED
        ]

        keyword_hits = sum(1 for kw in sorted(URGENCY_KEYWORDS) if any(kw in w.lower() for w in words))
        severe = bool(ctx.weather and any(s in ctx.weather.conditions.lower() for s in SEVERE_WEATHER))
        if severe:
            weather_bonus = 10.0
        elif ctx.weather_status == LookupStatus.SKIPPED:
            weather_bonus = 5.0
        else:
            weather_bonus = 0.0
        urgency = 40 + 12 * min(keyword_hits, 4) + weather_bonus

        if ctx.news_status == LookupStatus.OK:
            news_bonus = 5.0 * min(len(ctx.news), 3)
        else:
            news_bonus = _lookup_bonus(ctx.news_status, 15)
        scope = 40 + 5 * min(len(objects), 6) + _lookup_bonus(ctx.place_status, 10) + news_bonus

        scene_conf = float(scene.confidence) if scene else 0.0
        sustainability = 50 + 30 * max(0.0, min(1.0, scene_conf)) + _lookup_bonus(ctx.weather_status, 10)

        located = inputs.metadata.location is not None
        feasibility = 40 + 40 * inputs.verification.confidence + (10 if located else 0) + _lookup_bonus(ctx.place_status, 10)

        community_hits = sum(1 for c in COMMUNITY_CATEGORIES if any(c in label.lower() for label in labels))
        community = 50 + 10 * min(community_hits, 3) + _lookup_bonus(ctx.news_status, 10)

        return (
            CategoryScores(
                urgency=clamp_score(urgency),
                scope=clamp_score(scope),
                sustainability=clamp_score(sustainability),
                feasibility=clamp_score(feasibility),
                community_benefit=clamp_score(community),
            ),
            excluded,
        )


def select_mechanism(score: int) -> Mechanism:
    if score >= 80:
        return Mechanism.COMMUNITY_VOTE
    if score >= 60:
        return Mechanism.HYBRID
    return Mechanism.TRADITIONAL


def funding_target(base_amount: int, score: int) -> int:
    amount = Decimal(int(base_amount)) * Decimal(int(score)) / Decimal(100)
    return int(amount.to_integral_value(rounding=ROUND_FLOOR))


def urgency_tier(labels: List[str]) -> UrgencyTier:
    return UrgencyTier.HIGH if _has_keyword(labels, URGENCY_KEYWORDS) else UrgencyTier.MEDIUM


class ImpactScorer:
    def __init__(self, *, model: Optional[ScoringModel] = None, base_amount: int = DEFAULT_BASE_AMOUNT):
        self.model = model or RuleScoringModel()
        self.base_amount = int(base_amount)

    def score(self, inputs: ScoringInput) -> ImpactAssessment:
        raw, excluded = self.model.sub_scores(inputs)
        sub = CategoryScores(*(clamp_score(v) for v in raw.values()))
        total = clamp_score(Decimal(sum(sub.values())) / Decimal(5))

        scene = inputs.scene
        labels = list(scene.categories) if scene else []
        category = labels[0].strip().title() if labels and labels[0].strip() else "General"
        actions = [a for a in (scene.recommended_actions if scene else []) if a.strip()] or list(DEFAULT_ACTIONS)

        return ImpactAssessment(
            score=total,
            sub_scores=sub,
            category=category,
            urgency=urgency_tier(labels),
            affected_population=int(round(sub.scope * 100)),
            mechanism=select_mechanism(total),
            funding_target=funding_target(self.base_amount, total),
            milestones=list(MILESTONES),
            stakeholders=list(STAKEHOLDERS),
            recommended_actions=actions,
            excluded_inputs=sorted(excluded),
        )
