"""Proposal publication.

Order of side effects for one evidence item:

1. pin the canonical image bytes                      -> image CID
2. pin the analysis record (canonical JSON, image CID) -> analysis CID
3. render the proposal description referencing the analysis CID
4. submit the governance transaction (description, funding target, beneficiary)

Pins are content-addressed and safe to retry. The governance submission is
attempted once under the per-call timeout: retrying a submission whose outcome
is unknown could create a second proposal.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .crypto import _iso_utc, canonical_json_dumps
from .governance_client import GovernanceClient
from .models import (
    ContextRecord,
    Evidence,
    ImpactAssessment,
    PublishedProposal,
    SceneAnalysis,
    VerificationRecord,
)
from .proposal_doc import ProposalDocument, encode
from .retry import RetryPolicy, call_with_retry
from .storage import ContentStore

logger = logging.getLogger("impact_gateway.publisher")

ANALYSIS_SCHEMA = "impact-analysis/v1"


def synthesize_description(evidence: Evidence, context: ContextRecord) -> str:
    """Fallback description when no caller text or scene analysis exists."""
    meta = evidence.metadata
    parts = [f"Field evidence captured {_iso_utc(meta.timestamp)}"]
    if meta.device is not None and meta.device.label:
        parts.append(f"with {meta.device.label}")
    if context.place is not None and context.place.label():
        parts.append(f"near {context.place.label()}")
    elif meta.location is not None:
        parts.append(f"at {meta.location.lat:.5f}, {meta.location.lng:.5f}")
    return " ".join(parts) + "."


def build_analysis_record(
    *,
    evidence: Evidence,
    verification: VerificationRecord,
    context: ContextRecord,
    scene: Optional[SceneAnalysis],
    assessment: ImpactAssessment,
    description: str,
    image_cid: str,
) -> Dict[str, Any]:
    return {
        "schema": ANALYSIS_SCHEMA,
        "content_hash": evidence.content_hash,
        "raw_hash": evidence.raw_hash,
        "image_cid": image_cid,
        "source_format": evidence.source_format,
        "metadata": evidence.metadata.to_dict(),
        "verification": verification.to_dict(),
        "context": context.to_dict(),
        "scene": scene.to_dict() if scene else None,
        "assessment": assessment.to_dict(),
        "description": description,
    }


def build_document(
    *,
    evidence: Evidence,
    verification: VerificationRecord,
    context: ContextRecord,
    assessment: ImpactAssessment,
    description: str,
    analysis_cid: str,
    analysis_url: str,
) -> ProposalDocument:
    place_label = context.place.label() if context.place else ""
    return ProposalDocument(
        description=description,
        impact_score=assessment.score,
        urgency=assessment.urgency,
        category=assessment.category,
        location=place_label or None,
        coordinates=evidence.metadata.location,
        cid=analysis_cid,
        weather=(context.weather.conditions, context.weather.temperature_c) if context.weather else None,
        actions=list(assessment.recommended_actions),
        news=[(n.title, n.url) for n in context.news],
        analysis_url=analysis_url,
        confidence=int(round(verification.confidence * 100)),
    )


class ProposalPublisher:
    def __init__(
        self,
        *,
        store: ContentStore,
        governance: GovernanceClient,
        default_beneficiary: str,
        policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.governance = governance
        self.default_beneficiary = default_beneficiary
        self.policy = policy or RetryPolicy()

    async def publish(
        self,
        *,
        evidence: Evidence,
        verification: VerificationRecord,
        context: ContextRecord,
        scene: Optional[SceneAnalysis],
        assessment: ImpactAssessment,
        description: str,
        beneficiary: Optional[str] = None,
    ) -> PublishedProposal:
        short = evidence.content_hash[:12]
        store = self.store

        image_cid = await call_with_retry(
            lambda: store.pin(
                evidence.content,
                f"evidence-{short}.jpg",
                {"type": "evidence", "content_hash": evidence.content_hash},
            ),
            policy=self.policy,
            op="storage.pin_image",
        )

        record = build_analysis_record(
            evidence=evidence,
            verification=verification,
            context=context,
            scene=scene,
            assessment=assessment,
            description=description,
            image_cid=image_cid,
        )
        record_bytes = canonical_json_dumps(record).encode("utf-8")
        analysis_cid = await call_with_retry(
            lambda: store.pin(
                record_bytes,
                f"analysis-{short}.json",
                {"type": "analysis", "content_hash": evidence.content_hash, "image_cid": image_cid},
            ),
            policy=self.policy,
            op="storage.pin_analysis",
        )

        doc = build_document(
            evidence=evidence,
            verification=verification,
            context=context,
            assessment=assessment,
            description=description,
            analysis_cid=analysis_cid,
            analysis_url=store.gateway_url(analysis_cid),
        )
        text = encode(doc)

        once = RetryPolicy(max_attempts=1, backoff_s=0.0, timeout_s=self.policy.timeout_s)
        submitted = await call_with_retry(
            lambda: self.governance.create_proposal(
                text, assessment.funding_target, beneficiary or self.default_beneficiary
            ),
            policy=once,
            op="governance.create_proposal",
        )
        logger.info(
            "published %s: proposal=%s tx=%s analysis=%s",
            short, submitted.proposal_id, submitted.tx_ref, analysis_cid,
        )
        return PublishedProposal(
            image_cid=image_cid,
            analysis_cid=analysis_cid,
            description=text,
            proposal_id=submitted.proposal_id,
            tx_ref=submitted.tx_ref,
        )
