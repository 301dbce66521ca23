"""
Evidence-to-governance pipeline.

One run per evidence item, strictly downstream:

    normalize -> hash -> [ledger claim] -> verify -> (scene || enrich) -> score -> publish -> ledger outcome

Validation happens before the ledger claim, so rejected evidence never touches
the ledger. After a successful claim every exit path records an outcome:
success, failed, or failed-on-cancel. A claimed row is therefore never left
behind by a run that this process saw finish or get cancelled; a hard crash is
covered by the ledger's claim TTL.

Collaborators are injected at construction time as typed objects.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Iterable, List, Optional, Union

from . import metrics
from .attestation import EvidenceVerifier
from .audit_log import TamperEvidentAuditLog
from .crypto import _now_utc
from .enrichment import ContextEnricher
from .errors import (
    IMP_E_CLAIM_LOST,
    IMP_E_INTERNAL,
    ContractRevert,
    ImpactError,
    ValidationError,
)
from .ledger import Claim, DedupLedger, Duplicate, STATE_SUCCESS
from .models import (
    BatchReport,
    EvidenceSubmission,
    OutcomeStatus,
    PipelineOutcome,
    SceneAnalysis,
)
from .normalizer import EvidenceNormalizer
from .proposal_doc import validate_description
from .publisher import ProposalPublisher, synthesize_description
from .scoring import ImpactScorer, NullSceneAnalyzer, SceneAnalyzer, ScoringInput

logger = logging.getLogger("impact_gateway.pipeline")


class EvidencePipeline:
    def __init__(
        self,
        *,
        ledger: DedupLedger,
        verifier: EvidenceVerifier,
        enricher: ContextEnricher,
        scorer: ImpactScorer,
        publisher: ProposalPublisher,
        normalizer: Optional[EvidenceNormalizer] = None,
        analyzer: Optional[SceneAnalyzer] = None,
        audit_log: Optional[TamperEvidentAuditLog] = None,
    ):
        self.ledger = ledger
        self.verifier = verifier
        self.enricher = enricher
        self.scorer = scorer
        self.publisher = publisher
        self.normalizer = normalizer or EvidenceNormalizer()
        self.analyzer = analyzer or NullSceneAnalyzer()
        self.audit_log = audit_log

    async def _analyze(self, image: bytes) -> Optional[SceneAnalysis]:
        try:
            return await self.analyzer.analyze(image)
        except Exception as e:
            logger.warning("scene analysis failed: %s", e)
            return None

    def _release(self, claim: Claim, error: str) -> None:
        try:
            self.ledger.mark_failed(claim, error)
        except ImpactError as e:
            if e.code != IMP_E_CLAIM_LOST:
                raise
            # Our stale claim was taken over; the new owner records the outcome.
            logger.warning("claim on %s lost before failure could be recorded", claim.content_hash[:12])

    async def _claim(self, content_hash: str) -> Union[Claim, Duplicate]:
        pending = asyncio.ensure_future(asyncio.to_thread(self.ledger.claim, content_hash))
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            # The claim thread cannot be interrupted; a claim it takes must still be released.
            while not pending.done():
                try:
                    await asyncio.shield(pending)
                except asyncio.CancelledError:
                    continue
            if not pending.cancelled() and pending.exception() is None and isinstance(pending.result(), Claim):
                self._release(pending.result(), "cancelled")
                logger.warning("cancelled %s during claim; released as failed", content_hash[:12])
            raise

    def _finish(self, outcome: PipelineOutcome, started: float) -> PipelineOutcome:
        metrics.record_outcome(outcome.status.value, time.monotonic() - started)
        if self.audit_log is not None and outcome.status != OutcomeStatus.REJECTED:
            self.audit_log.append_event({"type": "pipeline_outcome", **outcome.to_dict()})
        return outcome

    async def process(self, submission: EvidenceSubmission) -> PipelineOutcome:
        started = time.monotonic()
        if submission.received_at is None:
            submission.received_at = _now_utc()
        name = submission.filename

        # Validation: nothing below may touch the ledger until this passes.
        try:
            if submission.description is not None:
                validate_description(submission.description)
            evidence = await asyncio.to_thread(self.normalizer.normalize, submission)
        except ValidationError as e:
            logger.info("rejected %s: %s", name or "<bytes>", e)
            return self._finish(
                PipelineOutcome(status=OutcomeStatus.REJECTED, filename=name, error=e.as_dict()), started
            )

        claim = await self._claim(evidence.content_hash)
        if isinstance(claim, Duplicate):
            metrics.record_claim("duplicate")
            prior = claim.record
            logger.info("duplicate %s (prior state=%s)", evidence.content_hash[:12], prior.state)
            return self._finish(
                PipelineOutcome(
                    status=OutcomeStatus.DUPLICATE,
                    content_hash=evidence.content_hash,
                    filename=name,
                    proposal_id=prior.proposal_id,
                    tx_ref=prior.tx_ref,
                    prior=prior,
                ),
                started,
            )
        metrics.record_claim("claimed" if claim.attempts == 1 else "reclaimed")

        try:
            return self._finish(await self._run_claimed(submission, evidence, claim), started)
        except asyncio.CancelledError:
            # No await here: the task is being cancelled.
            self._release(claim, "cancelled")
            logger.warning("cancelled %s; claim released as failed", evidence.content_hash[:12])
            raise
        except ImpactError as e:
            if isinstance(e, ContractRevert):
                metrics.record_revert(e.reason)
            logger.warning("failed %s: %s", evidence.content_hash[:12], e)
            await asyncio.to_thread(self._release, claim, str(e))
            return self._finish(
                PipelineOutcome(
                    status=OutcomeStatus.FAILED,
                    content_hash=evidence.content_hash,
                    filename=name,
                    error=e.as_dict(),
                ),
                started,
            )
        except Exception as e:
            await asyncio.to_thread(self._release, claim, f"{type(e).__name__}: {e}")
            raise

    async def _run_claimed(self, submission: EvidenceSubmission, evidence, claim: Claim) -> PipelineOutcome:
        meta = evidence.metadata
        verification = await self.verifier.verify(evidence)
        scene, context = await asyncio.gather(
            self._analyze(evidence.content),
            self.enricher.enrich(meta.location, meta.timestamp),
        )
        assessment = self.scorer.score(
            ScoringInput(metadata=meta, verification=verification, context=context, scene=scene)
        )
        description = (
            (submission.description or "").strip()
            or (scene.description.strip() if scene and scene.description else "")
            or synthesize_description(evidence, context)
        )
        published = await self.publisher.publish(
            evidence=evidence,
            verification=verification,
            context=context,
            scene=scene,
            assessment=assessment,
            description=description,
            beneficiary=submission.beneficiary,
        )
        await asyncio.to_thread(
            self.ledger.mark_processed,
            evidence.content_hash,
            published.proposal_id,
            STATE_SUCCESS,
            published.tx_ref,
            token=claim.token,
        )
        return PipelineOutcome(
            status=OutcomeStatus.SUCCESS,
            content_hash=evidence.content_hash,
            filename=submission.filename,
            proposal_id=published.proposal_id,
            tx_ref=published.tx_ref,
            analysis_cid=published.analysis_cid,
        )

    async def process_batch(self, submissions: Iterable[EvidenceSubmission], concurrency: int = 4) -> BatchReport:
        """Process many items; one item's failure never fails the batch."""
        sem = asyncio.Semaphore(max(1, int(concurrency)))
        items: List[EvidenceSubmission] = list(submissions)

        async def _one(sub: EvidenceSubmission) -> PipelineOutcome:
            async with sem:
                try:
                    return await self.process(sub)
                except Exception as e:
                    logger.exception("unexpected pipeline error for %s", sub.filename or "<bytes>")
                    return PipelineOutcome(
                        status=OutcomeStatus.FAILED,
                        filename=sub.filename,
                        error={"code": IMP_E_INTERNAL, "message": f"{type(e).__name__}: {e}"},
                    )

        outcomes = await asyncio.gather(*(_one(s) for s in items))
        report = BatchReport(outcomes=list(outcomes))
        logger.info("batch of %d finished: %s", len(items), report.summary())
        return report
