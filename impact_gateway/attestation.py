"""Content identity and authenticity verification.

The verifier hashes the canonical evidence, binds the content and metadata
hashes with the operator's Ed25519 key (a device-signature placeholder), and
submits a verification task to an external attestation service. Task status
transitions belong to that service; this module only submits and polls.

Confidence is the weighted share of checks that passed among the checks that
actually ran:

    metadata-valid        0.4
    device-signature      0.3
    attestation-verified  0.3

A failed attestation submission is recorded (with its reason) and lowers
confidence; it never aborts the pipeline.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, List, Optional, Pattern, Protocol, Tuple

import httpx

from .crypto import Ed25519KeyPair, metadata_hash, sign_device_attestation, verify_device_attestation
from .errors import IMP_E_UPSTREAM, ImpactError, impact_error
from .models import DeviceDescriptor, Evidence, TaskStatus, VerificationRecord, VerificationTask
from .retry import RetryPolicy, call_with_retry, request_json

logger = logging.getLogger("impact_gateway.attestation")

WEIGHT_METADATA = 0.4
WEIGHT_DEVICE_SIGNATURE = 0.3
WEIGHT_ATTESTATION = 0.3


class AttestationService(Protocol):
    async def submit_task(self, content_hash: str, metadata_hash: str, device_signature: str) -> str:
        ...

    async def get_task(self, task_id: str) -> VerificationTask:
        ...


class HttpAttestationService:
    """Attestation service reached over HTTP.

    POST {base}/tasks      {content_hash, metadata_hash, device_signature} -> {task_id}
    GET  {base}/tasks/{id} -> {task_id, content_hash, metadata_hash, device_signature, status}
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def submit_task(self, content_hash: str, metadata_hash: str, device_signature: str) -> str:
        data = await request_json(
            self._client,
            "POST",
            f"{self.base_url}/tasks",
            op="attestation.submit",
            headers=self._headers,
            json={
                "content_hash": content_hash,
                "metadata_hash": metadata_hash,
                "device_signature": device_signature,
            },
        )
        task_id = data.get("task_id")
        if not task_id:
            raise impact_error(IMP_E_UPSTREAM, "attestation service returned no task_id", http_status=502)
        return str(task_id)

    async def get_task(self, task_id: str) -> VerificationTask:
        data = await request_json(
            self._client,
            "GET",
            f"{self.base_url}/tasks/{task_id}",
            op="attestation.get",
            headers=self._headers,
        )
        try:
            status = TaskStatus(str(data.get("status", "pending")).lower())
        except ValueError:
            status = TaskStatus.PENDING
        return VerificationTask(
            task_id=str(data.get("task_id") or task_id),
            content_hash=str(data.get("content_hash", "")),
            metadata_hash=str(data.get("metadata_hash", "")),
            device_signature=str(data.get("device_signature", "")),
            status=status,
        )


def compile_device_patterns(patterns: Iterable[str]) -> List[Pattern[str]]:
    return [re.compile(p) for p in patterns]


def device_allowed(device: Optional[DeviceDescriptor], patterns: List[Pattern[str]]) -> bool:
    if device is None or not device.label:
        return False
    return any(p.search(device.label) for p in patterns)


def confidence_score(checks: List[Tuple[float, bool]]) -> float:
    """Weighted share of passed checks among performed checks; 0 if none ran."""
    performed = sum(w for w, _ in checks)
    if performed <= 0:
        return 0.0
    passed = sum(w for w, ok in checks if ok)
    return round(passed / performed, 4)


class EvidenceVerifier:
    def __init__(
        self,
        *,
        device_patterns: Iterable[str],
        attestation: Optional[AttestationService] = None,
        signing_key: Optional[Ed25519KeyPair] = None,
        policy: Optional[RetryPolicy] = None,
        poll_attempts: int = 1,
        poll_interval_s: float = 0.0,
    ):
        self.attestation = attestation
        self.signing_key = signing_key
        self.patterns = compile_device_patterns(device_patterns)
        self.policy = policy or RetryPolicy()
        self.poll_attempts = max(1, int(poll_attempts))
        self.poll_interval_s = max(0.0, float(poll_interval_s))

    async def verify(self, evidence: Evidence) -> VerificationRecord:
        meta = evidence.metadata
        m_hash = metadata_hash(meta.to_dict())

        metadata_valid = bool(
            meta.timestamp_source != "received" and meta.device and meta.device.make and meta.device.model
        )

        signature = ""
        signature_ok = True
        if self.signing_key is not None and self.signing_key.can_sign():
            signature = sign_device_attestation(self.signing_key, evidence.content_hash, m_hash)
            signature_ok = verify_device_attestation(self.signing_key, evidence.content_hash, m_hash, signature)
        device_valid = device_allowed(meta.device, self.patterns) and signature_ok

        checks: List[Tuple[float, bool]] = [
            (WEIGHT_METADATA, metadata_valid),
            (WEIGHT_DEVICE_SIGNATURE, device_valid),
        ]

        task_id: Optional[str] = None
        task_status: Optional[TaskStatus] = None
        attestation_error: Optional[str] = None
        performed = self.attestation is not None
        if self.attestation is not None:
            try:
                task_id, task_status = await self._attest(evidence.content_hash, m_hash, signature)
            except ImpactError as e:
                attestation_error = str(e)
                logger.warning("attestation failed for %s: %s", evidence.content_hash[:12], e)
            except Exception as e:
                attestation_error = f"{type(e).__name__}: {e}"
                logger.warning("attestation failed for %s: %s", evidence.content_hash[:12], attestation_error)
            checks.append((WEIGHT_ATTESTATION, task_status == TaskStatus.VERIFIED))

        return VerificationRecord(
            content_hash=evidence.content_hash,
            metadata_hash=m_hash,
            device_signature=signature,
            metadata_valid=metadata_valid,
            device_valid=device_valid,
            task_id=task_id,
            task_status=task_status,
            attestation_performed=performed,
            attestation_error=attestation_error,
            confidence=confidence_score(checks),
        )

    async def _attest(self, c_hash: str, m_hash: str, signature: str) -> Tuple[str, TaskStatus]:
        assert self.attestation is not None
        service = self.attestation
        task_id = await call_with_retry(
            lambda: service.submit_task(c_hash, m_hash, signature), policy=self.policy, op="attestation.submit"
        )
        status = TaskStatus.PENDING
        for attempt in range(self.poll_attempts):
            task = await call_with_retry(lambda: service.get_task(task_id), policy=self.policy, op="attestation.get")
            status = task.status
            if status != TaskStatus.PENDING:
                break
            if attempt + 1 < self.poll_attempts and self.poll_interval_s:
                await asyncio.sleep(self.poll_interval_s)
        logger.info("attestation task %s for %s: %s", task_id, c_hash[:12], status.value)
        return task_id, status
