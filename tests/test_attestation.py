import httpx
import pytest

from impact_gateway.attestation import (
    EvidenceVerifier,
    HttpAttestationService,
    compile_device_patterns,
    confidence_score,
    device_allowed,
)
from impact_gateway.config import DEFAULT_DEVICE_PATTERNS
from impact_gateway.crypto import verify_device_attestation
from impact_gateway.errors import AccessDenied
from impact_gateway.models import DeviceDescriptor, EvidenceSubmission, TaskStatus
from impact_gateway.normalizer import EvidenceNormalizer

from conftest import FAST, FakeAttestation, make_jpeg, make_png


def _evidence(data=None, **kw):
    return EvidenceNormalizer().normalize(EvidenceSubmission(data=data or make_jpeg(), **kw))


def _verifier(signing_key=None, **kw):
    return EvidenceVerifier(device_patterns=DEFAULT_DEVICE_PATTERNS, signing_key=signing_key, policy=FAST, **kw)


@pytest.mark.asyncio
async def test_all_checks_pass(signing_key):
    service = FakeAttestation()
    ev = _evidence()
    rec = await _verifier(signing_key, attestation=service).verify(ev)

    assert rec.metadata_valid and rec.device_valid
    assert rec.verified is True
    assert rec.task_id == "task-1"
    assert rec.confidence == 1.0
    assert service.submitted == [ev.content_hash]
    assert verify_device_attestation(signing_key, ev.content_hash, rec.metadata_hash, rec.device_signature)


@pytest.mark.asyncio
async def test_attestation_failure_is_recorded_not_raised(signing_key):
    service = FakeAttestation(fail=AccessDenied("bad api key", http_status=401))
    rec = await _verifier(signing_key, attestation=service).verify(_evidence())

    assert rec.attestation_performed is True
    assert rec.task_status is None
    assert "bad api key" in rec.attestation_error
    assert rec.confidence == 0.7


@pytest.mark.asyncio
async def test_unexpected_attestation_exception_is_recorded(signing_key):
    service = FakeAttestation(fail=ConnectionRefusedError("avs down"))
    rec = await _verifier(signing_key, attestation=service).verify(_evidence())

    assert rec.task_id is None
    assert rec.attestation_error == "ConnectionRefusedError: avs down"
    assert rec.confidence == 0.7


@pytest.mark.asyncio
async def test_pending_task_counts_as_not_passed(signing_key):
    rec = await _verifier(signing_key, attestation=FakeAttestation(status=TaskStatus.PENDING)).verify(_evidence())
    assert rec.task_status == TaskStatus.PENDING
    assert rec.verified is False
    assert rec.confidence == 0.7


@pytest.mark.asyncio
async def test_without_attestation_service_only_local_checks_count(signing_key):
    rec = await _verifier(signing_key).verify(_evidence())
    assert rec.attestation_performed is False
    assert rec.confidence == 1.0


@pytest.mark.asyncio
async def test_unlisted_device_lowers_confidence(signing_key):
    ev = _evidence(make_jpeg(make="Canon", model="EOS R5"))
    rec = await _verifier(signing_key, attestation=FakeAttestation()).verify(ev)

    assert rec.metadata_valid is True
    assert rec.device_valid is False
    assert rec.confidence == 0.7


@pytest.mark.asyncio
async def test_bare_image_has_only_attestation_confidence(signing_key):
    rec = await _verifier(signing_key, attestation=FakeAttestation()).verify(_evidence(make_png()))

    assert rec.metadata_valid is False
    assert rec.device_valid is False
    assert rec.confidence == 0.3


def test_confidence_score_weights():
    assert confidence_score([]) == 0.0
    assert confidence_score([(0.4, True), (0.3, False)]) == pytest.approx(0.5714, abs=1e-4)
    assert confidence_score([(0.4, False), (0.3, False), (0.3, False)]) == 0.0


def test_device_allow_list():
    patterns = compile_device_patterns(DEFAULT_DEVICE_PATTERNS)
    assert device_allowed(DeviceDescriptor("Meta", "Ray-Ban Stories"), patterns)
    assert device_allowed(DeviceDescriptor("Luxottica", "RayBan Meta"), patterns)
    assert not device_allowed(DeviceDescriptor("Apple", "iPhone 15"), patterns)
    assert not device_allowed(None, patterns)


@pytest.mark.asyncio
async def test_http_attestation_service_submit_and_poll():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST" and request.url.path == "/tasks":
            return httpx.Response(200, json={"task_id": "t-42"})
        if request.method == "GET" and request.url.path == "/tasks/t-42":
            return httpx.Response(200, json={"task_id": "t-42", "status": "VERIFIED"})
        return httpx.Response(404)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = HttpAttestationService("https://attest.test", api_key="secret", client=client)

    task_id = await service.submit_task("c" * 64, "m" * 64, "sig")
    task = await service.get_task(task_id)
    await service.aclose()

    assert task_id == "t-42"
    assert task.status == TaskStatus.VERIFIED
    assert seen[0].headers["Authorization"] == "Bearer secret"
