import json

from impact_gateway.audit_log import TamperEvidentAuditLog
from impact_gateway.crypto import Ed25519KeyPair


def _make_keys():
    signing = Ed25519KeyPair.generate("operator")
    trusted = {signing.key_id: Ed25519KeyPair.from_public_key(signing.key_id, signing.public_key_hex)}
    return signing, trusted


def test_audit_log_verify_ok_and_resume(tmp_path):
    signing, trusted = _make_keys()
    log_path = tmp_path / "audit.jsonl"

    log = TamperEvidentAuditLog(str(log_path), signing)
    log.append_event({"type": "pipeline_outcome", "status": "success"})

    # Re-open to ensure resume (reads last hash) works
    log2 = TamperEvidentAuditLog(str(log_path), signing)
    log2.append_event({"type": "pipeline_outcome", "status": "duplicate"})

    ok, reason, count = TamperEvidentAuditLog.verify_file(str(log_path), trusted)
    assert ok is True
    assert reason == "OK"
    assert count == 2


def test_audit_log_chain_broken_detected(tmp_path):
    signing, trusted = _make_keys()
    log_path = tmp_path / "audit.jsonl"

    log = TamperEvidentAuditLog(str(log_path), signing)
    log.append_event({"a": 1})
    log.append_event({"b": 2})

    lines = log_path.read_text(encoding="utf-8").splitlines()
    # Deleting the first record breaks the chain at the second
    log_path.write_text(lines[1] + "\n", encoding="utf-8")

    ok, reason, count = TamperEvidentAuditLog.verify_file(str(log_path), trusted)
    assert ok is False
    assert reason == "CHAIN_BROKEN"
    assert count == 1


def test_audit_log_event_hash_mismatch_detected(tmp_path):
    signing, trusted = _make_keys()
    log_path = tmp_path / "audit.jsonl"

    log = TamperEvidentAuditLog(str(log_path), signing)
    log.append_event({"status": "failed"})

    rec = json.loads(log_path.read_text(encoding="utf-8").splitlines()[0])
    rec["event"] = {"status": "success"}
    log_path.write_text(json.dumps(rec, sort_keys=True) + "\n", encoding="utf-8")

    ok, reason, count = TamperEvidentAuditLog.verify_file(str(log_path), trusted)
    assert ok is False
    assert reason == "EVENT_HASH_MISMATCH"
    assert count == 1


def test_audit_log_untrusted_key_detected(tmp_path):
    signing, _trusted = _make_keys()
    log_path = tmp_path / "audit.jsonl"

    TamperEvidentAuditLog(str(log_path), signing).append_event({"a": 1})

    ok, reason, _ = TamperEvidentAuditLog.verify_file(str(log_path), {})
    assert ok is False
    assert reason == "UNKNOWN_KEY"

    other = Ed25519KeyPair.generate("operator")
    ok, reason, _ = TamperEvidentAuditLog.verify_file(str(log_path), {"operator": other})
    assert ok is False
    assert reason == "INVALID_SIGNATURE"


def test_missing_file_verifies_empty(tmp_path):
    signing, trusted = _make_keys()
    assert TamperEvidentAuditLog.verify_file(str(tmp_path / "none.jsonl"), trusted) == (True, "NO_FILE", 0)
