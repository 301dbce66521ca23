import threading

import pytest

from impact_gateway.errors import IMP_E_CLAIM_LOST, ImpactError
from impact_gateway.ledger import STATE_FAILED, STATE_SUCCESS, Claim, DedupLedger, Duplicate


class FakeClock:
    def __init__(self, t: float = 1_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t


def test_claim_is_exactly_once_under_thread_race(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        r = ledger.claim("a" * 64)
        with lock:
            results.append(r)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    claims = [r for r in results if isinstance(r, Claim)]
    dups = [r for r in results if isinstance(r, Duplicate)]
    assert len(claims) == 1
    assert len(dups) == 7
    assert all(d.record.state == "claimed" for d in dups)


def test_success_is_terminal(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    claim = ledger.claim("h1")
    assert isinstance(claim, Claim)
    assert ledger.is_processed("h1") is True

    rec = ledger.mark_processed("h1", "0xprop", STATE_SUCCESS, "0xtx", token=claim.token)
    assert rec.state == STATE_SUCCESS
    assert rec.proposal_id == "0xprop"

    again = ledger.claim("h1")
    assert isinstance(again, Duplicate)
    assert again.record.proposal_id == "0xprop"
    assert again.record.tx_ref == "0xtx"
    assert ledger.is_processed("h1") is True


def test_failed_row_is_reclaimable(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    claim = ledger.claim("h2")
    rec = ledger.mark_failed(claim, "pin failed")
    assert rec.state == STATE_FAILED
    assert rec.error == "pin failed"
    assert ledger.is_processed("h2") is False

    retry = ledger.claim("h2")
    assert isinstance(retry, Claim)
    assert retry.attempts == 2
    row = ledger.get("h2")
    assert row.state == "claimed"
    assert row.error is None


def test_stale_claim_is_taken_over_and_old_owner_loses(tmp_path):
    clock = FakeClock()
    ledger = DedupLedger(str(tmp_path / "ledger.db"), claim_ttl_seconds=60, clock=clock)

    first = ledger.claim("h3")
    assert isinstance(first, Claim)

    clock.t += 30
    assert isinstance(ledger.claim("h3"), Duplicate)
    assert ledger.is_processed("h3") is True

    clock.t += 31
    assert ledger.is_processed("h3") is False
    second = ledger.claim("h3")
    assert isinstance(second, Claim)
    assert second.token != first.token

    with pytest.raises(ImpactError) as ei:
        ledger.mark_processed("h3", "0xold", STATE_SUCCESS, token=first.token)
    assert ei.value.code == IMP_E_CLAIM_LOST
    assert ei.value.http_status == 409

    ledger.mark_processed("h3", "0xnew", STATE_SUCCESS, token=second.token)
    assert ledger.get("h3").proposal_id == "0xnew"


def test_mark_processed_rejects_unknown_outcome(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    claim = ledger.claim("h4")
    with pytest.raises(ValueError):
        ledger.mark_processed("h4", None, "claimed", token=claim.token)


def test_ledger_survives_reopen(tmp_path):
    path = str(tmp_path / "ledger.db")
    ledger = DedupLedger(path)
    claim = ledger.claim("h5")
    ledger.mark_processed("h5", "0xp", STATE_SUCCESS, token=claim.token)

    reopened = DedupLedger(path)
    assert isinstance(reopened.claim("h5"), Duplicate)


def test_counts_and_listing(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    c1 = ledger.claim("x1")
    c2 = ledger.claim("x2")
    ledger.claim("x3")
    ledger.mark_processed("x1", "0xp1", STATE_SUCCESS, token=c1.token)
    ledger.mark_failed(c2, "boom")

    assert ledger.counts() == {"claimed": 1, "success": 1, "failed": 1}
    assert [r.content_hash for r in ledger.list_records(STATE_SUCCESS)] == ["x1"]
    assert len(ledger.list_records(limit=2)) == 2
    assert ledger.get("missing") is None


def test_empty_hash_rejected(tmp_path):
    ledger = DedupLedger(str(tmp_path / "ledger.db"))
    with pytest.raises(ValueError):
        ledger.claim("")
