"""
Dedup ledger: exactly-once gate keyed by evidence content hash.

The ledger is the single source of truth for "has this evidence already
become a proposal". Row states:

    claimed  - a pipeline run owns the hash and is publishing
    success  - a proposal exists for the hash (terminal)
    failed   - the last run failed after claiming; a retry may re-claim

``claim`` is one INSERT ... ON CONFLICT DO UPDATE ... WHERE statement executed
inside BEGIN IMMEDIATE, so check-and-act is atomic: for a given hash exactly one
caller wins, every other caller sees a Duplicate. Unrelated hashes never
contend beyond sqlite's own write serialization.

A claim left behind by a crashed process is re-claimable once it is older
than ``claim_ttl_seconds``. Updates are guarded by the claim token, so a run
whose stale claim was taken over cannot overwrite the new owner's outcome.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Union

from .errors import IMP_E_CLAIM_LOST, IMP_E_LEDGER_STORAGE, ImpactError, impact_error
from .models import ProcessedRecord

logger = logging.getLogger("impact_gateway.ledger")

STATE_CLAIMED = "claimed"
STATE_SUCCESS = "success"
STATE_FAILED = "failed"

OUTCOMES = (STATE_SUCCESS, STATE_FAILED)


@dataclass(frozen=True)
class Claim:
    content_hash: str
    token: str
    attempts: int


@dataclass(frozen=True)
class Duplicate:
    record: ProcessedRecord


ClaimResult = Union[Claim, Duplicate]


_CLAIM_SQL = """
INSERT INTO processed (content_hash, state, claim_token, claimed_at, updated_at, attempts)
VALUES (?, 'claimed', ?, ?, ?, 1)
ON CONFLICT(content_hash) DO UPDATE SET
    state = 'claimed',
    claim_token = excluded.claim_token,
    claimed_at = excluded.claimed_at,
    updated_at = excluded.updated_at,
    attempts = processed.attempts + 1,
    proposal_id = NULL,
    tx_ref = NULL,
    error = NULL
WHERE processed.state = 'failed'
   OR (processed.state = 'claimed' AND processed.claimed_at <= ?)
"""

_SELECT_COLUMNS = "content_hash, state, claim_token, claimed_at, updated_at, attempts, proposal_id, tx_ref, error"


def _row_to_record(row: tuple) -> ProcessedRecord:
    return ProcessedRecord(
        content_hash=row[0],
        state=row[1],
        claimed_at=float(row[3]),
        updated_at=float(row[4]),
        attempts=int(row[5]),
        proposal_id=row[6],
        tx_ref=row[7],
        error=row[8],
    )


class DedupLedger:
    """SQLite-backed dedup ledger. Safe for concurrent threads and processes."""

    def __init__(
        self,
        db_path: str = "impact_ledger.db",
        *,
        claim_ttl_seconds: int = 900,
        connect_timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self.claim_ttl_seconds = int(claim_ttl_seconds)
        self.connect_timeout_seconds = float(connect_timeout_seconds)
        self._clock = clock
        self._init_db()

    @contextmanager
    def _db(self, isolation_level: Optional[str] = None) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.connect_timeout_seconds,
                isolation_level=isolation_level,
            )
        except sqlite3.Error as e:
            raise impact_error(
                IMP_E_LEDGER_STORAGE, f"ledger unavailable: {e}", retryable=True, http_status=503
            ) from e
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as e:
            raise impact_error(
                IMP_E_LEDGER_STORAGE, f"ledger operation failed: {e}", retryable=True, http_status=503
            ) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = FULL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS processed (
                content_hash TEXT PRIMARY KEY,
                state TEXT NOT NULL CHECK (state IN ('claimed', 'success', 'failed')),
                claim_token TEXT,
                claimed_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                proposal_id TEXT,
                tx_ref TEXT,
                error TEXT
            )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_processed_state ON processed(state)")

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def claim(self, content_hash: str) -> ClaimResult:
        """Atomically claim ``content_hash`` or report the existing row."""
        if not content_hash:
            raise ValueError("content_hash is required")
        token = secrets.token_hex(16)
        now = self._clock()
        stale_before = now - self.claim_ttl_seconds
        with self._db(isolation_level="IMMEDIATE") as conn:
            conn.execute(_CLAIM_SQL, (content_hash, token, now, now, stale_before))
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM processed WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        if row is not None and row[2] == token and row[1] == STATE_CLAIMED:
            if int(row[5]) > 1:
                logger.info("re-claimed %s (attempt %d)", content_hash[:12], int(row[5]))
            return Claim(content_hash=content_hash, token=token, attempts=int(row[5]))
        return Duplicate(record=_row_to_record(row))

    def is_processed(self, content_hash: str) -> bool:
        """True when a proposal exists or a live claim is publishing one."""
        record = self.get(content_hash)
        if record is None:
            return False
        if record.state == STATE_SUCCESS:
            return True
        if record.state == STATE_CLAIMED:
            return record.claimed_at > self._clock() - self.claim_ttl_seconds
        return False

    def mark_processed(
        self,
        content_hash: str,
        proposal_id: Optional[str],
        outcome: str,
        tx_ref: Optional[str] = None,
        *,
        token: str,
        error: Optional[str] = None,
    ) -> ProcessedRecord:
        """Record the outcome for a hash this caller still holds a claim on."""
        if outcome not in OUTCOMES:
            raise ValueError(f"outcome must be one of {OUTCOMES}, got {outcome!r}")
        now = self._clock()
        with self._db(isolation_level="IMMEDIATE") as conn:
            cur = conn.execute(
                """
                UPDATE processed
                   SET state = ?, proposal_id = ?, tx_ref = ?, error = ?, updated_at = ?
                 WHERE content_hash = ? AND claim_token = ? AND state = 'claimed'
                """,
                (outcome, proposal_id, tx_ref, error, now, content_hash, token),
            )
            if cur.rowcount != 1:
                raise ImpactError(
                    code=IMP_E_CLAIM_LOST,
                    message="claim no longer held for content hash",
                    http_status=409,
                    details={"content_hash": content_hash},
                )
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM processed WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return _row_to_record(row)

    def mark_failed(self, claim: Claim, error: str) -> ProcessedRecord:
        return self.mark_processed(claim.content_hash, None, STATE_FAILED, token=claim.token, error=error[:500])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, content_hash: str) -> Optional[ProcessedRecord]:
        with self._db() as conn:
            row = conn.execute(
                f"SELECT {_SELECT_COLUMNS} FROM processed WHERE content_hash = ?", (content_hash,)
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_records(self, outcome: Optional[str] = None, *, limit: int = 100, offset: int = 0) -> List[ProcessedRecord]:
        limit = max(1, min(int(limit), 1000))
        offset = max(0, int(offset))
        with self._db() as conn:
            if outcome:
                rows = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM processed WHERE state = ? "
                    "ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                    (outcome, limit, offset),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_SELECT_COLUMNS} FROM processed ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                    (limit, offset),
                ).fetchall()
        return [_row_to_record(r) for r in rows]

    def counts(self) -> dict:
        with self._db() as conn:
            rows = conn.execute("SELECT state, COUNT(*) FROM processed GROUP BY state").fetchall()
        out = {STATE_CLAIMED: 0, STATE_SUCCESS: 0, STATE_FAILED: 0}
        out.update({state: int(n) for state, n in rows})
        return out
