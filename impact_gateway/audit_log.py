"""Tamper-evident append-only audit log of pipeline outcomes.

JSONL, one record per line:
- prev_hash: entry_hash of the previous record (genesis: 64 zeros)
- event_hash: SHA256 of the canonical event JSON (hex)
- entry_hash: SHA256(prev_hash || event_hash || ts) (hex, length-prefixed)
- signature_b64: Ed25519 signature over the canonical payload

Any after-the-fact edit, reorder or deletion of a record breaks either a hash
or the chain, and ``verify_file`` reports where.
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .crypto import Ed25519KeyPair, _iso_utc, _now_utc, _safe_hash_encode, _sha256_hex, canonical_json_dumps

AUDIT_VERSION = "IMPACT_AUDIT_V1"
GENESIS_HASH = "0" * 64


@dataclass
class AuditLogRecord:
    version: str
    ts_utc: str
    prev_hash: str
    event: Dict[str, Any]
    event_hash: str
    entry_hash: str
    key_id: str
    signature_b64: str

    def to_json(self) -> str:
        return json.dumps(
            {
                "version": self.version,
                "ts_utc": self.ts_utc,
                "prev_hash": self.prev_hash,
                "event": self.event,
                "event_hash": self.event_hash,
                "entry_hash": self.entry_hash,
                "key_id": self.key_id,
                "signature_b64": self.signature_b64,
            },
            sort_keys=True,
            ensure_ascii=False,
        )


def _signing_payload(ts: str, prev_hash: str, event_hash: str, entry_hash: str) -> bytes:
    return _safe_hash_encode([AUDIT_VERSION, ts, prev_hash, event_hash, entry_hash])


class TamperEvidentAuditLog:
    """Append-only tamper-evident audit log."""

    def __init__(self, path: str, signer: Ed25519KeyPair):
        if not signer.can_sign():
            raise ValueError(f"audit log key {signer.key_id} cannot sign")
        self.path = str(path)
        self.signer = signer
        self._lock = threading.Lock()
        self._last_hash = GENESIS_HASH

        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        if p.exists() and p.stat().st_size > 0:
            last_line = self._read_last_line(p)
            try:
                rec = json.loads(last_line) if last_line else {}
            except ValueError:
                # Corrupt tail: keep genesis so verify_file flags the break.
                rec = {}
            self._last_hash = str(rec.get("entry_hash", GENESIS_HASH))

    @staticmethod
    def _read_last_line(path: Path) -> str:
        with path.open("rb") as f:
            f.seek(0, 2)
            end = f.tell()
            if end == 0:
                return ""
            pos = max(0, end - 65536)
            f.seek(pos)
            lines = f.read(end - pos).splitlines()
            return lines[-1].decode("utf-8") if lines else ""

    def append_event(self, event: Dict[str, Any], ts_utc: Optional[str] = None) -> AuditLogRecord:
        """Append an event and return the created record."""
        ts = ts_utc or _iso_utc(_now_utc())
        event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
        with self._lock:
            prev = self._last_hash
            entry_hash = _sha256_hex(_safe_hash_encode([prev, event_hash, ts]))
            sig = self.signer.sign(_signing_payload(ts, prev, event_hash, entry_hash))
            rec = AuditLogRecord(
                version=AUDIT_VERSION,
                ts_utc=ts,
                prev_hash=prev,
                event=event,
                event_hash=event_hash,
                entry_hash=entry_hash,
                key_id=self.signer.key_id,
                signature_b64=base64.b64encode(sig).decode("ascii"),
            )
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(rec.to_json() + "\n")
            self._last_hash = entry_hash
        return rec

    @staticmethod
    def verify_file(path: str, trusted_keys: Mapping[str, Ed25519KeyPair]) -> Tuple[bool, str, int]:
        """Verify an audit log file. Returns (ok, reason, count)."""
        p = Path(path)
        if not p.exists():
            return True, "NO_FILE", 0

        prev = GENESIS_HASH
        count = 0
        with p.open("r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                count += 1
                try:
                    rec = json.loads(line)
                except ValueError:
                    return False, "PARSE_ERROR", count
                if not isinstance(rec, dict):
                    return False, "PARSE_ERROR", count
                if rec.get("version") != AUDIT_VERSION:
                    return False, f"BAD_VERSION:{rec.get('version')}", count
                ts = str(rec.get("ts_utc"))
                prev_hash = str(rec.get("prev_hash"))
                if prev_hash != prev:
                    return False, "CHAIN_BROKEN", count

                event = rec.get("event")
                if not isinstance(event, dict):
                    return False, "BAD_EVENT", count
                event_hash = _sha256_hex(canonical_json_dumps(event).encode("utf-8"))
                if event_hash != str(rec.get("event_hash")):
                    return False, "EVENT_HASH_MISMATCH", count

                entry_hash = _sha256_hex(_safe_hash_encode([prev_hash, event_hash, ts]))
                if entry_hash != str(rec.get("entry_hash")):
                    return False, "ENTRY_HASH_MISMATCH", count

                key = trusted_keys.get(str(rec.get("key_id")))
                if key is None:
                    return False, "UNKNOWN_KEY", count
                try:
                    sig = base64.b64decode(str(rec.get("signature_b64")), validate=True)
                except (binascii.Error, ValueError):
                    return False, "BAD_SIGNATURE_ENCODING", count
                if not key.verify(_signing_payload(ts, prev_hash, event_hash, entry_hash), sig):
                    return False, "INVALID_SIGNATURE", count

                prev = entry_hash

        return True, "OK", count
