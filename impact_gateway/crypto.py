"""
Impact Gateway Cryptography Module

Content identity hashing, canonical JSON and Ed25519 signatures.

- Content hash: SHA-256 over the canonical image bytes (order-sensitive).
- Metadata hash: SHA-256 over canonical JSON of the metadata object.
- Device signature placeholder: Ed25519 over the length-prefixed pair
  (content_hash, metadata_hash). The proof scheme consumed by an attestation
  service is out of scope; this only binds the two hashes to an operator key.
"""

from __future__ import annotations

import hashlib
import json
import math
import os
import unicodedata
import warnings
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .errors import IMP_E_CANON_NON_JSON, ImpactError, impact_error


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _parse_iso_utc(ts: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp into a timezone-aware UTC datetime.

    Returns None if parsing fails or input is empty.
    """
    if not ts:
        return None
    s = str(ts).strip()
    if not s:
        return None
    # Accept RFC 3339 'Z' suffix.
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso_utc(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _safe_hash_encode(components: List[str]) -> bytes:
    """
    Length-prefixed encoding for hash inputs.
    Prevents delimiter collision attacks.
    """
    result = b""
    for component in components:
        encoded = component.encode("utf-8")
        length_bytes = len(encoded).to_bytes(8, byteorder="big")
        result += length_bytes + encoded
    return result


_CANON_MAX_DEPTH = 64


def _canonicalize(obj: Any, *, _path: str = "$", _depth: int = 0) -> Any:
    if _depth > _CANON_MAX_DEPTH:
        raise impact_error(IMP_E_CANON_NON_JSON, "max nesting depth exceeded", path=_path)

    if obj is None or isinstance(obj, bool):
        return obj
    if isinstance(obj, str):
        return unicodedata.normalize("NFC", obj)
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise impact_error(IMP_E_CANON_NON_JSON, "non-finite float", path=_path)
        return obj

    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise impact_error(IMP_E_CANON_NON_JSON, "dict key must be str", path=_path, got=type(k).__name__)
            nk = unicodedata.normalize("NFC", k)
            out[nk] = _canonicalize(v, _path=f"{_path}['{nk}']", _depth=_depth + 1)
        return out

    if isinstance(obj, (list, tuple)):
        return [_canonicalize(v, _path=f"{_path}[{i}]", _depth=_depth + 1) for i, v in enumerate(obj)]

    raise impact_error(IMP_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Canonical JSON for stable hashing.

    Strict: unknown types and NaN/Infinity are rejected rather than
    stringified, so every hash can be recomputed by another verifier.

    - sort_keys: deterministic key order
    - separators: no whitespace ambiguity
    - ensure_ascii=False: preserve unicode deterministically (UTF-8)
    """
    try:
        return json.dumps(
            _canonicalize(obj),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except ImpactError:
        raise
    except (TypeError, ValueError) as e:
        raise impact_error(IMP_E_CANON_NON_JSON, f"object is not canonical JSON: {e}") from e


def content_hash(data: bytes) -> str:
    """SHA-256 hex digest of the canonical evidence bytes."""
    return _sha256_hex(data)


def metadata_hash(metadata: Dict[str, Any]) -> str:
    return _sha256_hex(canonical_json_dumps(metadata).encode("utf-8"))


def device_signature_message(content_hash_hex: str, metadata_hash_hex: str) -> bytes:
    return _safe_hash_encode(["impact-evidence-v1", content_hash_hex, metadata_hash_hex])


@dataclass
class Ed25519KeyPair:
    """
    Ed25519 key pair for signing and verification.

    Used for the device-signature placeholder and for signing audit log
    entries. A pair built from a public key alone can only verify.
    """
    key_id: str
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls, key_id: str) -> "Ed25519KeyPair":
        """Generate a new Ed25519 key pair."""
        return cls.from_seed(
            Ed25519PrivateKey.generate().private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ),
            key_id,
        )

    @classmethod
    def from_public_key(cls, key_id: str, public_key_hex: str) -> "Ed25519KeyPair":
        """Create key pair with public key only (for verification)."""
        return cls(key_id=key_id, public_key_bytes=bytes.fromhex(public_key_hex))

    @classmethod
    def from_seed(cls, seed: bytes, key_id: str) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        private_key = Ed25519PrivateKey.from_private_bytes(seed)
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(key_id=key_id, public_key_bytes=public_bytes, private_key_bytes=seed)

    @property
    def public_key_hex(self) -> str:
        return self.public_key_bytes.hex()

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.key_id} has no private key - cannot sign")
        return Ed25519PrivateKey.from_private_bytes(self.private_key_bytes).sign(message)

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            Ed25519PublicKey.from_public_bytes(self.public_key_bytes).verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False


def sign_device_attestation(key: Ed25519KeyPair, content_hash_hex: str, metadata_hash_hex: str) -> str:
    """Return the hex device-signature placeholder for an evidence item."""
    return key.sign(device_signature_message(content_hash_hex, metadata_hash_hex)).hex()


def verify_device_attestation(
    key: Ed25519KeyPair, content_hash_hex: str, metadata_hash_hex: str, signature_hex: str
) -> bool:
    try:
        sig = bytes.fromhex(signature_hex)
    except ValueError:
        return False
    return key.verify(device_signature_message(content_hash_hex, metadata_hash_hex), sig)


def load_signing_key_from_env(
    env_var: str = "IMPACT_SIGNING_KEY",
    key_id: str = "operator",
) -> Optional[Ed25519KeyPair]:
    """Load the operator signing key (64 hex chars, 32-byte seed) from the environment.

    Returns None if not configured or invalid.
    """
    key_hex = os.environ.get(env_var)
    if not key_hex:
        return None
    try:
        key_hex = key_hex.strip()
        if len(key_hex) != 64:
            raise ValueError(f"Key must be 64 hex chars (32 bytes), got {len(key_hex)}")
        return Ed25519KeyPair.from_seed(bytes.fromhex(key_hex), key_id)
    except ValueError as e:
        warnings.warn(f"Failed to load signing key from {env_var}: {e}")
        return None
