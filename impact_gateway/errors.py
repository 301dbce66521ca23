"""Stable error taxonomy for the impact gateway.

This module defines machine-readable error codes and the exception types used
across the pipeline, the dedup ledger, the governance contract and the HTTP
surface.

Error classes map onto the pipeline's handling rules:
- transient: retried with bounded attempts; exhausted lookups become absent
- validation: fatal to one pipeline run, raised before any ledger claim
- contract revert: surfaced verbatim with a stable reason string
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Evidence / normalization
IMP_E_UNSUPPORTED_FORMAT = "IMP_E_UNSUPPORTED_FORMAT"
IMP_E_PAYLOAD_TOO_LARGE = "IMP_E_PAYLOAD_TOO_LARGE"
IMP_E_MALFORMED_COORDINATES = "IMP_E_MALFORMED_COORDINATES"
IMP_E_MISSING_FIELD = "IMP_E_MISSING_FIELD"
IMP_E_EMPTY_DESCRIPTION = "IMP_E_EMPTY_DESCRIPTION"

# Canonicalization / document codec
IMP_E_CANON_NON_JSON = "IMP_E_CANON_NON_JSON"
IMP_E_DOC_MALFORMED = "IMP_E_DOC_MALFORMED"

# Collaborators
IMP_E_TRANSIENT = "IMP_E_TRANSIENT"
IMP_E_ACCESS_DENIED = "IMP_E_ACCESS_DENIED"
IMP_E_UPSTREAM = "IMP_E_UPSTREAM"
IMP_E_TIMEOUT = "IMP_E_TIMEOUT"

# Dedup ledger
IMP_E_LEDGER_STORAGE = "IMP_E_LEDGER_STORAGE"
IMP_E_CLAIM_LOST = "IMP_E_CLAIM_LOST"

# Governance
IMP_E_CONTRACT_REVERT = "IMP_E_CONTRACT_REVERT"

# Generic
IMP_E_AUTH_REQUIRED = "IMP_E_AUTH_REQUIRED"
IMP_E_BAD_REQUEST = "IMP_E_BAD_REQUEST"
IMP_E_CONFIG = "IMP_E_CONFIG"
IMP_E_INTERNAL = "IMP_E_INTERNAL"


@dataclass
class ImpactError(Exception):
    """Base exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class TransientError(ImpactError):
    """Network timeout, rate limit or 5xx: safe to retry."""

    def __init__(self, message: str, *, code: str = IMP_E_TRANSIENT, http_status: int = 503, **details: Any):
        super().__init__(code=code, message=message, retryable=True, http_status=http_status, details=details)


class AccessDenied(ImpactError):
    """The collaborator refused access (401/403). Never retried."""

    def __init__(self, message: str, *, http_status: int = 403, **details: Any):
        super().__init__(code=IMP_E_ACCESS_DENIED, message=message, retryable=False, http_status=http_status, details=details)


class ValidationError(ImpactError):
    """Evidence rejected before any ledger claim is made."""

    def __init__(self, code: str, message: str, **details: Any):
        super().__init__(code=code, message=message, retryable=False, http_status=422, details=details)


class PayloadTooLarge(ValidationError):
    def __init__(self, message: str, **details: Any):
        super().__init__(IMP_E_PAYLOAD_TOO_LARGE, message, **details)
        self.http_status = 413


class ContractRevert(ImpactError):
    """A governance transaction reverted. `reason` is the verbatim revert string."""

    def __init__(self, reason: str, message: str = "", **details: Any):
        super().__init__(
            code=IMP_E_CONTRACT_REVERT,
            message=message or reason,
            retryable=False,
            http_status=409,
            details=details,
        )
        self.reason = reason

    def as_dict(self) -> Dict[str, Any]:
        d = super().as_dict()
        d["reason"] = self.reason
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}: {self.message}"


class InsufficientFunds(ContractRevert):
    def __init__(self, message: str = "treasury balance below requested amount", **details: Any):
        super().__init__("InsufficientFunds", message, **details)


class NotPassed(ContractRevert):
    def __init__(self, message: str = "proposal has not passed", **details: Any):
        super().__init__("NotPassed", message, **details)


def impact_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> ImpactError:
    return ImpactError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)


def revert(reason: str, message: str = "", **details: Any) -> ContractRevert:
    """Build the revert exception for a reason string."""
    if reason == "InsufficientFunds":
        return InsufficientFunds(message or "treasury balance below requested amount", **details)
    if reason == "NotPassed":
        return NotPassed(message or "proposal has not passed", **details)
    return ContractRevert(reason, message, **details)
