"""Governance clients used by the publisher.

Two deployment shapes:
1) In-process: submit straight to a LocalLedger-hosted ImpactDAO
2) HTTP: talk to the governance endpoints of an impact gateway server
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Protocol

import httpx

from .errors import IMP_E_BAD_REQUEST, IMP_E_CONTRACT_REVERT, ImpactError, TransientError, impact_error, revert
from .governance import ImpactDAO
from .models import SubmittedProposal
from .retry import is_retryable_status

logger = logging.getLogger("impact_gateway.governance_client")


class GovernanceClient(Protocol):
    async def create_proposal(self, description: str, requested_amount: int, beneficiary: str) -> SubmittedProposal:
        ...


class LedgerGovernanceClient:
    """Submits proposals as transactions on an in-process host ledger."""

    def __init__(self, dao: ImpactDAO, sender: str):
        self.dao = dao
        self.sender = sender

    async def create_proposal(self, description: str, requested_amount: int, beneficiary: str) -> SubmittedProposal:
        receipt = await asyncio.to_thread(
            self.dao.ledger.transact,
            self.sender,
            self.dao,
            self.dao.create_proposal,
            description,
            int(requested_amount),
            beneficiary,
        )
        return SubmittedProposal(proposal_id=str(receipt.result), tx_ref=receipt.tx_hash)


class HttpGovernanceClient:
    """Minimal client for the gateway's /v1/governance endpoints."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        h: Dict[str, str] = {"Content-Type": "application/json"}
        if self.api_key:
            h["X-Api-Key"] = self.api_key
        return h

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self._client.post(f"{self.base_url}{path}", json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise TransientError(f"governance request failed: {e}") from e
        if 200 <= resp.status_code <= 299:
            return resp.json() if resp.content else {}
        try:
            parsed = resp.json()
        except ValueError:
            parsed = {"detail": resp.text}
        # FastAPI puts the envelope in `detail`
        detail = parsed.get("detail", parsed) if isinstance(parsed, dict) else parsed
        if isinstance(detail, dict) and "code" in detail:
            if detail.get("code") == IMP_E_CONTRACT_REVERT and detail.get("reason"):
                raise revert(str(detail["reason"]), str(detail.get("message", "")))
            raise ImpactError(
                code=str(detail.get("code")),
                message=str(detail.get("message", "HTTP error")),
                retryable=bool(detail.get("retryable", False)),
                http_status=int(resp.status_code),
                details=dict(detail.get("details", {})),
            )
        if is_retryable_status(resp.status_code):
            raise TransientError(f"governance HTTP {resp.status_code}", http_status=resp.status_code)
        raise impact_error(IMP_E_BAD_REQUEST, f"HTTP {resp.status_code}", http_status=int(resp.status_code), body=resp.text)

    async def create_proposal(self, description: str, requested_amount: int, beneficiary: str) -> SubmittedProposal:
        out = await self._post(
            "/v1/governance/proposals",
            {"description": description, "requested_amount": int(requested_amount), "beneficiary": beneficiary},
        )
        return SubmittedProposal(proposal_id=str(out.get("proposal_id")), tx_ref=str(out.get("tx_ref")))
