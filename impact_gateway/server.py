"""
Impact Gateway HTTP surface (FastAPI).

Endpoints:
- POST /v1/evidence                          submit one evidence item (base64)
- POST /v1/evidence/batch                    submit many; per-item outcomes
- POST /v1/intake/scan                       enqueue unseen images from a directory
                                             under IMPACT_INTAKE_DIR (DAO members only)
- GET  /v1/ledger, /v1/ledger/counts, /v1/ledger/{content_hash}
- governance: /v1/governance/...             the contract surface, sent from
                                             the caller's resolved address
- GET  /v1/health, GET /metrics

Caller identity for governance transactions comes from X-Api-Key when an
API key mapping is configured; X-Member-Address is only trusted in
development mode.

Errors use a stable JSON envelope in `detail`; contract reverts carry the
verbatim revert `reason`.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import metrics
from .auth import NOT_A_MEMBER, ROLE_NOT_ALLOWED, ApiKeyAuth, AuthContext
from .config import ImpactSettings
from .errors import (
    IMP_E_ACCESS_DENIED,
    IMP_E_AUTH_REQUIRED,
    IMP_E_BAD_REQUEST,
    ContractRevert,
    ImpactError,
    impact_error,
)
from .governance import ImpactDAO, Receipt
from .ledger import OUTCOMES, STATE_CLAIMED
from .models import EvidenceSubmission
from .runtime import GatewayRuntime, build_runtime
from .scheduler import IntakeScheduler

logger = logging.getLogger("impact_gateway.server")


def _http_exc(status: int, code: str, message: str, *, retryable: bool = False, **details: Any) -> HTTPException:
    """Create an HTTPException with a stable error envelope in `detail`."""
    detail: Dict[str, Any] = {"code": code, "message": message, "retryable": bool(retryable)}
    if details:
        detail["details"] = details
    return HTTPException(status, detail)


def _within_intake_root(root: str, directory: str) -> Path:
    """Resolve ``directory`` against the intake root; symlinks may not escape it."""
    base = Path(root).resolve()
    target = (base / directory).resolve()
    if target != base and base not in target.parents:
        raise _http_exc(403, IMP_E_ACCESS_DENIED, "directory is outside the intake root")
    return target


# ---------------------------
# Request/Response Models
# ---------------------------

class EvidenceRequest(BaseModel):
    data_b64: str
    filename: str = ""
    format_hint: Optional[str] = None
    hints: Dict[str, Any] = Field(default_factory=dict)
    description: Optional[str] = None
    beneficiary: Optional[str] = None


class BatchRequest(BaseModel):
    items: List[EvidenceRequest]
    concurrency: Optional[int] = Field(default=None, ge=1, le=64)


class ScanRequest(BaseModel):
    directory: str


class StakeRequest(BaseModel):
    stake: int = Field(default=0, ge=0)


class FundRequest(BaseModel):
    amount: int = Field(gt=0)


class CreateProposalRequest(BaseModel):
    description: str
    requested_amount: int = Field(default=0, ge=0)
    beneficiary: Optional[str] = None


class VoteRequest(BaseModel):
    support: bool


def _receipt_dict(receipt: Receipt) -> Dict[str, Any]:
    return {
        "tx_ref": receipt.tx_hash,
        "block_number": receipt.block_number,
        "timestamp": receipt.timestamp,
        "sender": receipt.sender,
        "method": receipt.method,
        "value": receipt.value,
        "result": receipt.result,
        "events": [{"name": e.name, "args": e.args} for e in receipt.events],
    }


def _submission(req: EvidenceRequest) -> EvidenceSubmission:
    try:
        data = base64.b64decode(req.data_b64, validate=True)
    except (binascii.Error, ValueError):
        raise _http_exc(400, IMP_E_BAD_REQUEST, "data_b64 is not valid base64")
    return EvidenceSubmission(
        data=data,
        filename=req.filename,
        format_hint=req.format_hint,
        hints=dict(req.hints),
        description=req.description,
        beneficiary=req.beneficiary,
    )


def create_app(
    runtime: Optional[GatewayRuntime] = None,
    *,
    auth: Optional[ApiKeyAuth] = None,
) -> FastAPI:
    """Create the FastAPI application around a gateway runtime."""
    from . import __version__ as impact_version

    if runtime is None:
        runtime = build_runtime(ImpactSettings.from_env())
    if auth is None:
        auth = ApiKeyAuth.load_from_env()

    scheduler = IntakeScheduler(runtime.pipeline, workers=runtime.settings.concurrency)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop(drain=False)
            await runtime.aclose()

    app = FastAPI(
        title="Impact Gateway",
        description="Evidence-to-governance pipeline and impact DAO surface",
        version=impact_version,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.scheduler = scheduler

    @app.exception_handler(ImpactError)
    async def _impact_error_handler(request: Request, exc: ImpactError):
        if isinstance(exc, ContractRevert):
            metrics.record_revert(exc.reason)
        return JSONResponse(status_code=int(exc.http_status or 400), content={"detail": exc.as_dict()})

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    metrics_token = (os.getenv("IMPACT_METRICS_TOKEN", "") or "").strip()

    def _authorize_metrics(req: Request) -> bool:
        if not metrics_token:
            return True
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == metrics_token:
            return True
        return (req.headers.get("X-Metrics-Token") or "").strip() == metrics_token

    metrics.instrument_fastapi(app, authorize=_authorize_metrics)

    # ---------------------------
    # Identity
    # ---------------------------

    def _require(ctx: AuthContext) -> str:
        if ctx.error in (NOT_A_MEMBER, ROLE_NOT_ALLOWED):
            raise _http_exc(403, IMP_E_ACCESS_DENIED, ctx.error)
        if ctx.error:
            raise _http_exc(401, IMP_E_AUTH_REQUIRED, ctx.error)
        if not ctx.address:
            raise _http_exc(401, IMP_E_AUTH_REQUIRED, "member address required")
        return ctx.address

    def _caller(x_api_key: Optional[str], x_member_address: Optional[str]) -> str:
        return _require(auth.resolve_context(x_api_key, x_member_address))

    def _member(x_api_key: Optional[str], x_member_address: Optional[str]) -> str:
        # A remote contract cannot be asked here; it enforces membership itself.
        if runtime.dao is None:
            return _caller(x_api_key, x_member_address)
        return _require(auth.resolve_member(runtime.dao, x_api_key, x_member_address))

    def _dao() -> ImpactDAO:
        if runtime.dao is None:
            raise _http_exc(503, IMP_E_BAD_REQUEST, "governance contract is not hosted by this gateway")
        return runtime.dao

    async def _tx(sender: str, method_name: str, *args: Any, value: int = 0) -> Receipt:
        dao = _dao()
        method: Callable[..., Any] = getattr(dao, method_name)
        return await asyncio.to_thread(dao.ledger.transact, sender, dao, method, *args, value=value)

    # ---------------------------
    # Evidence
    # ---------------------------

    @app.post("/v1/evidence")
    async def submit_evidence(request: EvidenceRequest):
        outcome = await runtime.pipeline.process(_submission(request))
        return outcome.to_dict()

    @app.post("/v1/evidence/batch")
    async def submit_batch(request: BatchRequest):
        subs = [_submission(item) for item in request.items]
        report = await runtime.pipeline.process_batch(
            subs, concurrency=request.concurrency or runtime.settings.concurrency
        )
        return report.to_dict()

    @app.post("/v1/intake/scan")
    async def trigger_scan(
        request: ScanRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _member(x_api_key, x_member_address)
        if not runtime.settings.intake_dir:
            raise _http_exc(403, IMP_E_ACCESS_DENIED, "directory intake is not configured")
        directory = _within_intake_root(runtime.settings.intake_dir, request.directory)
        if not scheduler.running:
            raise _http_exc(503, IMP_E_BAD_REQUEST, "intake scheduler is not running", retryable=True)
        queued = await scheduler.trigger_scan(directory)
        logger.info("scan of %s by %s queued %d item(s)", directory, sender, queued)
        return {"queued": queued}

    # ---------------------------
    # Ledger
    # ---------------------------

    @app.get("/v1/ledger")
    async def list_ledger(state: Optional[str] = None, limit: int = 100, offset: int = 0):
        if state is not None and state not in (STATE_CLAIMED,) + OUTCOMES:
            raise _http_exc(400, IMP_E_BAD_REQUEST, f"unknown state {state!r}")
        records = await asyncio.to_thread(runtime.ledger.list_records, state, limit=limit, offset=offset)
        return {"records": [r.to_dict() for r in records]}

    @app.get("/v1/ledger/counts")
    async def ledger_counts():
        return await asyncio.to_thread(runtime.ledger.counts)

    @app.get("/v1/ledger/{content_hash}")
    async def get_ledger_record(content_hash: str):
        record = await asyncio.to_thread(runtime.ledger.get, content_hash)
        if record is None:
            raise _http_exc(404, IMP_E_BAD_REQUEST, "no ledger record for content hash")
        return record.to_dict()

    # ---------------------------
    # Governance
    # ---------------------------

    @app.post("/v1/governance/members/verifier")
    async def join_as_verifier(
        request: StakeRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "join_as_verifier", value=request.stake))

    @app.post("/v1/governance/members/agent")
    async def join_as_agent(
        request: StakeRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "join_as_agent", value=request.stake))

    @app.post("/v1/governance/members/leave")
    async def leave_dao(
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "leave_dao"))

    @app.get("/v1/governance/members/{address}")
    async def get_member(address: str):
        dao = _dao()
        m = dao.member(address)
        return {
            "address": address,
            "is_member": m is not None,
            "role": m.role if m else None,
            "stake": m.stake if m else 0,
            "voting_power": dao.voting_power(address),
        }

    @app.post("/v1/governance/fund")
    async def fund(
        request: FundRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "fund", value=request.amount))

    @app.get("/v1/governance/treasury")
    async def treasury():
        return {"available": _dao().treasury_available()}

    @app.post("/v1/governance/proposals")
    async def create_proposal(
        request: CreateProposalRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        receipt = await _tx(
            sender, "create_proposal", request.description, request.requested_amount, request.beneficiary
        )
        return {"proposal_id": receipt.result, "tx_ref": receipt.tx_hash}

    @app.get("/v1/governance/proposals")
    async def list_proposals():
        return {"proposal_ids": _dao().list_proposals()}

    @app.get("/v1/governance/proposals/{proposal_id}")
    async def get_proposal(proposal_id: str):
        view = _dao().get_proposal(proposal_id)
        if not view.exists:
            raise impact_error(IMP_E_BAD_REQUEST, "unknown proposal", http_status=404, proposal_id=proposal_id)
        return view.to_dict()

    @app.get("/v1/governance/proposals/{proposal_id}/voters/{member}")
    async def has_voted(proposal_id: str, member: str):
        return {"proposal_id": proposal_id, "member": member, "has_voted": _dao().has_voted(proposal_id, member)}

    @app.post("/v1/governance/proposals/{proposal_id}/verify")
    async def verify_proposal(
        proposal_id: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "verify_proposal", proposal_id))

    @app.post("/v1/governance/proposals/{proposal_id}/vote")
    async def vote(
        proposal_id: str,
        request: VoteRequest,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "vote", proposal_id, request.support))

    @app.post("/v1/governance/proposals/{proposal_id}/execute")
    async def execute_proposal(
        proposal_id: str,
        x_api_key: Optional[str] = Header(None, alias="X-Api-Key"),
        x_member_address: Optional[str] = Header(None, alias="X-Member-Address"),
    ):
        sender = _caller(x_api_key, x_member_address)
        return _receipt_dict(await _tx(sender, "execute_proposal", proposal_id))

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "ledger": await asyncio.to_thread(runtime.ledger.counts),
            "scheduler_running": scheduler.running,
            "governance": "local" if runtime.dao is not None else "remote",
        }

    return app


def main():
    """
    Main entry point for impact-gateway.

    Usage:
        impact-gateway                    # Start on default port 8000
        impact-gateway --port 9000        # Start on custom port
        impact-gateway --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="Impact Gateway - evidence pipeline and governance surface",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    IMPACT_LEDGER_PATH      Path to the dedup ledger database (default: impact_ledger.db)
    IMPACT_SIGNING_KEY      Operator Ed25519 seed (64 hex chars)
    IMPACT_API_KEYS_JSON    JSON mapping api_key -> member address
    IMPACT_METRICS_TOKEN    If set, /metrics requires this bearer token
    IMPACT_PROXY_HEADERS    If set (1/true), trust X-Forwarded-* headers (reverse proxy)
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    app = create_app()
    env_proxy = os.environ.get("IMPACT_PROXY_HEADERS", "").strip().lower()
    proxy_headers = args.proxy_headers or env_proxy in ("1", "true", "yes")
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=proxy_headers)
    return 0


if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
