"""
AgentTrail Server

FastAPI front end over the Proof-of-Action core.

Flow:
- an automation run (or a caller-supplied completed run) is hashed into a
  PoA commitment and persisted as a pending record
- anchoring runs in the background on the anchor worker pool; the request
  never waits for the ledger
- verification reconciles the stored, recomputed and on-chain hashes
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .anchor import AnchorDispatcher, AnchorWorker
from .auth import ApiKeyAuth, AuthContext, extract_api_key
from .automation import AutomationClient, build_automation_client_from_env
from .canonical import compute_poa_hash
from .chain import ChainGateway, build_chain_gateway_from_env
from .config import TrailConfig
from .errors import (
    AutomationError,
    ConfigurationError,
    NotFoundError,
    TrailError,
    trail_error,
    TRAIL_E_AUTH_INVALID,
    TRAIL_E_AUTH_REQUIRED,
    TRAIL_E_CONFIG,
    TRAIL_E_NOT_FOUND,
)
from .metrics import instrument_fastapi, record_created
from .models import ExecutionRecord, RawPayload, RecordStatus, VerificationResult
from .ops_stats import OPS_STATS
from .store import RecordStore, new_record_id
from .verifier import Verifier

logger = logging.getLogger("agenttrail")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _not_found(record_id: str) -> NotFoundError:
    return trail_error(  # type: ignore[return-value]
        TRAIL_E_NOT_FOUND,
        f"Execution {record_id} not found",
        kind=NotFoundError,
        http_status=404,
        record_id=record_id,
    )


class TrailGateway:
    """Core operations: create, anchor, retry, verify."""

    def __init__(
        self,
        store: RecordStore,
        chain: ChainGateway,
        *,
        config: Optional[TrailConfig] = None,
        automation: Optional[AutomationClient] = None,
    ):
        self.config = config or TrailConfig()
        self.store = store
        self.chain = chain
        self.automation = automation
        self.worker = AnchorWorker(store, chain, confirm_timeout_s=self.config.confirm_timeout_s)
        self.dispatcher = AnchorDispatcher(self.worker, store, concurrency=self.config.anchor_workers)
        self.verifier = Verifier(store, chain)

    @classmethod
    def from_env(cls) -> "TrailGateway":
        cfg = TrailConfig.from_env()
        return cls(
            RecordStore(cfg.db_path),
            build_chain_gateway_from_env(cfg),
            config=cfg,
            automation=build_automation_client_from_env(cfg),
        )

    async def start(self) -> None:
        await self.dispatcher.start()

    async def stop(self) -> None:
        await self.dispatcher.stop()

    @staticmethod
    def _owned(record: ExecutionRecord, org_id: Optional[str]) -> bool:
        return org_id is None or record.org_id == org_id

    def create_record(
        self,
        raw_payload: Union[RawPayload, Mapping[str, Any]],
        *,
        org_id: Optional[str] = None,
        run_id: Optional[str] = None,
        streaming_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Hash, persist as pending, and trigger anchoring without waiting on it.

        Raises SerializationError if the payload is not canonicalizable; in
        that case nothing is persisted.
        """
        payload = raw_payload if isinstance(raw_payload, RawPayload) else RawPayload.from_dict(dict(raw_payload))
        poa_hash = compute_poa_hash(payload)
        record = ExecutionRecord(
            id=new_record_id(),
            raw_payload=payload,
            poa_hash=poa_hash,
            status=RecordStatus.PENDING,
            org_id=org_id,
            run_id=run_id,
            streaming_url=streaming_url,
        )
        self.store.insert_record(record)
        record_created()
        OPS_STATS.record_created()
        logger.info("Created record %s with PoA hash %s", record.id, poa_hash)
        self.dispatcher.submit(record.id, poa_hash)
        return {"id": record.id, "poa_hash": poa_hash, "status": RecordStatus.PENDING.value}

    def retry_anchor(self, record_id: str, *, org_id: Optional[str] = None) -> Dict[str, Any]:
        """Re-trigger anchoring. Each accepted retry submits a fresh transaction."""
        record = self.store.get_record(record_id)
        if record is None or not self._owned(record, org_id):
            raise _not_found(record_id)
        return {"status": self.dispatcher.submit(record.id, record.poa_hash)}

    async def verify(self, record_id: str) -> VerificationResult:
        return await self.verifier.verify(record_id)

    async def execute(self, goal: str, url: str, *, org_id: Optional[str] = None) -> Dict[str, Any]:
        """Run the automation engine, then commit to its result."""
        if self.automation is None:
            raise trail_error(
                TRAIL_E_CONFIG,
                "Automation engine is not configured (set TINYFISH_API_KEY)",
                kind=ConfigurationError,
                http_status=503,
            )
        try:
            run = await self.automation.run(goal, url)
        except AutomationError:
            OPS_STATS.record_automation_error()
            raise
        payload = RawPayload(
            goal=goal,
            url=run.final_url,
            timestamp=run.timestamp or _now_utc().isoformat(),
            result_json=run.result_json,
        )
        created = self.create_record(
            payload,
            org_id=org_id,
            run_id=run.run_id or None,
            streaming_url=run.streaming_url or None,
        )
        return {
            "receipt_id": created["id"],
            "status": created["status"],
            "streaming_url": run.streaming_url or None,
            "poa_hash": created["poa_hash"],
            "result_json": payload.result_json,
        }

    def get_record(self, record_id: str, *, org_id: Optional[str] = None) -> ExecutionRecord:
        record = self.store.get_record(record_id)
        if record is None or not self._owned(record, org_id):
            raise _not_found(record_id)
        return record

    def list_records(self, org_id: Optional[str] = None, limit: int = 50) -> List[ExecutionRecord]:
        return self.store.list_records(org_id=org_id, limit=limit)


# ---------------------------
# Request/Response Models
# ---------------------------

class ExecuteRequest(BaseModel):
    """Run a browser automation task and commit to its result."""
    goal: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)


class ExecuteResponse(BaseModel):
    receipt_id: str
    status: str
    poa_hash: str
    streaming_url: Optional[str] = None
    result_json: Any = None


class RecordRequest(BaseModel):
    """Commit to an already-completed run."""
    goal: str
    url: str
    timestamp: str
    result_json: Any = Field(default_factory=dict)
    run_id: Optional[str] = None


class RecordResponse(BaseModel):
    id: str
    poa_hash: str
    status: str


class RetryResponse(BaseModel):
    status: str


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[TrailGateway] = None) -> FastAPI:
    """Create FastAPI application with AgentTrail endpoints."""
    from . import __version__ as trail_version

    if gateway is None:
        gateway = TrailGateway.from_env()

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        await gateway.start()
        try:
            yield
        finally:
            await gateway.stop()

    app = FastAPI(
        title="AgentTrail",
        description="Proof-of-Action receipts for browser automation runs",
        version=trail_version,
        lifespan=_lifespan,
    )
    app.state.gateway = gateway

    @app.exception_handler(TrailError)
    async def _trail_error_handler(request: Request, exc: TrailError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    api_auth = ApiKeyAuth.load_from_env()
    if api_auth.config_error:
        logger.error("API key configuration is invalid; authenticated endpoints will reject all callers")

    def _caller(req: Request) -> AuthContext:
        ctx = api_auth.resolve(extract_api_key(req.headers))
        if ctx.error == "API_KEY_REQUIRED":
            raise trail_error(
                TRAIL_E_AUTH_REQUIRED,
                "Missing API key. Provide Authorization: Bearer <key>.",
                http_status=401,
            )
        if ctx.error:
            raise trail_error(TRAIL_E_AUTH_INVALID, "Invalid API key", http_status=401, reason=ctx.error)
        return ctx

    # ---------------------------
    # Operational stats (/v1/stats)
    # ---------------------------
    stats_token = (os.getenv("AGENTTRAIL_STATS_TOKEN", "") or "").strip()
    env = str(os.getenv("AGENTTRAIL_ENV", os.getenv("ENV", "dev"))).strip().lower()
    prod_default = env in ("prod", "production")
    raw_require = os.getenv("AGENTTRAIL_STATS_REQUIRE_AUTH")
    if raw_require is None:
        stats_require_auth = prod_default
    else:
        stats_require_auth = str(raw_require).strip().lower() in ("1", "true", "yes", "on")

    def _authorize_stats(req: Request) -> bool:
        if not stats_require_auth:
            return True
        # Auth required but no token configured: deny.
        if not stats_token:
            return False
        authz = (req.headers.get("Authorization") or "").strip()
        if authz.lower().startswith("bearer ") and authz.split(" ", 1)[1].strip() == stats_token:
            return True
        return (req.headers.get("X-Stats-Token") or "").strip() == stats_token

    # ---------------------------
    # Observability (/metrics)
    # ---------------------------
    instrument_fastapi(app, authorize=_authorize_stats)

    # Request body size limit (checks Content-Length).
    try:
        max_request_bytes = int(os.getenv("AGENTTRAIL_MAX_REQUEST_BYTES", "1048576") or "1048576")
    except ValueError:
        max_request_bytes = 1048576

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    @app.post("/v1/execute", response_model=ExecuteResponse)
    async def execute(http_request: Request, request: ExecuteRequest):
        ctx = _caller(http_request)
        return await gateway.execute(request.goal, request.url, org_id=ctx.org_id)

    @app.post("/v1/records", response_model=RecordResponse)
    async def create_record(http_request: Request, request: RecordRequest):
        ctx = _caller(http_request)
        payload = RawPayload(
            goal=request.goal,
            url=request.url,
            timestamp=request.timestamp,
            result_json={} if request.result_json is None else request.result_json,
        )
        return gateway.create_record(payload, org_id=ctx.org_id, run_id=request.run_id)

    @app.get("/v1/executions")
    async def list_executions(http_request: Request):
        ctx = _caller(http_request)
        records = gateway.list_records(org_id=ctx.org_id, limit=50)
        return {"executions": [r.to_dict() for r in records]}

    @app.get("/v1/executions/{record_id}")
    async def get_execution(record_id: str, http_request: Request):
        ctx = _caller(http_request)
        return gateway.get_record(record_id, org_id=ctx.org_id).to_dict()

    @app.post("/v1/executions/{record_id}/anchor", response_model=RetryResponse)
    async def retry_anchor(record_id: str, http_request: Request):
        ctx = _caller(http_request)
        return gateway.retry_anchor(record_id, org_id=ctx.org_id)

    @app.post("/v1/verify/{record_id}")
    @app.get("/v1/verify/{record_id}")
    async def verify(record_id: str):
        result = await gateway.verify(record_id)
        return result.to_dict()

    @app.get("/v1/stats")
    async def stats(http_request: Request):
        if not _authorize_stats(http_request):
            return JSONResponse(status_code=401, content={"detail": "STATS_UNAUTHORIZED"})
        extra = {
            "records_by_status": gateway.store.count_by_status(),
            "anchor_dispatcher_running": gateway.dispatcher.running,
        }
        return OPS_STATS.snapshot(extra=extra)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": trail_version,
            "chain": gateway.chain.chain,
            "contract_address": gateway.chain.contract_address,
            "automation_configured": gateway.automation is not None,
        }

    return app


def main():
    """
    Main entry point for the agenttrail-server CLI.

    Usage:
        agenttrail-server                    # Start on default port 8000
        agenttrail-server --port 9000        # Start on custom port
        agenttrail-server --host 127.0.0.1   # Bind to localhost only
    """
    import argparse

    parser = argparse.ArgumentParser(
        description="AgentTrail - Proof-of-Action receipts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
    AGENTTRAIL_DB_PATH            Path to SQLite database (default: agenttrail.db)
    AGENTTRAIL_CHAIN_MODE         web3 | local (default: web3)
    AGENTTRAIL_RPC_URL            Ledger RPC endpoint (alias: BASE_SEPOLIA_RPC_URL)
    AGENTTRAIL_WALLET_PRIVATE_KEY Signing key (alias: AGENT_WALLET_PRIVATE_KEY)
    AGENTTRAIL_API_KEYS_JSON      {sha256(api_key): org_id}; enables auth
    TINYFISH_API_KEY              Automation engine API key
        """,
    )
    parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    parser.add_argument("--proxy-headers", action="store_true", help="Trust X-Forwarded-* headers (for reverse proxy)")
    args = parser.parse_args()

    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    print(f"Starting AgentTrail on {args.host}:{args.port}")
    print("  Endpoints:")
    print("    POST /v1/execute                    - Run automation and create a receipt")
    print("    POST /v1/records                    - Create a receipt for a completed run")
    print("    GET  /v1/executions                 - List recent receipts")
    print("    POST /v1/executions/{id}/anchor     - Retry anchoring")
    print("    POST /v1/verify/{id}                - Triple verification")
    print("    GET  /v1/health                     - Health check")
    print()

    app = create_app()
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=args.proxy_headers)
    return 0


# CLI entry point
if __name__ == "__main__":
    import sys
    sys.exit(main() or 0)
