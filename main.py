# main.py
"""
GhostPass gateway: prove control of a wallet, get an anonymous, revocable
"verified" flag recorded in the on-chain registry.

Endpoints:
- POST /verify            sign-in with a wallet signature, submit verifyUser
- GET  /verify/{address}  on-chain status plus local pseudonym
- POST /revoke            submit revokeUser
- GET  /health            liveness + last ledger self-check
"""
from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bridge import VerificationStateBridge
from chain.ledger import Web3LedgerClient
from chain.wallet import Signer, make_web3
from config import Settings, cors_origins, load_settings
from errors import ConfigurationMissing, GhostPassError
from routes import router
from store import VerificationStore

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("ghostpass")


def build_bridge(settings: Settings) -> VerificationStateBridge:
    w3 = make_web3(settings.rpc_url, request_timeout=settings.read_timeout)
    signer = Signer(w3, settings.private_key)
    ledger = Web3LedgerClient(
        signer,
        settings.contract_address,
        settings.abi,
        read_timeout=settings.read_timeout,
        submit_timeout=settings.submit_timeout,
        receipt_timeout=settings.receipt_timeout,
        poll_interval=settings.receipt_poll_interval,
        confirmations=settings.confirmations,
    )

    sink = None
    if settings.database_url:
        from db import SqlAuditSink, make_engine
        sink = SqlAuditSink(make_engine(settings.database_url))
        logger.info("Audit sink enabled")

    logger.info("Signer address: %s", signer.address)
    return VerificationStateBridge(
        ledger,
        VerificationStore(sink=sink),
        revoke_requires_signature=settings.revoke_requires_signature,
    )


async def run_self_check(app: FastAPI):
    try:
        report = await app.state.bridge.ledger.self_check()
    except NotImplementedError:
        return
    app.state.ledger_health = "ok" if report.ok else "degraded"
    app.state.ledger_report = report.to_dict()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "bridge", None) is None:
        # ConfigurationMissing propagates: the server refuses to start.
        settings = app.state.settings or load_settings()
        app.state.bridge = build_bridge(settings)
        app.state.admin_api_key = settings.admin_api_key

    check_task = asyncio.create_task(run_self_check(app))
    logger.info("GhostPass gateway started")
    yield
    check_task.cancel()
    try:
        await check_task
    except asyncio.CancelledError:
        pass
    logger.info("GhostPass gateway stopped")


def create_app(
    settings: Optional[Settings] = None,
    bridge: Optional[VerificationStateBridge] = None,
    admin_api_key: str = "",
) -> FastAPI:
    app = FastAPI(title="GhostPass Gateway", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.bridge = bridge
    app.state.admin_api_key = settings.admin_api_key if settings else admin_api_key
    app.state.ledger_health = "unknown"
    app.state.ledger_report = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins if settings else cors_origins(),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info("%s %s", request.method, request.url.path)
        return await call_next(request)

    @app.exception_handler(GhostPassError)
    async def ghostpass_error(request: Request, exc: GhostPassError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        errors = [{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()]
        logger.warning("Rejected %s %s: %s", request.method, request.url.path, errors)
        return JSONResponse(
            status_code=400,
            content={"error": "Missing required fields", "code": "bad_request", "details": {"errors": errors}},
        )

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "ledger": app.state.ledger_health,
        }

    app.include_router(router)
    return app


app = create_app()


def main():
    try:
        settings = load_settings()
    except ConfigurationMissing as e:
        logger.error("Configuration error: %s %s", e.message, e.details or "")
        sys.exit(1)

    logging.getLogger().setLevel(settings.log_level)

    import uvicorn
    logger.info("GhostPass backend server is running on port %d", settings.port)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
