"""
FastAPI server: webhook ingestion plus read-only status over the watcher.

POST /webhook/moralis feeds push deliveries into the pipeline; GET routes
read the registry, season progress and the settlement ledger. The lifespan
builds the WatcherService from settings (unless one is injected) and runs
its timers in the background.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from web3 import Web3

from backend_eon.agent_worker.service import WatcherService
from backend_eon.config.settings import get_settings
from backend_eon.database.models import canonical_address
from backend_eon.eon_logging import get_logger
from backend_eon.watcher.events import is_verification_payload

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Response models
# -----------------------------------------------------------------------------


class WebhookAck(BaseModel):
    status: str = Field(..., description="verified | received")


class WalletConfigResponse(BaseModel):
    """One watched wallet as currently loaded in the registry."""

    wallet_address: str
    target_address: str
    donation_percent: int = Field(..., ge=1, le=100)
    authorized_contract: str
    network: str
    last_donation_at: int | None = None
    config_id: int


class SeasonProgressResponse(BaseModel):
    """GET /season/{wallet}: progress against the latest goal (base units)."""

    wallet_address: str
    season_id: int
    goal_amount: int
    total_donated: int
    percent_complete: int
    goal_met: bool
    window_start: int
    window_end: int
    active: bool
    completed: bool


class SettlementResponse(BaseModel):
    source_tx_hash: str
    wallet_address: str
    target_address: str
    contract_address: str
    asset_type: str
    original_amount: str
    settlement_amount: int
    percent: int
    status: str
    settlement_tx_hash: str | None = None
    error: str | None = None
    observed_at: int
    updated_at: int | None = None


# -----------------------------------------------------------------------------
# Signature check
# -----------------------------------------------------------------------------


def expected_signature(raw_body: bytes, secret: str) -> str:
    """keccak256(body || secret), 0x-prefixed hex."""
    return Web3.to_hex(Web3.keccak(raw_body + secret.encode("utf-8"))).lower()


def verify_signature(raw_body: bytes, signature: str, secret: str) -> bool:
    return expected_signature(raw_body, secret) == signature.strip().lower()


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------


def create_app(
    service: WatcherService | None = None,
    *,
    webhook_secret: str | None = None,
    run_worker: bool = True,
) -> FastAPI:
    """
    Build the API. With no service, the lifespan bootstraps one from
    settings; run_worker=False skips the background timers.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc: WatcherService | None = app.state.service
        if svc is None:
            from backend_eon.agent_worker.bootstrap import build_service

            svc = build_service(get_settings())
            app.state.service = svc
        if app.state.webhook_secret is None:
            app.state.webhook_secret = get_settings().moralis_webhook_secret

        stop_event = asyncio.Event()
        task: asyncio.Task | None = None
        if run_worker:
            task = asyncio.create_task(svc.run(stop_event), name="watcher")
            logger.info("api_watcher_started")
        yield
        stop_event.set()
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=30.0)
            except asyncio.TimeoutError:
                task.cancel()
                logger.warning("api_watcher_shutdown_timeout", timeout_sec=30.0)
            except Exception as e:
                logger.exception("api_watcher_crashed", error=str(e))
        await svc.ctx.store.close()
        logger.info("api_watcher_stopped")

    app = FastAPI(
        title="EON Watcher API",
        description="Webhook ingestion and read-only status for the donation watcher.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.webhook_secret = webhook_secret

    def get_service(request: Request) -> WatcherService:
        svc = request.app.state.service
        if svc is None:
            raise HTTPException(status_code=503, detail="watcher not initialized")
        return svc

    @app.post("/webhook/moralis", response_model=WebhookAck)
    async def moralis_webhook(
        request: Request,
        background: BackgroundTasks,
        svc: WatcherService = Depends(get_service),
    ) -> JSONResponse:
        """
        Stream delivery. Verification pings are acknowledged without
        processing; other bodies are acknowledged at once and processed in
        the background.
        """
        raw = await request.body()
        try:
            payload: Any = json.loads(raw or b"{}")
        except ValueError:
            raise HTTPException(status_code=400, detail="body must be JSON")

        if is_verification_payload(payload):
            logger.info("webhook_verification")
            return JSONResponse(status_code=200, content=WebhookAck(status="verified").model_dump())

        secret = request.app.state.webhook_secret or ""
        signature = request.headers.get("x-signature")
        if secret and signature and not verify_signature(raw, signature, secret):
            logger.warning("webhook_signature_invalid")
            raise HTTPException(status_code=401, detail="invalid signature")

        background.add_task(_ingest, svc, payload)
        return JSONResponse(status_code=200, content=WebhookAck(status="received").model_dump())

    @app.get("/health")
    async def health(request: Request) -> dict[str, Any]:
        """Liveness plus queue and registry state."""
        svc: WatcherService | None = request.app.state.service
        if svc is None:
            return {"status": "ok", "watcher": "disabled"}
        body = svc.health()
        try:
            body["settlements"] = await svc.settlement_counts()
        except Exception as e:
            logger.warning("health_settlement_counts_failed", error=str(e))
        return body

    @app.get("/wallets", response_model=list[WalletConfigResponse])
    def list_wallets(svc: WatcherService = Depends(get_service)) -> list[WalletConfigResponse]:
        return [
            WalletConfigResponse(
                wallet_address=c.wallet_address,
                target_address=c.target_address,
                donation_percent=c.donation_percent,
                authorized_contract=c.authorized_contract,
                network=c.network,
                last_donation_at=c.last_donation_at,
                config_id=c.config_id,
            )
            for c in svc.ctx.registry.configurations()
        ]

    @app.get("/season/{wallet}", response_model=SeasonProgressResponse)
    async def season_progress(
        wallet: str, svc: WatcherService = Depends(get_service)
    ) -> SeasonProgressResponse:
        address = canonical_address(wallet)
        if len(address) != 42:
            raise HTTPException(status_code=400, detail="invalid wallet address")
        progress = await svc.ctx.adjuster.progress(address)
        if progress is None:
            raise HTTPException(status_code=404, detail=f"No season goal for {address}")
        return SeasonProgressResponse(**progress.to_dict())

    @app.get("/settlements/{tx_hash}", response_model=SettlementResponse)
    async def get_settlement(
        tx_hash: str, svc: WatcherService = Depends(get_service)
    ) -> SettlementResponse:
        record = await svc.ctx.store.get_settlement(tx_hash.strip())
        if record is None:
            raise HTTPException(status_code=404, detail="No settlement for this transaction")
        data = record.to_dict()
        return SettlementResponse(
            **{k: v for k, v in data.items() if k in SettlementResponse.model_fields}
        )

    @app.exception_handler(HTTPException)
    def http_exception_handler(request: Any, exc: HTTPException) -> JSONResponse:
        """Consistent JSON error response for HTTPException."""
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    return app


async def _ingest(svc: WatcherService, payload: Any) -> None:
    try:
        count = await svc.ingest_webhook(payload)
        logger.debug("webhook_processed", events=count)
    except Exception as e:
        logger.exception("webhook_processing_failed", error=str(e))


app = create_app()
