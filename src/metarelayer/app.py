import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from metarelayer.classifier import error_code
from metarelayer.config import load_config
from metarelayer.errors import AllSignersFailed, ProofUnavailable, RebalanceInProgress, RelayerError
from metarelayer.instructions import (
    CancelLimitReq,
    CloseMarketReq,
    OpenLimitReq,
    OpenMarketReq,
    SetSLReq,
    SetTPReq,
    UpdateStopsReq,
)
from metarelayer.ledger import fmt_xrp
from metarelayer.logging_config import setup_logging
from metarelayer.rebalancer import periodic_rebalance
from metarelayer.relay import RelayResult
from metarelayer.relayer import MetaRelayer

log = logging.getLogger("metarelayer.app")

TIMEOUT = 3.0

ERROR_STATUS = {
    AllSignersFailed: 503,
    ProofUnavailable: 502,
    RebalanceInProgress: 409,
}


async def _probe_ledger(url: str, max_retries: int, retry_delay: float) -> None:
    """Probe the ledger RPC endpoint with retries until it answers server_info."""
    payload = {"method": "server_info", "params": [{}]}

    for attempt in range(1, max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=TIMEOUT) as http:
                r = await http.post(url, json=payload)
                r.raise_for_status()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries})")
                return
        except httpx.HTTPError as e:
            if attempt < max_retries:
                log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e.__class__.__name__} - retrying in {retry_delay}s...")
                await asyncio.sleep(retry_delay)
            else:
                log.error(f"RPC failed after {max_retries} attempts")
                raise


async def _build_relayer() -> MetaRelayer:
    setup_logging()
    config = load_config()
    relayer = MetaRelayer.from_config(config)

    log.info("Probing ledger RPC %s...", config.rpc_url)
    await _probe_ledger(config.rpc_url, config.probe_retries, config.probe_delay)
    info = await relayer.ledger.describe()
    log.info("Connected to network  : %s (validated ledger %s)", info.get("network_id"), info.get("validated_ledger"))
    log.info("Venue                 : %s", config.venue_address)
    log.info("Signers configured    : %s", relayer.pool.count())
    log.info("First signer          : %s", relayer.pool.at(0).address)
    log.info("Treasury              : %s", relayer.treasury.address)
    log.info("Threshold per signer  : %s", fmt_xrp(config.threshold_drops))
    return relayer


def create_app(relayer: MetaRelayer | None = None, *, rebalance_interval: float | None = None) -> FastAPI:
    """Build the HTTP app. Without a relayer one is built from config at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = relayer is None
        rl = await _build_relayer() if owned else relayer
        app.state.relayer = rl

        interval = rebalance_interval
        if interval is None:
            interval = rl.config.rebalance_interval if rl.config else 0

        stop = asyncio.Event()
        rebalance_task = None
        if interval > 0:
            rebalance_task = asyncio.create_task(periodic_rebalance(rl.rebalancer, stop, interval), name="rebalancer")
            log.info("Background rebalancer every %ss", interval)

        log.info("MetaRelayer ready. Accepting instructions.")
        try:
            yield
        finally:
            log.info("Shutting down...")
            stop.set()
            if rebalance_task is not None:
                rebalance_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await rebalance_task
            if owned:
                await rl.aclose()
            log.info("Shutdown complete")

    app = FastAPI(
        title="MetaRelayer",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Instructions", "description": "Relay signed trading instructions"},
            {"name": "State", "description": "Signer pool and balances"},
            {"name": "Treasury", "description": "Signer funding"},
        ],
    )
    app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"])

    @app.exception_handler(RelayerError)
    async def relayer_error(request: Request, exc: RelayerError):
        status = next((s for t, s in ERROR_STATUS.items() if isinstance(exc, t)), 500)
        log.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
        return JSONResponse(
            status_code=status,
            content={"ok": False, "error": exc.reason, "kind": type(exc).__name__, "code": error_code(exc)},
        )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()) if p != 'body')}: {e.get('msg')}" for e in exc.errors()
        )
        return JSONResponse(
            status_code=422,
            content={"ok": False, "error": problems, "kind": "ValidationError", "code": None},
        )

    app.include_router(_instructions_router())
    app.include_router(_state_router())
    app.include_router(_treasury_router())

    @app.get("/", response_class=PlainTextResponse)
    def root():
        return "MetaRelayer API (rotating signers) is running ✅"

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


def _ok(result: RelayResult) -> dict:
    return {
        "ok": True,
        "txHash": result.tx_hash,
        "ledgerIndex": result.ledger_index,
        "signerIndex": result.signer_index,
        "signerAddress": result.signer_address,
        "context": result.context,
    }


def _instructions_router() -> APIRouter:
    r = APIRouter(tags=["Instructions"])

    @r.post("/open")
    async def open_market(req: OpenMarketReq, request: Request):
        return _ok(await request.app.state.relayer.venue.open_market(req))

    @r.post("/close")
    async def close_market(req: CloseMarketReq, request: Request):
        return _ok(await request.app.state.relayer.venue.close_market(req))

    @r.post("/limit")
    async def open_limit(req: OpenLimitReq, request: Request):
        return _ok(await request.app.state.relayer.venue.open_limit(req))

    @r.post("/cancel")
    async def cancel_limit(req: CancelLimitReq, request: Request):
        return _ok(await request.app.state.relayer.venue.cancel_limit(req))

    @r.post("/set-sl")
    async def set_sl(req: SetSLReq, request: Request):
        return _ok(await request.app.state.relayer.venue.set_sl(req))

    @r.post("/set-tp")
    async def set_tp(req: SetTPReq, request: Request):
        return _ok(await request.app.state.relayer.venue.set_tp(req))

    @r.post("/update-stops")
    async def update_stops(req: UpdateStopsReq, request: Request):
        return _ok(await request.app.state.relayer.venue.update_stops(req))

    return r


def _state_router() -> APIRouter:
    r = APIRouter(prefix="/state", tags=["State"])

    @r.get("/signers")
    def state_signers(request: Request):
        return request.app.state.relayer.snapshot_signers()

    @r.get("/balances")
    async def state_balances(request: Request):
        return await request.app.state.relayer.snapshot_balances()

    @r.get("/rebalance")
    def state_rebalance(request: Request):
        """Report of the most recent rebalancing run, if any."""
        rb = request.app.state.relayer.rebalancer
        return {
            "running": rb.running,
            "last_report": rb.last_report.to_dict() if rb.last_report else None,
        }

    return r


def _treasury_router() -> APIRouter:
    r = APIRouter(tags=["Treasury"])

    @r.post("/rebalance")
    async def rebalance(request: Request):
        report = await request.app.state.relayer.rebalancer.run()
        return report.to_dict()

    return r


app = create_app()
