import logging
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import APIRouter, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

import inscriber.constants as C
from inscriber.config import cfg, chain_settings, rpc_url
from inscriber.engine import BroadcastEngine
from inscriber.errors import NonceFetchError, ValidationError
from inscriber.logging_config import setup_logging
from inscriber.models import GasPolicy, LogEvent, RunConfig
from inscriber.recovery import StaleNonceMatcher
from inscriber.rpc_client import ChainTransport, make_transport

setup_logging()
log = logging.getLogger("inscriber.app")

RPC_TIMEOUT = cfg["rpc"].get("timeout", C.RPC_TIMEOUT)
SUBMIT_TIMEOUT = cfg["rpc"].get("submit_timeout", C.SUBMIT_TIMEOUT)


def build_engine() -> BroadcastEngine:
    chain = chain_settings()
    url = rpc_url()
    log.info("Default chain %s (%s) via %s", chain["key"], chain["chain_id"], url)
    transport = make_transport(url, chain_id=chain["chain_id"], timeout=RPC_TIMEOUT)
    engine_cfg = cfg.get("engine", {})
    return BroadcastEngine(
        transport,
        matcher=StaleNonceMatcher(engine_cfg.get("stale_nonce_patterns", C.DEFAULT_STALE_NONCE_PATTERNS)),
        log_history=engine_cfg.get("log_history", C.LOG_HISTORY),
        submit_timeout=SUBMIT_TIMEOUT,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.engine = build_engine()
    app.state.transports = {}
    default_transport = app.state.engine.transport
    log.info("Ready to accept runs")
    try:
        yield
    finally:
        log.info("Shutting down...")
        await app.state.engine.stop()
        for t in {default_transport, app.state.engine.transport, *app.state.transports.values()}:
            await t.close()
        log.info("Shutdown complete")


app = FastAPI(
    title="Inscriber",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Run", "description": "Start, stop and observe a broadcast run"},
        {"name": "Chains", "description": "Configured chains"},
    ],
)

r_run = APIRouter(prefix="/run", tags=["Run"])
r_chains = APIRouter(prefix="/chains", tags=["Chains"])


class StartRunReq(BaseModel):
    keys: str | list[str]
    mode: C.TransferMode = C.TransferMode.SELF_TRANSFER
    target_address: str | None = None
    payload: str = ""
    gas_mode: C.GasMode = C.GasMode.TIP
    gas_gwei: Decimal = Field(default=Decimal(0), ge=0)
    interval_ms: int = Field(default=0, ge=0)
    fast_mode: bool = False
    chain: str | None = None
    rpc: str | None = None


def _engine(request: Request) -> BroadcastEngine:
    return request.app.state.engine


def _transport_for(app: FastAPI, chain: str | None, rpc: str | None) -> ChainTransport | None:
    """Transport for a per-run chain/RPC choice; None keeps the engine default."""
    if chain is None and not rpc:
        return None
    chain_id = chain_settings(chain)["chain_id"] if chain else None
    url = rpc_url(chain, rpc)
    key = (url, chain_id)
    if key not in app.state.transports:
        app.state.transports[key] = make_transport(url, chain_id=chain_id, timeout=RPC_TIMEOUT)
    return app.state.transports[key]


@app.get("/health")
def health():
    return {"status": "ok"}


@r_run.post("/start")
async def start_run(req: StartRunReq, request: Request):
    """Validate the request and start a run. 400 on any validation failure."""
    engine = _engine(request)
    try:
        transport = _transport_for(request.app, req.chain, req.rpc)
        run_cfg = RunConfig.from_text(
            payload=req.payload,
            mode=req.mode,
            target_address=req.target_address,
            gas_policy=GasPolicy.parse(req.gas_mode, req.gas_gwei),
            interval_ms=req.interval_ms,
            fast_mode=req.fast_mode,
        )
    except ValidationError as e:
        engine.emit(C.LogLevel.ERROR, str(e))
        raise HTTPException(status_code=400, detail=str(e))

    try:
        state = await engine.start(run_cfg, req.keys, transport=transport)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NonceFetchError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not state.running:
        return {"status": "cancelled", "state": state.to_dict()}
    log.info("Run started via API")
    return {"status": "started", "state": state.to_dict()}


@r_run.post("/stop")
async def stop_run(request: Request):
    engine = _engine(request)
    if not engine.state.running and not engine.starting:
        return {"status": "idle", "stats": engine.state.to_dict()}
    final = await engine.stop()
    return {"status": "stopped", "stats": final.to_dict()}


@r_run.get("/status")
async def run_status(request: Request):
    return _engine(request).status()


@r_run.get("/defaults")
def run_defaults():
    """Form prefill for a new run."""
    defaults = cfg.get("defaults", {})
    return {
        "payload": defaults.get("payload", C.EXAMPLE_PAYLOAD),
        "mode": C.TransferMode.SELF_TRANSFER,
        "gas_mode": C.GasMode.TIP,
        "interval_ms": defaults.get("interval_ms", 0),
        "min_fast_interval_ms": C.MIN_FAST_INTERVAL_MS,
    }


@r_run.get("/logs")
async def run_logs(request: Request, limit: int = 100):
    return [e.to_dict() for e in _engine(request).logs(limit)]


@r_run.delete("/logs")
async def clear_run_logs(request: Request):
    _engine(request).clear_logs()
    return {"status": "cleared"}


@r_run.websocket("/events")
async def run_events(ws: WebSocket):
    """Push every log event and state change as JSON."""
    engine: BroadcastEngine = ws.app.state.engine
    await ws.accept()
    q = engine.subscribe()
    try:
        await ws.send_json({"type": "state", "data": engine.state.to_dict()})
        while True:
            item = await q.get()
            kind = "log" if isinstance(item, LogEvent) else "state"
            await ws.send_json({"type": kind, "data": item.to_dict()})
    except WebSocketDisconnect:
        log.debug("Event subscriber disconnected")
    finally:
        engine.unsubscribe(q)


@r_chains.get("")
def list_chains():
    default = cfg["rpc"]["default_chain"]
    return [
        {"key": key, "name": c.get("name", key), "chain_id": c["chain_id"], "rpc": c["rpc"], "default": key == default}
        for key, c in cfg["chains"].items()
    ]


app.include_router(r_run)
app.include_router(r_chains)
