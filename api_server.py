"""
evotrader API Server
FastAPI surface for the external scheduler: one POST per operation, plus status and health
"""
from datetime import datetime, timezone
from typing import Literal, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from config.settings import Settings
from evotrader import __version__
from evotrader.errors import EvoTraderError
from evotrader.execution.live_safety import LiveOrderRequest
from evotrader.logging_setup import setup_logging
from evotrader.runtime import Services, build_store

load_dotenv()

settings_instance = Settings.load()
_services: Optional[Services] = None


def get_services() -> Services:
    """Lazily bind the services to the configured ledger store"""
    global _services
    if _services is None:
        try:
            _services = Services(store=build_store(settings_instance), settings=settings_instance)
        except EvoTraderError as e:
            logger.error(f"Ledger store unavailable: {e}")
            raise HTTPException(status_code=503, detail=str(e))
    return _services


app = FastAPI(
    title="evotrader API",
    description="Scheduler-facing control surface for the evotrader population",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings_instance.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Request models ---

class ArmRequest(BaseModel):
    duration_minutes: Optional[float] = None


class DisarmRequest(BaseModel):
    reason: str = "manual"


class ControlAction(BaseModel):
    action: Literal["start", "pause", "stop"]
    reason: Optional[str] = None


class LossReactionAction(BaseModel):
    action: Literal["reset", "clear-cooldown"]
    reason: str = "manual"


class LiveExecuteBody(BaseModel):
    symbol: str
    side: Literal["buy", "sell"]
    qty: float = 0.0
    quote_usd: Optional[float] = None
    arm_session_id: Optional[str] = None
    request_id: Optional[str] = None
    agent_id: Optional[str] = None
    generation_id: Optional[str] = None
    tags: dict = Field(default_factory=dict)


async def _guarded(label: str, coro):
    try:
        return await coro
    except EvoTraderError as e:
        logger.error(f"{label} failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))


# --- API Endpoints ---

@app.get("/health")
async def health():
    return {"ok": True, "version": __version__, "time": datetime.now(timezone.utc).isoformat()}


@app.get("/status")
async def get_status(services: Services = Depends(get_services)):
    """Current system state, active generation and config document"""
    return {"ok": True, **(await _guarded("status", services.status()))}


@app.post("/cycle")
async def run_cycle(services: Services = Depends(get_services)):
    result = await _guarded("cycle", services.orchestrator().run())
    return result.to_dict()


@app.post("/fitness")
async def run_fitness(services: Services = Depends(get_services)):
    result = await _guarded("fitness", services.fitness().run())
    return result.to_dict()


@app.post("/lifecycle")
async def run_lifecycle(services: Services = Depends(get_services)):
    result = await _guarded("lifecycle", services.lifecycle().run())
    return result.to_dict()


@app.post("/shadow-outcomes")
async def run_shadow_outcomes(services: Services = Depends(get_services)):
    result = await _guarded("shadow outcomes", services.shadow().run())
    return result.to_dict()


@app.post("/arm")
async def arm_live(body: ArmRequest, services: Services = Depends(get_services)):
    result = await _guarded("arm", services.arm().arm(body.duration_minutes))
    return JSONResponse(status_code=200 if result.ok else 403, content=result.to_dict())


@app.post("/disarm")
async def disarm_live(body: Optional[DisarmRequest] = None, services: Services = Depends(get_services)):
    reason = body.reason if body else "manual"
    result = await _guarded("disarm", services.arm().disarm(reason))
    return result.to_dict()


@app.post("/live-execute")
async def live_execute(body: LiveExecuteBody, services: Services = Depends(get_services)):
    """Walk the live safety chain; blocks map to 403, a consumed canary to 409"""
    request = LiveOrderRequest.from_dict(body.model_dump())
    result = await services.live_chain().execute(request)
    return JSONResponse(status_code=result.http_status, content=result.to_dict())


@app.post("/control")
async def control_system(action: ControlAction, services: Services = Depends(get_services)):
    result = await _guarded("control", services.controls().apply(action.action, action.reason))
    logger.info(f"Received {action.action.upper()} command: {'ok' if result.ok else result.reason}")
    return JSONResponse(status_code=200 if result.ok else 409, content=result.to_dict())


@app.post("/loss-reaction")
async def loss_reaction(body: LossReactionAction, services: Services = Depends(get_services)):
    return await _guarded("loss-reaction", services.loss_reaction_action(body.action, body.reason))

if __name__ == "__main__":
    setup_logging(settings_instance)
    logger.info(f"Starting evotrader API on http://{settings_instance.api.host}:{settings_instance.api.port}")
    uvicorn.run(
        "api_server:app",
        host=settings_instance.api.host,
        port=settings_instance.api.port,
        reload=False,
        log_level=settings_instance.logging.log_level.lower(),
    )
