import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from oae.config import settings
from oae.core.errors import OAEError
from oae.core.log import setup_logging
from oae.database import AsyncSessionLocal
from oae.engine import OnchainActivityEngine
from oae.routers import addresses, rules, payouts, deposits, security, admin

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.LOG_LEVEL)
    engine = getattr(app.state, "engine", None)
    owned = engine is None
    if owned:
        engine = OnchainActivityEngine.from_settings(settings, AsyncSessionLocal)
        app.state.engine = engine
        await engine.start()
    yield
    if owned:
        await engine.stop()
        app.state.engine = None

app = FastAPI(title="Onchain Activity Engine", lifespan=lifespan)

_cors_origins_env = os.environ.get("CORS_ORIGINS", "")
_allowed_origins = [o.strip() for o in _cors_origins_env.split(",") if o.strip()] or ["http://localhost:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(OAEError)
async def oae_error_handler(request: Request, exc: OAEError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

app.include_router(addresses.router)
app.include_router(rules.router)
app.include_router(payouts.router)
app.include_router(deposits.router)
app.include_router(security.router)
app.include_router(admin.router)

@app.get("/health")
async def health(request: Request):
    engine = getattr(request.app.state, "engine", None)
    return {
        "status": "ok",
        "engine": "running" if engine is not None and engine.running else "stopped",
        "chains": sorted(engine.adapters) if engine is not None else [],
    }
