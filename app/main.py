# app/main.py
"""
FastAPI application entry point.
Includes security middleware, global error handlers, all routers, and the
job orchestrator lifecycle.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from app.routers import uploads, jobs, sessions, orphans, zones, health
from app.database import SessionLocal, create_tables
from app.config import settings
from app.exceptions import InvalidPairing, ZoneConfigError
from app.pipeline import build_pipeline
from app.utils.logger import get_logger
import time

logger = get_logger(__name__)

app = FastAPI(
    title="LPR Session Reconciliation API",
    description="Pairs licence-plate IN/OUT reads into parking sessions.",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS (allow dashboards on the same network to call the API) ─────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],   # Restrict to dashboard origin in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API Key Middleware ───────────────────────────────────────────────────────
class APIKeyMiddleware(BaseHTTPMiddleware):
    """
    Optional lightweight API key auth.
    Health check and docs stay open so load balancers can probe the service.
    Set API_KEY in .env. Leave empty to disable auth.
    """
    open_paths = {"/api/v1/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.open_paths or not settings.API_KEY:
            return await call_next(request)

        api_key = request.headers.get("X-API-Key") or request.query_params.get("api_key")
        if api_key != settings.API_KEY:
            return JSONResponse(
                status_code=status.HTTP_401_UNAUTHORIZED,
                content={"detail": "Invalid or missing API key"},
            )
        return await call_next(request)


if settings.API_KEY:
    app.add_middleware(APIKeyMiddleware)


# ── Request Timing Middleware ────────────────────────────────────────────────
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 2)
    logger.debug(f"{request.method} {request.url.path} → {response.status_code} ({duration}ms)")
    return response


# ── Exception Handlers ───────────────────────────────────────────────────────
@app.exception_handler(ZoneConfigError)
async def zone_config_error_handler(request: Request, exc: ZoneConfigError):
    logger.error(f"Zone config error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": str(exc), "zone_id": exc.zone_id},
    )


@app.exception_handler(InvalidPairing)
async def invalid_pairing_handler(request: Request, exc: InvalidPairing):
    logger.error(f"Invalid pairing on {request.url.path}: {exc}")
    return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error"},
    )


# ── Routers ──────────────────────────────────────────────────────────────────
app.include_router(uploads.router,  prefix="/api/v1", tags=["📥 Uploads"])
app.include_router(jobs.router,     prefix="/api/v1", tags=["⚙️  Jobs"])
app.include_router(sessions.router, prefix="/api/v1", tags=["🅿️  Sessions"])
app.include_router(orphans.router,  prefix="/api/v1", tags=["❓ Orphans"])
app.include_router(zones.router,    prefix="/api/v1", tags=["🗺️  Zones"])
app.include_router(health.router,   prefix="/api/v1", tags=["💚 Health"])


# ── Startup ───────────────────────────────────────────────────────────────────
@app.on_event("startup")
async def startup():
    logger.info("🚀 Reconciliation backend starting up...")
    create_tables()
    logger.info("✅ Database tables ready")

    app.state.pipeline = build_pipeline(SessionLocal, settings)
    if settings.ORCHESTRATOR_AUTOSTART:
        app.state.pipeline.orchestrator.start()
        logger.info("⚙️  Job orchestrator started")
    logger.info(f"🌐 Listening on http://{settings.BACKEND_HOST}:{settings.BACKEND_PORT}")
    logger.info("📖 API docs at /docs")


@app.on_event("shutdown")
async def shutdown():
    logger.info("🛑 Reconciliation backend shutting down...")
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        await pipeline.orchestrator.stop()
