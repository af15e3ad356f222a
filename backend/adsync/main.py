"""
Ad Platform Sync — FastAPI Backend
Connects users' ad platform accounts, manages their campaigns through the
platform API, and keeps local campaign documents reconciled with remote state.
All data persisted to PostgreSQL.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from adsync.config import get_settings
from adsync.database import init_db, check_db_connection
from adsync.errors import ClassifiedError, validation_error
from adsync.routers import accounts, campaigns

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Ad Platform Sync...")
    try:
        await init_db()
        logger.info("Database initialized — all tables ready.")
    except Exception as e:
        logger.error(f"Startup failed (DB/init): {e}", exc_info=True)
        # Still yield so app can serve /api/health (degraded) and logs are visible
    yield
    logger.info("Shutting down...")


app = FastAPI(
    title="Ad Platform Sync",
    description="Connected-account sync and campaign reconciliation for the ad platform",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(error: ClassifiedError) -> JSONResponse:
    body = {"code": error.code.value, "message": error.message}
    if error.details is not None:
        body["details"] = error.details
    return JSONResponse(status_code=error.status_code, content={"success": False, "error": body})


@app.exception_handler(ClassifiedError)
async def classified_error_handler(request: Request, exc: ClassifiedError):
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return _error_response(validation_error("Invalid request data", errors))


# ── Register Routers ─────────────────────────────────────────────────
app.include_router(accounts.router, prefix="/api/platform", tags=["Platform Accounts"])
app.include_router(campaigns.router, prefix="/api/platform", tags=["Platform Campaigns"])


@app.get("/api/health")
async def health_check():
    db_ok = await check_db_connection()
    return {
        "status": "healthy" if db_ok else "degraded",
        "service": "Ad Platform Sync",
        "database": "connected" if db_ok else "disconnected",
    }
