from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, LOG_LEVEL, validate_production_env

# ERRORS
from utils.errors import DuplicateOperationError, SettlementError
from utils.indexes import ensure_indexes

# ROUTES
from routes.admin import router as admin_router
from routes.settlements import router as settlements_router
from routes.wallets import router as wallets_router
from routes.webhooks import router as webhook_router

# WORKERS
from workers.auto_reject_worker import auto_reject_worker
from workers.outbox_worker import outbox_worker

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="Settlement API",
    version="1.0.0",
    docs_url=None if ENV == "production" else "/docs",
    redoc_url=None if ENV == "production" else "/redoc",
    openapi_url=None if ENV == "production" else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------

allowed_origins = [origin.strip() for origin in CORS_ALLOWED_ORIGINS if origin.strip()]
if not allowed_origins:
    allowed_origins = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# -----------------------------
# ERRORS
# -----------------------------

@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    if isinstance(exc, DuplicateOperationError):
        return JSONResponse(status_code=200, content={"ok": True, "note": exc.message})

    if exc.status_code >= 500:
        logger.error("REQUEST_FAILED path=%s code=%s detail=%s", request.url.path, exc.code, exc.message)

    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )

# -----------------------------
# ROUTES
# -----------------------------

app.include_router(settlements_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(wallets_router, prefix="/api")
app.include_router(webhook_router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():

    return {"status": "ok"}

@app.get("/api/health/db")
async def health_db():
    db = get_db()
    await db.command("ping")
    return {"status": "mongodb connected"}

# -----------------------------
# STARTUP WORKERS (ONE PLACE ONLY)
# -----------------------------

@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())
    asyncio.create_task(auto_reject_worker())
    asyncio.create_task(outbox_worker())
