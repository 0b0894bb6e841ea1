from dotenv import load_dotenv
load_dotenv()

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database import get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, validate_production_env

# INDEXES
from utils.indexes import ensure_indexes
from utils.order_hooks import drain_order_hooks

# WORKERS
from workers.reconciliation_worker import reconciliation_worker
from workers.wallet_audit_worker import wallet_audit_worker

logger = logging.getLogger(__name__)

validate_production_env()
logger.info("ENV: %s", ENV)

app = FastAPI(
    title="Marketplace Settlement Core",
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
    allow_methods=["GET"],
    allow_headers=["*"],
)

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

_background_tasks = set()


@app.on_event("startup")
async def start_background_workers():
    await ensure_indexes(get_db())

    for worker in (reconciliation_worker, wallet_audit_worker):
        task = asyncio.create_task(worker())
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


@app.on_event("shutdown")
async def stop_background_workers():
    for task in list(_background_tasks):
        task.cancel()
    await drain_order_hooks()
