"""
app/main.py
FastAPI application factory and startup configuration.
"""
import logging
from contextlib import asynccontextmanager

import motor.motor_asyncio
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.exceptions import IssuanceError
from app.db.record_store import MongoRecordStore
from app.services.batch_service import BatchService
from app.services.issuance_service import IssuanceService
from app.services.progress import ProgressBroadcaster
from app.services.project_service import ProjectService
from app.storage.blob_store import FileBlobStore

logger = logging.getLogger(__name__)


def wire_services(app: FastAPI, store, blobs, broadcaster=None, issuance: IssuanceService | None = None) -> None:
    """Build the service objects once and hang them on app.state for the routers."""
    broadcaster = broadcaster or ProgressBroadcaster()
    app.state.broadcaster = broadcaster
    app.state.issuance_service = issuance or IssuanceService(store, blobs, broadcaster, settings)
    app.state.batch_service = BatchService(store, blobs, settings)
    app.state.project_service = ProjectService(store, blobs)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and tear down resources on startup/shutdown."""
    logger.info("Connecting to MongoDB...")
    client = motor.motor_asyncio.AsyncIOMotorClient(settings.MONGO_URI)
    store = MongoRecordStore(client[settings.MONGO_DB_NAME])
    await store.ensure_indexes()
    logger.info(f"Connected to MongoDB: {settings.MONGO_DB_NAME}")

    wire_services(app, store, FileBlobStore(settings.UPLOADS_DIR))

    stale = await app.state.issuance_service.reconcile_stale_batches()
    if stale:
        logger.warning(f"Marked {stale} stale processing batches as failed.")

    yield  # App is running

    logger.info("Shutting down: cancelling issuance work and closing MongoDB connection.")
    await app.state.issuance_service.close()
    client.close()


# ── App factory ────────────────────────────────────────────────────────────────
app = FastAPI(
    title="Certificate Issuance Service",
    description="Validate bulk certificate uploads and stamp verification QR codes onto each PDF.",
    version="1.0.0",
    lifespan=lifespan,
)

# ── CORS middleware ────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error handlers ─────────────────────────────────────────────────────────────
@app.exception_handler(IssuanceError)
async def issuance_exception_handler(request: Request, exc: IssuanceError):
    logger.warning(f"{request.method} {request.url.path} rejected: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


# ── Include routers ────────────────────────────────────────────────────────────
from app.api.certificate import router as certificate_router
from app.api.projects import router as projects_router
app.include_router(projects_router)
app.include_router(certificate_router)


# ── Health check ───────────────────────────────────────────────────────────────
@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": "Certificate Issuance"}


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.APP_HOST, port=settings.APP_PORT)
