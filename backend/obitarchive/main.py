"""Main module of the obituary archive backend.

Run with: uvicorn obitarchive.main:app
"""

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from obitarchive.api.v1.api import api_router
from obitarchive.core.config import settings
from obitarchive.core.exceptions import (
    ConcurrencyBusyError,
    InvalidUploadError,
    NotFoundException,
)
from obitarchive.core.logging import logger
from obitarchive.core.redis_client import redis_client
from obitarchive.platform.archive.assembler import ArchiveAssembler
from obitarchive.platform.documents import HttpDocumentGenerator
from obitarchive.platform.media.ingestion import IngestionService
from obitarchive.platform.media.service import ImageService
from obitarchive.platform.storage import InvalidObjectKeyError, get_storage_backend
from obitarchive.platform.sync.lock import RedisLock
from obitarchive.platform.sync.reconciler import ReconciliationService

API_PREFIX = "/api/v1"
RECONCILE_LOCK_NAME = "obitarchive:reconcile"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the storage backend and services, and run the startup reconciliation."""
    storage = get_storage_backend()
    document_generator = HttpDocumentGenerator()

    distributed_lock = None
    if settings.RECONCILE_DISTRIBUTED_LOCK:
        distributed_lock = RedisLock(
            redis_client, RECONCILE_LOCK_NAME, settings.RECONCILE_LOCK_TTL_SECONDS
        )

    reconciler = ReconciliationService(storage, distributed_lock=distributed_lock)
    app.state.storage = storage
    app.state.reconciliation_service = reconciler
    app.state.ingestion_service = IngestionService(storage)
    app.state.archive_assembler = ArchiveAssembler(storage, document_generator)
    app.state.image_service = ImageService(storage, reconciler, api_prefix=API_PREFIX)

    startup_run = None
    if settings.RECONCILE_ON_STARTUP:
        logger.info("Scheduling startup reconciliation")
        startup_run = reconciler.start_background_run()

    yield

    if startup_run is not None and not startup_run.done():
        startup_run.cancel()
    await document_generator.close()
    await storage.close()
    await redis_client.close()


app = FastAPI(
    title="Obituary Archive",
    openapi_url=f"{API_PREFIX}/openapi.json",
    lifespan=lifespan,
)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Attach a request id to the request state and the response headers."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(NotFoundException)
async def not_found_exception_handler(request: Request, exc: NotFoundException) -> JSONResponse:
    """Return 404 for missing records and images."""
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConcurrencyBusyError)
async def busy_exception_handler(request: Request, exc: ConcurrencyBusyError) -> JSONResponse:
    """Return 409 while a reconciliation holds the token."""
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(InvalidUploadError)
@app.exception_handler(InvalidObjectKeyError)
async def invalid_input_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Return 400 for rejected file names and keys."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.get("/health")
async def health() -> dict:
    """Liveness check."""
    return {"status": "healthy"}


app.include_router(api_router, prefix=API_PREFIX)
