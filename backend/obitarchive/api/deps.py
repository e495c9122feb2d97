"""Dependencies that are used in the API endpoints."""

import secrets
import uuid
from typing import Optional

from fastapi import Header, HTTPException, Request

from obitarchive.api.context import ApiContext
from obitarchive.core.config import settings
from obitarchive.core.logging import logger
from obitarchive.platform.archive.assembler import ArchiveAssembler
from obitarchive.platform.media.ingestion import IngestionService
from obitarchive.platform.media.service import ImageService
from obitarchive.platform.sync.reconciler import ReconciliationService


async def get_context(
    request: Request,
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> ApiContext:
    """Create the API context for the request.

    When AUTH_ENABLED is set the request must carry the configured key in the
    X-API-Key header; otherwise every caller runs as the system.

    Raises:
        HTTPException: 401 if authentication is enabled and the key is missing or wrong
    """
    request_id = getattr(request.state, "request_id", None) or str(uuid.uuid4())

    if not settings.AUTH_ENABLED:
        auth_method = "system"
    elif x_api_key and secrets.compare_digest(x_api_key, settings.API_KEY or ""):
        auth_method = "api_key"
    else:
        raise HTTPException(status_code=401, detail="No valid authentication provided")

    return ApiContext(
        request_id=request_id,
        auth_method=auth_method,
        logger=logger.with_context(
            request_id=request_id, auth_method=auth_method, context_base="api"
        ),
    )


def _service(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return service


def get_ingestion_service(request: Request) -> IngestionService:
    """Ingestion service built at startup."""
    return _service(request, "ingestion_service")


def get_reconciliation_service(request: Request) -> ReconciliationService:
    """Reconciliation service built at startup."""
    return _service(request, "reconciliation_service")


def get_archive_assembler(request: Request) -> ArchiveAssembler:
    """Archive assembler built at startup."""
    return _service(request, "archive_assembler")


def get_image_service(request: Request) -> ImageService:
    """Image service built at startup."""
    return _service(request, "image_service")
