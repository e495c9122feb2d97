"""API routes."""

from obitarchive.api.router import TrailingSlashRouter
from obitarchive.api.v1.endpoints import archives, images, sync

api_router = TrailingSlashRouter()
api_router.include_router(images.router, prefix="/images", tags=["images"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(archives.router, prefix="/archives", tags=["archives"])
