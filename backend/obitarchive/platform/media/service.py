"""Catalog-backed image operations for the admin image table."""

import mimetypes
import posixpath
from typing import Optional, Tuple
from urllib.parse import quote

from obitarchive import crud, schemas
from obitarchive.core.config import settings
from obitarchive.core.exceptions import ConcurrencyBusyError, NotFoundException
from obitarchive.core.logging import ContextualLogger
from obitarchive.core.logging import logger as default_logger
from obitarchive.db.session import SessionFactory, get_db_context
from obitarchive.platform.storage import (
    InvalidObjectKeyError,
    ObjectInfo,
    StorageBackend,
    StorageNotFoundError,
    validate_key,
    with_timeout,
)
from obitarchive.platform.sync.reconciler import ReconciliationService


class ImageService:
    """List, fetch, rename and delete stored images.

    Mutations go to the object store only; the catalog follows through an
    incremental reconciliation of the touched keys.
    """

    def __init__(
        self,
        storage: StorageBackend,
        reconciler: ReconciliationService,
        session_factory: SessionFactory = get_db_context,
        image_crud: crud.CRUDImageAsset = crud.image_asset,
        timeout: float = settings.STORAGE_TIMEOUT_SECONDS,
        url_ttl: int = settings.PRESIGNED_URL_TTL_SECONDS,
        api_prefix: str = "/api/v1",
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the image service."""
        self.storage = storage
        self.reconciler = reconciler
        self.session_factory = session_factory
        self.image_crud = image_crud
        self.timeout = timeout
        self.url_ttl = url_ttl
        self.api_prefix = api_prefix
        self.logger = logger or default_logger.with_context(component="images")

    async def list_images(
        self, search: str = "", sort_by: str = "name", page: int = 1, limit: int = 5
    ) -> schemas.ImageListResponse:
        """Return one page of catalog entries.

        Args:
            search: Case-insensitive substring of the key
            sort_by: "name" or "last_modified" (most recent first)
            page: 1-based page number
            limit: Page size

        Returns:
            The page and the total number of matches
        """
        async with self.session_factory() as db:
            rows, total = await self.image_crud.list_page(
                db, search=search, sort_by=sort_by, skip=(page - 1) * limit, limit=limit
            )
        return schemas.ImageListResponse(
            images=[schemas.ImageAsset.model_validate(row) for row in rows],
            total=total,
            page=page,
            limit=limit,
            sort_by=sort_by,
        )

    async def _stat(self, key: str) -> ObjectInfo:
        try:
            return await with_timeout(self.storage.stat_object(key), self.timeout, f"Stat of {key}")
        except StorageNotFoundError as e:
            raise NotFoundException(f"Image {key} not found") from e

    async def download(self, key: str) -> Tuple[ObjectInfo, bytes]:
        """Return an image's metadata and bytes.

        Raises:
            NotFoundException: If the object does not exist
        """
        info = await self._stat(key)
        try:
            data = await with_timeout(self.storage.get_object(key), self.timeout, f"Read of {key}")
        except StorageNotFoundError as e:
            raise NotFoundException(f"Image {key} not found") from e
        return info, data

    @staticmethod
    def media_type(info: ObjectInfo) -> str:
        """Content type to serve an object with."""
        return info.content_type or mimetypes.guess_type(info.key)[0] or "application/octet-stream"

    async def exists(self, filename: str) -> bool:
        """Check whether any stored object has the same stem as ``filename``.

        ``AB123456_1.png`` matches a stored ``AB123456_1.jpg``.
        """
        stem = posixpath.splitext(posixpath.basename(filename))[0]
        if not stem:
            return False
        listing = self.storage.list_objects(stem).__aiter__()
        try:
            while True:
                try:
                    info = await with_timeout(
                        listing.__anext__(), self.timeout, f"Listing of {stem}"
                    )
                except StopAsyncIteration:
                    return False
                if posixpath.splitext(posixpath.basename(info.key))[0] == stem:
                    return True
        finally:
            aclose = getattr(listing, "aclose", None)
            if aclose is not None:
                await aclose()

    async def url(self, key: str) -> schemas.ImageUrlResponse:
        """Return a URL for viewing an image.

        A presigned URL when the store supports one, else the API download path.
        """
        await self._stat(key)
        presigned = await with_timeout(
            self.storage.presigned_url(key, self.url_ttl), self.timeout, f"Presign of {key}"
        )
        if presigned:
            return schemas.ImageUrlResponse(key=key, url=presigned, expires_in=self.url_ttl)
        return schemas.ImageUrlResponse(
            key=key, url=f"{self.api_prefix}/images/{quote(key, safe='')}/download"
        )

    async def delete(self, key: str) -> Optional[schemas.SyncReport]:
        """Delete an image from the store and reconcile its catalog entry.

        Raises:
            NotFoundException: If the object does not exist
        """
        await self._stat(key)
        await with_timeout(self.storage.delete_object(key), self.timeout, f"Delete of {key}")
        self.logger.info(f"Deleted image {key}")
        return await self._reconcile(key)

    async def rename(self, key: str, new_key: str) -> Optional[schemas.SyncReport]:
        """Rename an image by copying it to ``new_key`` and deleting the original.

        Raises:
            NotFoundException: If the object does not exist
            InvalidObjectKeyError: If ``new_key`` is not a valid key or equals ``key``
        """
        validate_key(new_key)
        if new_key == key:
            raise InvalidObjectKeyError("New name must differ from the current name")
        await self._stat(key)
        await with_timeout(
            self.storage.copy_object(key, new_key), self.timeout, f"Copy of {key}"
        )
        await with_timeout(self.storage.delete_object(key), self.timeout, f"Delete of {key}")
        self.logger.info(f"Renamed image {key} to {new_key}")
        return await self._reconcile(key, new_key)

    async def _reconcile(self, *keys: str) -> Optional[schemas.SyncReport]:
        try:
            return await self.reconciler.reconcile_keys(keys)
        except ConcurrencyBusyError:
            self.logger.info(
                f"Reconciliation busy; catalog update for {', '.join(keys)} "
                "deferred to the next full run"
            )
            return None
