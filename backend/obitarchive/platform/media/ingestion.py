"""Image ingestion.

Writes an uploaded image to the object store under bounded retry and then, in
one database transaction, upserts its catalog entry and links it to the owning
obituary. The store write always finishes before the catalog is touched, so
the catalog never points at an object that was never written.
"""

import mimetypes
from dataclasses import dataclass
from typing import Iterable, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from obitarchive import crud, schemas
from obitarchive.core.config import settings
from obitarchive.core.exceptions import IngestionError, InvalidUploadError
from obitarchive.core.logging import ContextualLogger
from obitarchive.core.logging import logger as default_logger
from obitarchive.db.session import SessionFactory, get_db_context
from obitarchive.db.unit_of_work import UnitOfWork
from obitarchive.platform.media.resolver import resolve_owner
from obitarchive.platform.storage import (
    InvalidObjectKeyError,
    ObjectInfo,
    StorageBackend,
    StorageException,
    TransientStoreError,
    validate_key,
    with_timeout,
)


@dataclass
class UploadedImage:
    """A file received from a client, fully read into memory."""

    name: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.content)


class IngestionService:
    """Stores uploaded images and records them in the catalog."""

    def __init__(
        self,
        storage: StorageBackend,
        session_factory: SessionFactory = get_db_context,
        image_crud: crud.CRUDImageAsset = crud.image_asset,
        obituary_crud: crud.CRUDObituary = crud.obituary,
        max_attempts: int = settings.INGEST_MAX_ATTEMPTS,
        backoff_multiplier: float = settings.INGEST_BACKOFF_MULTIPLIER,
        backoff_max: float = settings.INGEST_BACKOFF_MAX,
        timeout: float = settings.STORAGE_TIMEOUT_SECONDS,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the ingestion service.

        Args:
            storage: Object store to write to
            session_factory: Opens a database session
            image_crud: Catalog CRUD
            obituary_crud: Record lookup CRUD
            max_attempts: Store write attempts before giving up
            backoff_multiplier: Exponential backoff multiplier (0 = immediate retries)
            backoff_max: Cap on the wait between attempts in seconds
            timeout: Deadline for each store write in seconds
            logger: Optional logger; defaults to the module logger
        """
        self.storage = storage
        self.session_factory = session_factory
        self.image_crud = image_crud
        self.obituary_crud = obituary_crud
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.logger = logger or default_logger.with_context(component="ingestion")

    @staticmethod
    def _object_key(upload: UploadedImage) -> str:
        """Validate the upload and return the key it will be stored under."""
        raw_name = upload.name or ""
        segments = raw_name.replace("\\", "/").split("/")
        if any(segment.strip() == ".." for segment in segments):
            raise InvalidUploadError(f"Invalid file name: {raw_name!r}")
        key = segments[-1].strip()
        if not key:
            raise InvalidUploadError("File name must not be empty")
        if not upload.content:
            raise InvalidUploadError(f"File {key} is empty")
        try:
            validate_key(key)
        except InvalidObjectKeyError as e:
            raise InvalidUploadError(str(e)) from e
        return key

    async def _store(self, key: str, upload: UploadedImage, log: ContextualLogger) -> ObjectInfo:
        """Write the payload, retrying transient failures only."""
        content_type = (
            upload.content_type or mimetypes.guess_type(key)[0] or "application/octet-stream"
        )
        attempts = 0

        @retry(
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=self.backoff_max),
            reraise=True,
        )
        async def _put() -> ObjectInfo:
            nonlocal attempts
            attempts += 1
            try:
                return await with_timeout(
                    self.storage.put_object(key, upload.content, content_type),
                    self.timeout,
                    f"Upload of {key}",
                )
            except TransientStoreError as e:
                if attempts < self.max_attempts:
                    log.warning(
                        f"Upload attempt {attempts}/{self.max_attempts} failed: "
                        f"{type(e).__name__} - {e}"
                    )
                raise

        try:
            return await _put()
        except StorageException as e:
            log.error(f"Upload failed after {attempts} attempt(s): {type(e).__name__} - {e}")
            raise IngestionError(key, attempts, e) from e

    async def ingest(self, upload: UploadedImage) -> schemas.ImageAsset:
        """Store one image and record it in the catalog.

        Args:
            upload: The uploaded file

        Returns:
            The catalog entry for the stored object

        Raises:
            InvalidUploadError: If the file has no name or no content
            IngestionError: If the store write failed on every attempt
        """
        key = self._object_key(upload)
        log = self.logger.with_context(key=key)

        info = await self._store(key, upload, log)

        candidate = resolve_owner(key)
        async with self.session_factory() as db:
            async with UnitOfWork(db) as uow:
                record = None
                if candidate:
                    record = await self.obituary_crud.get_by_reference(db, candidate)
                owner = record.reference if record else None

                asset = await self.image_crud.upsert(
                    db,
                    obj_in=schemas.ImageAssetUpsert(
                        key=info.key,
                        size=info.size,
                        last_modified=info.last_modified,
                        etag=info.etag,
                        content_type=info.content_type or upload.content_type,
                        reference=owner,
                    ),
                    uow=uow,
                )
                if owner:
                    await self.obituary_crud.append_image_name(
                        db, reference=owner, key=key, uow=uow
                    )

        if owner:
            log.info(f"Stored image for obituary {owner}")
        else:
            log.info("Stored image with no matching obituary")
        return schemas.ImageAsset.model_validate(asset)

    async def ingest_many(self, uploads: Iterable[UploadedImage]) -> schemas.IngestBatchResult:
        """Ingest a batch one file at a time; a failed file does not stop the rest."""
        result = schemas.IngestBatchResult()
        for upload in uploads:
            try:
                result.uploaded.append(await self.ingest(upload))
            except InvalidUploadError as e:
                result.failed.append(
                    schemas.IngestFailure(name=upload.name or "", error=str(e), kind="invalid")
                )
            except IngestionError as e:
                result.failed.append(schemas.IngestFailure(name=upload.name or "", error=str(e)))
            except Exception as e:
                self.logger.error(f"Unexpected error ingesting {upload.name}: {e}", exc_info=True)
                result.failed.append(schemas.IngestFailure(name=upload.name or "", error=str(e)))

        self.logger.info(
            f"Ingested batch: {len(result.uploaded)} uploaded, {len(result.failed)} failed"
        )
        return result
