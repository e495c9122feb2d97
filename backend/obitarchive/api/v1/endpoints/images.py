"""Image upload and administration endpoints."""

from typing import List, Literal, Optional

from fastapi import Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import JSONResponse, Response

from obitarchive import schemas
from obitarchive.api import deps
from obitarchive.api.context import ApiContext
from obitarchive.api.router import TrailingSlashRouter
from obitarchive.core.exceptions import NotFoundException
from obitarchive.platform.media.ingestion import IngestionService, UploadedImage
from obitarchive.platform.media.service import ImageService
from obitarchive.platform.storage import InvalidObjectKeyError, StorageException

router = TrailingSlashRouter()


@router.post("/upload", response_model=schemas.IngestBatchResult)
async def upload_images(
    files: List[UploadFile] = File(..., description="Images to upload"),
    ctx: ApiContext = Depends(deps.get_context),
    ingestion: IngestionService = Depends(deps.get_ingestion_service),
):
    """Upload one or more images.

    Each file is stored under its own name and linked to the obituary whose
    reference prefixes the name. Files are processed independently: the
    response lists both the stored and the failed files, with status 500 when
    any upload failed and 400 when every file was rejected as invalid.
    """
    if not files:
        raise HTTPException(status_code=400, detail="No files provided")

    uploads = []
    for file in files:
        uploads.append(
            UploadedImage(
                name=file.filename or "",
                content=await file.read(),
                content_type=file.content_type,
            )
        )

    result = await ingestion.ingest_many(uploads)
    if not result.failed:
        ctx.logger.info(f"Uploaded {len(result.uploaded)} image(s)")
        return result

    ctx.logger.warning(
        f"Upload finished with {len(result.failed)} failure(s): "
        + "; ".join(f"{f.name}: {f.error}" for f in result.failed)
    )
    all_invalid = not result.uploaded and all(f.kind == "invalid" for f in result.failed)
    return JSONResponse(
        status_code=400 if all_invalid else 500,
        content=result.model_dump(mode="json"),
    )


@router.get("", response_model=schemas.ImageListResponse)
async def list_images(
    search: str = Query("", description="Case-insensitive substring of the image name"),
    sort_by: Literal["name", "last_modified"] = Query("name"),
    page: int = Query(1, ge=1),
    limit: int = Query(5, ge=1, le=100),
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> schemas.ImageListResponse:
    """List catalogued images, searched, sorted and paginated."""
    return await images.list_images(search=search, sort_by=sort_by, page=page, limit=limit)


@router.get("/exists", response_model=schemas.FileExistsResponse)
async def image_exists(
    filename: Optional[str] = Query(None, description="File name to check; extension is ignored"),
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> schemas.FileExistsResponse:
    """Check whether an image with the same name (ignoring extension) is stored."""
    if not filename:
        raise HTTPException(status_code=400, detail="Filename is required")
    try:
        exists = await images.exists(filename)
    except StorageException as e:
        ctx.logger.error(f"Existence check for {filename} failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to check file existence") from e
    return schemas.FileExistsResponse(filename=filename, exists=exists)


@router.get("/{key:path}/download")
async def download_image(
    key: str,
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> Response:
    """Return a stored image with its content type."""
    try:
        info, data = await images.download(key)
    except NotFoundException as e:
        raise HTTPException(status_code=404, detail="Image not found") from e
    except StorageException as e:
        ctx.logger.error(f"Download of {key} failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to fetch image") from e

    return Response(
        content=data,
        media_type=images.media_type(info),
        headers={"Cache-Control": "private, max-age=3600", "ETag": f'"{info.etag}"'},
    )


@router.get("/{key:path}/url", response_model=schemas.ImageUrlResponse)
async def get_image_url(
    key: str,
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> schemas.ImageUrlResponse:
    """Return a URL for viewing an image."""
    try:
        return await images.url(key)
    except NotFoundException as e:
        raise HTTPException(status_code=404, detail="Image not found") from e
    except StorageException as e:
        ctx.logger.error(f"URL for {key} failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to get image URL") from e


@router.post("/{key:path}/rename", response_model=Optional[schemas.SyncReport])
async def rename_image(
    key: str,
    body: schemas.RenameImageRequest,
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> Optional[schemas.SyncReport]:
    """Rename an image and update the catalog.

    Returns the reconciliation report of the two keys, or null when the
    catalog update was deferred because a reconciliation is running.
    """
    try:
        return await images.rename(key, body.new_key)
    except NotFoundException as e:
        raise HTTPException(status_code=404, detail="Image not found") from e
    except InvalidObjectKeyError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except StorageException as e:
        ctx.logger.error(f"Rename of {key} failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to rename image") from e


@router.delete("/{key:path}", response_model=Optional[schemas.SyncReport])
async def delete_image(
    key: str,
    ctx: ApiContext = Depends(deps.get_context),
    images: ImageService = Depends(deps.get_image_service),
) -> Optional[schemas.SyncReport]:
    """Delete an image and evict it from the catalog."""
    try:
        return await images.delete(key)
    except NotFoundException as e:
        raise HTTPException(status_code=404, detail="Image not found") from e
    except StorageException as e:
        ctx.logger.error(f"Delete of {key} failed: {e}")
        raise HTTPException(status_code=502, detail="Failed to delete image") from e
