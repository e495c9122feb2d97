"""Obituary archive download endpoint."""

from fastapi import Depends, HTTPException
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from obitarchive.api import deps
from obitarchive.api.context import ApiContext
from obitarchive.api.router import TrailingSlashRouter
from obitarchive.core.exceptions import NoContentError
from obitarchive.platform.archive.assembler import ArchiveAssembler

router = TrailingSlashRouter()


@router.get("/{reference}")
async def download_archive(
    reference: str,
    ctx: ApiContext = Depends(deps.get_context),
    assembler: ArchiveAssembler = Depends(deps.get_archive_assembler),
) -> StreamingResponse:
    """Download the report and every image of an obituary as one zip.

    Inputs that cannot be fetched are left out; the request fails with 404
    only when nothing at all is available.
    """
    try:
        stream = await assembler.open(reference)
    except NoContentError as e:
        ctx.logger.warning(f"No files available for {reference}")
        raise HTTPException(
            status_code=404, detail="No files available for this reference"
        ) from e

    return StreamingResponse(
        stream,
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="{stream.filename}"',
            "Cache-Control": "no-store",
        },
        background=BackgroundTask(stream.aclose),
    )
