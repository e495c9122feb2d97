"""Catalog reconciliation endpoints."""

from fastapi import Depends, HTTPException, Query

from obitarchive import schemas
from obitarchive.api import deps
from obitarchive.api.context import ApiContext
from obitarchive.api.router import TrailingSlashRouter
from obitarchive.core.exceptions import ConcurrencyBusyError
from obitarchive.platform.sync.exceptions import SyncFailureError
from obitarchive.platform.sync.reconciler import ReconciliationService

router = TrailingSlashRouter()


@router.post("", response_model=schemas.SyncReport)
async def run_reconciliation(
    prefix: str = Query("", description="Only reconcile keys starting with this prefix"),
    coalesce: bool = Query(True, description="Join a reconciliation already in progress"),
    ctx: ApiContext = Depends(deps.get_context),
    reconciler: ReconciliationService = Depends(deps.get_reconciliation_service),
) -> schemas.SyncReport:
    """Reconcile the image catalog with the object store.

    Returns the report of the run. With ``coalesce`` (the default) a request
    arriving during a run waits for it and returns its report; otherwise it
    gets 409.
    """
    try:
        report = await reconciler.reconcile(prefix=prefix, coalesce=coalesce)
    except ConcurrencyBusyError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except SyncFailureError as e:
        ctx.logger.error(f"Reconciliation aborted: {e}")
        raise HTTPException(status_code=503, detail=str(e)) from e

    ctx.logger.info(
        f"Reconciliation: {report.inserted} inserted, {report.updated} updated, "
        f"{report.evicted} evicted, {len(report.errors)} error(s)"
    )
    return report
