"""Catalog reconciliation.

Diffs the object store listing against the image catalog and applies inserts,
updates and evictions so the catalog converges on what the store holds. Full
runs also repair each obituary's ``image_names`` from catalog ownership.

Only one run may be active at a time. A full run that arrives while another is
active joins it only when that run is a full run over the same prefix; any
other overlap is rejected with ``ConcurrencyBusyError``.
"""

import asyncio
import mimetypes
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from obitarchive import crud, schemas
from obitarchive.core.config import settings
from obitarchive.core.exceptions import ConcurrencyBusyError
from obitarchive.core.logging import ContextualLogger
from obitarchive.core.logging import logger as default_logger
from obitarchive.db.session import SessionFactory, get_db_context
from obitarchive.db.unit_of_work import UnitOfWork
from obitarchive.platform.media.resolver import resolve_owner
from obitarchive.platform.storage import (
    ObjectInfo,
    StorageBackend,
    StorageNotFoundError,
    with_timeout,
)
from obitarchive.platform.sync.exceptions import AssetProcessingError, SyncFailureError
from obitarchive.platform.sync.lock import RedisLock, SingleFlight
from obitarchive.schemas.sync_report import SyncOperation


class ReconciliationService:
    """Keeps the image catalog consistent with the object store."""

    def __init__(
        self,
        storage: StorageBackend,
        session_factory: SessionFactory = get_db_context,
        image_crud: crud.CRUDImageAsset = crud.image_asset,
        obituary_crud: crud.CRUDObituary = crud.obituary,
        distributed_lock: Optional[RedisLock] = None,
        timeout: float = settings.STORAGE_TIMEOUT_SECONDS,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            storage: Object store to list
            session_factory: Opens a database session
            image_crud: Catalog CRUD
            obituary_crud: Record lookup CRUD
            distributed_lock: Optional cross-instance lock held for each run
            timeout: Deadline for each object store call in seconds
            logger: Optional logger; defaults to the module logger
        """
        self.storage = storage
        self.session_factory = session_factory
        self.image_crud = image_crud
        self.obituary_crud = obituary_crud
        self.distributed_lock = distributed_lock
        self.timeout = timeout
        self.logger = logger or default_logger.with_context(component="reconciliation")
        self._flight = SingleFlight()

    @property
    def busy(self) -> bool:
        """True while a run is active in this process."""
        return self._flight.busy

    async def reconcile(self, prefix: str = "", coalesce: bool = True) -> schemas.SyncReport:
        """Run a full reconciliation.

        Args:
            prefix: Restrict the run to keys starting with this prefix
            coalesce: Join a full run over the same prefix already in progress

        Returns:
            The report of the run that was started or joined

        Raises:
            ConcurrencyBusyError: If a run is active and cannot be joined, including
                any incremental or differently scoped run
            SyncFailureError: If the object listing or catalog load failed
        """
        return await self._flight.run(
            lambda: self._locked(lambda: self._full_run(prefix)),
            coalesce=coalesce,
            kind=("full", prefix),
        )

    async def reconcile_keys(self, keys: Iterable[str]) -> schemas.SyncReport:
        """Reconcile specific keys using ``stat`` instead of a full listing.

        Raises:
            ConcurrencyBusyError: If any run is active
        """
        targets = sorted(set(keys))
        return await self._flight.run(
            lambda: self._locked(lambda: self._keys_run(targets)),
            coalesce=False,
            kind=("keys", tuple(targets)),
        )

    def start_background_run(self) -> "asyncio.Task":
        """Schedule a full run whose failures are logged, not raised."""
        return asyncio.create_task(self._background_run())

    async def _background_run(self) -> None:
        try:
            report = await self.reconcile(coalesce=True)
        except ConcurrencyBusyError as e:
            self.logger.info(f"Background reconciliation skipped: {e}")
        except SyncFailureError as e:
            self.logger.error(f"Background reconciliation failed: {e}")
        except Exception as e:
            self.logger.error(f"Background reconciliation crashed: {e}", exc_info=True)
        else:
            self.logger.info(
                f"Background reconciliation finished with {len(report.errors)} error(s)"
            )

    async def _locked(
        self, run: Callable[[], Awaitable[schemas.SyncReport]]
    ) -> schemas.SyncReport:
        if self.distributed_lock is None:
            return await run()
        async with self.distributed_lock.hold():
            return await run()

    # ------------------------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------------------------

    async def _full_run(self, prefix: str) -> schemas.SyncReport:
        report = self._start_report(prefix)
        log = self.logger.with_context(prefix=prefix or "*")
        log.info("Reconciliation started")

        store = await self._list_store(prefix)
        try:
            async with self.session_factory() as db:
                catalog = await self.image_crud.get_all_by_key(db, prefix)
        except Exception as e:
            raise SyncFailureError(f"Loading the catalog failed: {e}") from e

        only_in_store = sorted(store.keys() - catalog.keys())
        only_in_catalog = sorted(catalog.keys() - store.keys())
        in_both = sorted(store.keys() & catalog.keys())
        log.debug(
            f"Diff: {len(only_in_store)} to insert, {len(only_in_catalog)} to evict, "
            f"{len(in_both)} to compare"
        )

        for key in only_in_store:
            await self._insert(report, store[key])
        for key in only_in_catalog:
            # The row may have been written after the listing was taken
            await self._reconcile_missing(report, catalog[key])
        for key in in_both:
            if store[key].etag != catalog[key].etag:
                await self._update(report, store[key])
            else:
                report.unchanged += 1

        if not prefix:
            await self._relink(report)

        self._finish_report(report)
        log.info(
            f"Reconciliation finished in {report.duration_seconds:.2f}s: "
            f"{report.inserted} inserted ({report.orphaned} orphaned), {report.updated} updated, "
            f"{report.evicted} evicted, {report.relinked} relinked, {len(report.errors)} error(s)"
        )
        return report

    async def _keys_run(self, keys: List[str]) -> schemas.SyncReport:
        report = self._start_report("")
        for key in keys:
            try:
                info: Optional[ObjectInfo] = await with_timeout(
                    self.storage.stat_object(key), self.timeout, f"Stat of {key}"
                )
            except StorageNotFoundError:
                info = None
            except Exception as e:
                self._record(report, key, "stat", e)
                continue

            try:
                async with self.session_factory() as db:
                    entry = await self.image_crud.get_by_key(db, key)
            except Exception as e:
                self._record(report, key, "stat", e)
                continue

            if info is None and entry is not None:
                await self._evict(report, key, entry.reference)
            elif info is not None and entry is None:
                await self._insert(report, info)
            elif info is not None and info.etag != entry.etag:
                await self._update(report, info)
            else:
                report.unchanged += 1

        self._finish_report(report)
        self.logger.info(
            f"Reconciled {len(keys)} key(s): {report.inserted} inserted, {report.updated} "
            f"updated, {report.evicted} evicted, {len(report.errors)} error(s)"
        )
        return report

    async def _reconcile_missing(self, report: schemas.SyncReport, entry) -> None:
        """Evict a catalog row absent from the listing once ``stat`` confirms it is gone."""
        try:
            info = await with_timeout(
                self.storage.stat_object(entry.key), self.timeout, f"Stat of {entry.key}"
            )
        except StorageNotFoundError:
            await self._evict(report, entry.key, entry.reference)
            return
        except Exception as e:
            self._record(report, entry.key, "stat", e)
            return

        if info.etag != entry.etag:
            await self._update(report, info)
        else:
            report.unchanged += 1

    async def _list_store(self, prefix: str) -> Dict[str, ObjectInfo]:
        """Collect the full listing; any failure aborts the run."""
        objects: Dict[str, ObjectInfo] = {}
        iterator = self.storage.list_objects(prefix).__aiter__()
        try:
            while True:
                try:
                    info = await with_timeout(
                        iterator.__anext__(), self.timeout, "Object listing page"
                    )
                except StopAsyncIteration:
                    break
                objects[info.key] = info
        except Exception as e:
            self.logger.error(f"Object listing failed after {len(objects)} key(s): {e}")
            raise SyncFailureError(f"Object listing failed: {e}") from e
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        return objects

    # ------------------------------------------------------------------------------------
    # Per-key operations
    # ------------------------------------------------------------------------------------

    async def _apply(
        self,
        report: schemas.SyncReport,
        key: str,
        operation: SyncOperation,
        action: Callable[[], Awaitable[None]],
    ) -> bool:
        try:
            await action()
        except Exception as e:
            self._record(report, key, operation, e)
            return False
        return True

    def _record(
        self, report: schemas.SyncReport, key: str, operation: SyncOperation, e: Exception
    ) -> None:
        error = AssetProcessingError(f"{operation} of {key} failed: {type(e).__name__} - {e}")
        self.logger.warning(str(error))
        report.record_error(key, operation, e)

    async def _insert(self, report: schemas.SyncReport, info: ObjectInfo) -> None:
        owner: Optional[str] = None

        async def _do() -> None:
            nonlocal owner
            async with self.session_factory() as db:
                async with UnitOfWork(db) as uow:
                    candidate = resolve_owner(info.key)
                    record = None
                    if candidate:
                        record = await self.obituary_crud.get_by_reference(db, candidate)
                    owner = record.reference if record else None
                    await self.image_crud.upsert(
                        db,
                        obj_in=schemas.ImageAssetUpsert(
                            key=info.key,
                            size=info.size,
                            last_modified=info.last_modified,
                            etag=info.etag,
                            content_type=info.content_type or mimetypes.guess_type(info.key)[0],
                            reference=owner,
                        ),
                        uow=uow,
                    )
                    if owner:
                        await self.obituary_crud.append_image_name(
                            db, reference=owner, key=info.key, uow=uow
                        )

        if await self._apply(report, info.key, "insert", _do):
            report.inserted += 1
            if owner is None:
                report.orphaned += 1

    async def _evict(self, report: schemas.SyncReport, key: str, reference: Optional[str]) -> None:
        async def _do() -> None:
            async with self.session_factory() as db:
                async with UnitOfWork(db) as uow:
                    _, owner = await self.image_crud.delete_by_key(db, key=key, uow=uow)
                    owner = owner or reference
                    if owner:
                        await self.obituary_crud.remove_image_name(
                            db, reference=owner, key=key, uow=uow
                        )

        if await self._apply(report, key, "evict", _do):
            report.evicted += 1

    async def _update(self, report: schemas.SyncReport, info: ObjectInfo) -> None:
        async def _do() -> None:
            async with self.session_factory() as db:
                async with UnitOfWork(db) as uow:
                    await self.image_crud.update_fingerprint(
                        db,
                        obj_in=schemas.ImageAssetBase(
                            key=info.key,
                            size=info.size,
                            last_modified=info.last_modified,
                            etag=info.etag,
                            content_type=info.content_type,
                        ),
                        uow=uow,
                    )

        if await self._apply(report, info.key, "update", _do):
            report.updated += 1

    async def _relink(self, report: schemas.SyncReport) -> None:
        """Rewrite every ``image_names`` that disagrees with catalog ownership."""
        try:
            async with self.session_factory() as db:
                owned = await self.image_crud.get_keys_grouped_by_reference(db)
                stored = await self.obituary_crud.get_image_names_by_reference(db)
        except Exception as e:
            self._record(report, "*", "relink", e)
            return

        for reference in sorted(stored):
            expected = owned.get(reference, [])
            if sorted(stored[reference]) == expected:
                continue

            async def _do(reference: str = reference, expected: List[str] = expected) -> None:
                async with self.session_factory() as db:
                    async with UnitOfWork(db) as uow:
                        await self.obituary_crud.set_image_names(
                            db, reference=reference, names=expected, uow=uow
                        )

            if await self._apply(report, reference, "relink", _do):
                report.relinked += 1

    # ------------------------------------------------------------------------------------
    # Report helpers
    # ------------------------------------------------------------------------------------

    @staticmethod
    def _start_report(prefix: str) -> schemas.SyncReport:
        return schemas.SyncReport(prefix=prefix, started_at=datetime.now(timezone.utc))

    @staticmethod
    def _finish_report(report: schemas.SyncReport) -> None:
        report.finished_at = datetime.now(timezone.utc)
        report.duration_seconds = round(
            (report.finished_at - report.started_at).total_seconds(), 3
        )
