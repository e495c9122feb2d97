"""Tests for ReconciliationService."""

import asyncio
import hashlib
from contextlib import asynccontextmanager
from unittest.mock import MagicMock

import pytest

from obitarchive.core.exceptions import ConcurrencyBusyError
from obitarchive.platform.storage import StorageConnectionError
from obitarchive.platform.sync.exceptions import SyncFailureError
from obitarchive.platform.sync.reconciler import ReconciliationService


def _etag(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@pytest.fixture
def make_service(storage, session_factory, image_crud, obituary_crud):
    """Build a reconciliation service over the shared fakes."""

    def _make(store=None, distributed_lock=None):
        return ReconciliationService(
            store or storage,
            session_factory=session_factory,
            image_crud=image_crud,
            obituary_crud=obituary_crud,
            distributed_lock=distributed_lock,
            timeout=5,
            logger=MagicMock(),
        )

    return _make


@pytest.fixture
def drifted(storage, image_crud, obituary_crud):
    """Store and catalog that disagree in every possible way.

    - AB123456_1.jpg is stored but not catalogued
    - ZZ000000_1.jpg is stored, not catalogued and matches no obituary
    - AB123456_9.jpg is catalogued but gone from the store
    - CD987654_1.jpg changed in the store
    - CD987654_2.jpg is in sync, but CD987654 does not list either image
    """
    storage.add("AB123456_1.jpg", b"new")
    storage.add("ZZ000000_1.jpg", b"orphan")
    storage.add("CD987654_1.jpg", b"changed")
    storage.add("CD987654_2.jpg", b"same")

    image_crud.add("AB123456_9.jpg", etag="gone", reference="AB123456")
    image_crud.add("CD987654_1.jpg", etag="stale", reference="CD987654")
    image_crud.add("CD987654_2.jpg", etag=_etag(b"same"), reference="CD987654")

    obituary_crud.records["AB123456"].image_names = ["AB123456_9.jpg"]


@pytest.mark.asyncio
async def test_full_run_converges(make_service, drifted, storage, image_crud, obituary_crud):
    """After a full run the catalog mirrors the store and image_names follow ownership."""
    report = await make_service().reconcile()

    assert report.inserted == 2
    assert report.orphaned == 1
    assert report.evicted == 1
    assert report.updated == 1
    assert report.unchanged == 1
    assert report.relinked == 1
    assert report.errors == []
    assert report.finished_at is not None

    assert sorted(image_crud.rows) == sorted(storage.objects)
    assert image_crud.rows["CD987654_1.jpg"].etag == _etag(b"changed")
    assert image_crud.rows["ZZ000000_1.jpg"].reference is None
    assert obituary_crud.names("AB123456") == ["AB123456_1.jpg"]
    assert obituary_crud.names("CD987654") == ["CD987654_1.jpg", "CD987654_2.jpg"]


@pytest.mark.asyncio
async def test_second_run_is_a_no_op(make_service, drifted):
    """Running again on a converged catalog changes nothing."""
    service = make_service()
    await service.reconcile()

    report = await service.reconcile()

    assert report.changed == 0
    assert report.relinked == 0
    assert report.unchanged == 4


@pytest.mark.asyncio
async def test_prefix_run_only_touches_matching_keys(make_service, drifted, image_crud):
    """A prefixed run leaves other keys and image_names alone."""
    report = await make_service().reconcile(prefix="AB")

    assert report.prefix == "AB"
    assert report.inserted == 1
    assert report.evicted == 1
    assert report.updated == 0
    assert report.relinked == 0
    assert image_crud.rows["CD987654_1.jpg"].etag == "stale"
    assert "ZZ000000_1.jpg" not in image_crud.rows


@pytest.mark.asyncio
async def test_per_key_errors_are_collected(make_service, drifted, image_crud):
    """A failing key is reported and the run continues with the others."""
    image_crud.fail_keys["AB123456_1.jpg"] = RuntimeError("constraint violated")

    report = await make_service().reconcile()

    assert [(e.key, e.operation) for e in report.errors] == [("AB123456_1.jpg", "insert")]
    assert "constraint violated" in report.errors[0].error
    assert report.inserted == 1
    assert report.evicted == 1
    assert "AB123456_1.jpg" not in image_crud.rows


@pytest.mark.asyncio
async def test_listing_failure_aborts_without_evicting(make_service, drifted, storage, image_crud):
    """A partial listing must never be mistaken for the full store."""
    storage.list_error = StorageConnectionError("connection reset")
    storage.list_error_after = 1

    with pytest.raises(SyncFailureError):
        await make_service().reconcile()

    assert "AB123456_9.jpg" in image_crud.rows
    assert "CD987654_2.jpg" in image_crud.rows


@pytest.mark.asyncio
async def test_catalog_load_failure_aborts(make_service, drifted, image_crud):
    """The run fails when the catalog cannot be read."""
    image_crud.load_error = RuntimeError("db unavailable")

    with pytest.raises(SyncFailureError):
        await make_service().reconcile()


class _GatedStorage:
    """Wraps a store so listing blocks until the gate opens."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def list_objects(self, prefix=""):
        await self.gate.wait()
        async for info in self.inner.list_objects(prefix):
            yield info


async def _wait_until_busy(service):
    while not service.busy:
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_concurrent_full_runs_coalesce(make_service, drifted, storage):
    """A second caller joins the running run and receives the same report."""
    gated = _GatedStorage(storage)
    service = make_service(store=gated)

    first = asyncio.create_task(service.reconcile())
    await _wait_until_busy(service)
    second = asyncio.create_task(service.reconcile(coalesce=True))
    await asyncio.sleep(0)
    gated.gate.set()

    first_report, second_report = await asyncio.gather(first, second)

    assert first_report is second_report
    assert first_report.inserted == 2
    assert not service.busy


@pytest.mark.asyncio
async def test_busy_runs_are_rejected(make_service, drifted, storage):
    """Non-coalescing and incremental runs are rejected while a run is active."""
    gated = _GatedStorage(storage)
    service = make_service(store=gated)

    running = asyncio.create_task(service.reconcile())
    await _wait_until_busy(service)

    with pytest.raises(ConcurrencyBusyError):
        await service.reconcile(coalesce=False)
    with pytest.raises(ConcurrencyBusyError):
        await service.reconcile_keys(["AB123456_1.jpg"])

    gated.gate.set()
    await running
    report = await service.reconcile(coalesce=False)
    assert report.changed == 0


class _GatedStat:
    """Wraps a store so stat blocks until the gate opens."""

    def __init__(self, inner):
        self.inner = inner
        self.gate = asyncio.Event()

    def __getattr__(self, name):
        return getattr(self.inner, name)

    async def stat_object(self, key):
        await self.gate.wait()
        return await self.inner.stat_object(key)


@pytest.mark.asyncio
async def test_full_run_does_not_join_narrower_runs(make_service, storage, image_crud):
    """A full run is rejected while a keyed or prefixed run is active, never handed its report."""
    storage.add("AB123456_1.jpg", b"one")
    storage.add("CD987654_1.jpg", b"two")
    gated = _GatedStat(storage)
    service = make_service(store=gated)

    keyed = asyncio.create_task(service.reconcile_keys(["AB123456_1.jpg"]))
    await _wait_until_busy(service)

    with pytest.raises(ConcurrencyBusyError):
        await service.reconcile()

    gated.gate.set()
    await keyed
    assert sorted(image_crud.rows) == ["AB123456_1.jpg"]

    listing = _GatedStorage(storage)
    service = make_service(store=listing)
    prefixed = asyncio.create_task(service.reconcile(prefix="AB"))
    await _wait_until_busy(service)

    with pytest.raises(ConcurrencyBusyError):
        await service.reconcile()

    listing.gate.set()
    await prefixed
    report = await service.reconcile()
    assert report.inserted == 1
    assert sorted(image_crud.rows) == sorted(storage.objects)


@pytest.mark.asyncio
async def test_reconcile_keys(make_service, storage, image_crud, obituary_crud):
    """Targeted keys are stat-ed and brought in line individually."""
    storage.add("AB123456_1.jpg", b"fresh")
    storage.add("AB123456_2.jpg", b"edited")
    storage.add("AB123456_3.jpg", b"untouched")
    image_crud.add("AB123456_2.jpg", etag="old", reference="AB123456")
    image_crud.add("AB123456_3.jpg", etag=_etag(b"untouched"), reference="AB123456")
    image_crud.add("AB123456_4.jpg", etag="deleted", reference="AB123456")
    obituary_crud.records["AB123456"].image_names = [
        "AB123456_2.jpg",
        "AB123456_3.jpg",
        "AB123456_4.jpg",
    ]

    report = await make_service().reconcile_keys(
        ["AB123456_1.jpg", "AB123456_2.jpg", "AB123456_3.jpg", "AB123456_4.jpg", "AB123456_5.jpg"]
    )

    assert (report.inserted, report.updated, report.evicted) == (1, 1, 1)
    assert report.unchanged == 2
    assert sorted(image_crud.rows) == ["AB123456_1.jpg", "AB123456_2.jpg", "AB123456_3.jpg"]
    assert obituary_crud.names("AB123456") == [
        "AB123456_2.jpg",
        "AB123456_3.jpg",
        "AB123456_1.jpg",
    ]


@pytest.mark.asyncio
async def test_reconcile_keys_records_stat_errors(make_service, storage, image_crud):
    """A stat failure is reported for that key and does not evict it."""
    image_crud.add("AB123456_1.jpg", etag="e", reference="AB123456")
    storage.stat_errors["AB123456_1.jpg"] = StorageConnectionError("timeout")

    report = await make_service().reconcile_keys(["AB123456_1.jpg"])

    assert [(e.key, e.operation) for e in report.errors] == [("AB123456_1.jpg", "stat")]
    assert "AB123456_1.jpg" in image_crud.rows


class _HeldLock:
    """Distributed lock that another instance already holds."""

    @asynccontextmanager
    async def hold(self):
        raise ConcurrencyBusyError("A reconciliation is already running on another instance")
        yield


@pytest.mark.asyncio
async def test_distributed_lock_held_elsewhere(make_service, drifted, image_crud):
    """A run is refused when another instance holds the lock."""
    service = make_service(distributed_lock=_HeldLock())

    with pytest.raises(ConcurrencyBusyError):
        await service.reconcile()
    assert "AB123456_1.jpg" not in image_crud.rows


@pytest.mark.asyncio
async def test_background_run_logs_failures(make_service, drifted, image_crud):
    """Startup runs log failures instead of raising them."""
    image_crud.load_error = RuntimeError("db unavailable")
    service = make_service()

    await service.start_background_run()

    service.logger.error.assert_called_once()
    assert "failed" in service.logger.error.call_args[0][0]


@pytest.mark.asyncio
async def test_rows_written_after_listing_are_kept(
    make_service, storage, image_crud, obituary_crud
):
    """A row that appears between listing and catalog load is not evicted."""
    storage.add("AB123456_1.jpg", b"one")
    load = image_crud.get_all_by_key

    async def _load_after_upload(db, prefix=""):
        storage.add("AB123456_3.jpg", b"late")
        image_crud.add("AB123456_3.jpg", etag=_etag(b"late"), reference="AB123456")
        obituary_crud.records["AB123456"].image_names = ["AB123456_3.jpg"]
        return await load(db, prefix)

    image_crud.get_all_by_key = _load_after_upload

    report = await make_service().reconcile()

    assert report.evicted == 0
    assert report.inserted == 1
    assert sorted(image_crud.rows) == ["AB123456_1.jpg", "AB123456_3.jpg"]
    assert sorted(obituary_crud.names("AB123456")) == ["AB123456_1.jpg", "AB123456_3.jpg"]


@pytest.mark.asyncio
async def test_eviction_waits_for_a_clean_stat(make_service, drifted, storage, image_crud):
    """A row missing from the listing stays when the store cannot confirm it is gone."""
    storage.stat_errors["AB123456_9.jpg"] = StorageConnectionError("timeout")

    report = await make_service().reconcile()

    assert report.evicted == 0
    assert [(e.key, e.operation) for e in report.errors] == [("AB123456_9.jpg", "stat")]
    assert "AB123456_9.jpg" in image_crud.rows
