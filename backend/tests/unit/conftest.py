"""Unit test conftest for setting up test environment.

Provides in-memory stand-ins for the object store, the database session and
the catalog CRUD so services can be exercised without Postgres or S3.
"""

import hashlib
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Dict, List, Optional
from uuid import uuid4

# Set minimal required environment variables before importing any obitarchive modules
# This prevents Settings initialization errors during test collection
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("POSTGRES_HOST", "localhost")
os.environ.setdefault("POSTGRES_USER", "test_user")
os.environ.setdefault("POSTGRES_PASSWORD", "test_password")
os.environ.setdefault("POSTGRES_DB", "test_db")
os.environ.setdefault("STORAGE_BACKEND", "filesystem")
os.environ.setdefault("STORAGE_PATH", os.path.join(tempfile.gettempdir(), "obitarchive-tests"))
os.environ.setdefault("RECONCILE_ON_STARTUP", "false")
os.environ.setdefault("AUTH_ENABLED", "false")

import pytest  # noqa: E402

from obitarchive.platform.storage import (  # noqa: E402
    ObjectInfo,
    StorageBackend,
    StorageNotFoundError,
    validate_key,
)

FIXED_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


# ------------------------------------------------------------------------------------
# Object store
# ------------------------------------------------------------------------------------


class InMemoryStorage(StorageBackend):
    """Object store kept in a dict, with hooks for injecting failures."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}
        self.put_errors: List[Exception] = []
        self.get_errors: Dict[str, Exception] = {}
        self.stat_errors: Dict[str, Exception] = {}
        self.list_error: Optional[Exception] = None
        self.list_error_after: int = 0
        self.put_calls = 0
        self.closed = False

    def add(self, key: str, content: bytes, content_type: Optional[str] = "image/jpeg") -> None:
        self.objects[key] = content
        self.content_types[key] = content_type

    def _info(self, key: str) -> ObjectInfo:
        content = self.objects[key]
        return ObjectInfo(
            key=key,
            size=len(content),
            last_modified=FIXED_TIME,
            etag=hashlib.md5(content).hexdigest(),
            content_type=self.content_types.get(key),
        )

    async def put_object(self, key, content, content_type=None):
        validate_key(key)
        self.put_calls += 1
        if self.put_errors:
            raise self.put_errors.pop(0)
        self.add(key, content, content_type)
        return self._info(key)

    async def get_object(self, key):
        if key in self.get_errors:
            raise self.get_errors[key]
        if key not in self.objects:
            raise StorageNotFoundError(f"Object not found: {key}")
        return self.objects[key]

    async def stat_object(self, key):
        if key in self.stat_errors:
            raise self.stat_errors[key]
        if key not in self.objects:
            raise StorageNotFoundError(f"Object not found: {key}")
        return self._info(key)

    async def list_objects(self, prefix=""):
        for index, key in enumerate(sorted(k for k in self.objects if k.startswith(prefix))):
            if self.list_error is not None and index >= self.list_error_after:
                raise self.list_error
            yield self._info(key)

    async def delete_object(self, key):
        self.objects.pop(key, None)
        self.content_types.pop(key, None)

    async def copy_object(self, source_key, dest_key):
        if source_key not in self.objects:
            raise StorageNotFoundError(f"Object not found: {source_key}")
        self.add(dest_key, self.objects[source_key], self.content_types.get(source_key))
        return self._info(dest_key)

    async def close(self):
        self.closed = True


# ------------------------------------------------------------------------------------
# Database
# ------------------------------------------------------------------------------------


class FakeSession:
    """Records commits and rollbacks made through a UnitOfWork."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def flush(self):
        pass


class FakeSessionFactory:
    """Callable matching ``get_db_context``; keeps every session it opened."""

    def __init__(self):
        self.sessions: List[FakeSession] = []

    @asynccontextmanager
    async def __call__(self):
        session = FakeSession()
        self.sessions.append(session)
        yield session

    @property
    def commits(self) -> int:
        return sum(s.commits for s in self.sessions)

    @property
    def rollbacks(self) -> int:
        return sum(s.rollbacks for s in self.sessions)


class FakeImageCrud:
    """Image catalog held in a dict keyed by object key."""

    def __init__(self):
        self.rows: Dict[str, SimpleNamespace] = {}
        self.fail_keys: Dict[str, Exception] = {}
        self.load_error: Optional[Exception] = None

    def add(self, key: str, etag: str, reference: Optional[str] = None, size: int = 1):
        self.rows[key] = SimpleNamespace(
            id=uuid4(),
            key=key,
            size=size,
            last_modified=FIXED_TIME,
            etag=etag,
            content_type="image/jpeg",
            reference=reference,
            created_at=FIXED_TIME,
            modified_at=FIXED_TIME,
        )
        return self.rows[key]

    def _check(self, key: str) -> None:
        if key in self.fail_keys:
            raise self.fail_keys[key]

    async def get_by_key(self, db, key):
        return self.rows.get(key)

    async def get_all_by_key(self, db, prefix=""):
        if self.load_error is not None:
            raise self.load_error
        return {k: v for k, v in self.rows.items() if k.startswith(prefix)}

    async def get_keys_grouped_by_reference(self, db):
        grouped: Dict[str, List[str]] = {}
        for key in sorted(self.rows):
            reference = self.rows[key].reference
            if reference:
                grouped.setdefault(reference, []).append(key)
        return grouped

    async def list_page(self, db, *, search="", sort_by="name", skip=0, limit=5):
        rows = [r for r in self.rows.values() if search.lower() in r.key.lower()]
        if sort_by == "last_modified":
            rows.sort(key=lambda r: r.last_modified, reverse=True)
        else:
            rows.sort(key=lambda r: r.key)
        return rows[skip : skip + limit], len(rows)

    async def upsert(self, db, *, obj_in, uow=None):
        self._check(obj_in.key)
        row = self.rows.get(obj_in.key) or self.add(obj_in.key, obj_in.etag)
        for field, value in obj_in.model_dump().items():
            setattr(row, field, value)
        return row

    async def update_fingerprint(self, db, *, obj_in, uow=None):
        self._check(obj_in.key)
        row = self.rows.get(obj_in.key)
        if row is None:
            return False
        row.size = obj_in.size
        row.last_modified = obj_in.last_modified
        row.etag = obj_in.etag
        if obj_in.content_type:
            row.content_type = obj_in.content_type
        return True

    async def delete_by_key(self, db, *, key, uow=None):
        self._check(key)
        row = self.rows.pop(key, None)
        if row is None:
            return False, None
        return True, row.reference


class FakeObituaryCrud:
    """Obituary records held in a dict keyed by reference."""

    def __init__(self, *references: str):
        self.records: Dict[str, SimpleNamespace] = {}
        for reference in references:
            self.add(reference)

    def add(self, reference: str, image_names: Optional[List[str]] = None):
        self.records[reference] = SimpleNamespace(
            reference=reference, image_names=list(image_names or [])
        )
        return self.records[reference]

    def names(self, reference: str) -> List[str]:
        return self.records[reference].image_names

    async def get_by_reference(self, db, reference, *, for_update=False):
        return self.records.get(reference)

    async def get_image_names_by_reference(self, db):
        return {ref: list(r.image_names) for ref, r in self.records.items()}

    async def append_image_name(self, db, *, reference, key, uow=None):
        record = self.records.get(reference)
        if record is None or key in record.image_names:
            return False
        record.image_names = record.image_names + [key]
        return True

    async def remove_image_name(self, db, *, reference, key, uow=None):
        record = self.records.get(reference)
        if record is None or key not in record.image_names:
            return False
        record.image_names = [n for n in record.image_names if n != key]
        return True

    async def set_image_names(self, db, *, reference, names, uow=None):
        record = self.records.get(reference)
        if record is None:
            return False
        record.image_names = list(names)
        return True


@pytest.fixture
def storage():
    """In-memory object store."""
    return InMemoryStorage()


@pytest.fixture
def session_factory():
    """Fake session factory."""
    return FakeSessionFactory()


@pytest.fixture
def image_crud():
    """Empty image catalog."""
    return FakeImageCrud()


@pytest.fixture
def obituary_crud():
    """Obituary records AB123456 and CD987654."""
    return FakeObituaryCrud("AB123456", "CD987654")
