"""Obituary archive assembly.

Builds the ``ObituaryFiles_<reference>.zip`` download from the generated
report and every image linked to the obituary. Inputs are fetched
concurrently; whatever arrives is written into a zip that is streamed to the
caller entry by entry. A missing input only drops that entry. The archive
fails only when nothing at all could be obtained.
"""

import asyncio
import re
import zipfile
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Set

from obitarchive import crud
from obitarchive.core.config import settings
from obitarchive.core.exceptions import NoContentError, PartialAssemblyError
from obitarchive.core.logging import ContextualLogger
from obitarchive.core.logging import logger as default_logger
from obitarchive.db.session import SessionFactory, get_db_context
from obitarchive.platform.documents import DocumentGenerator
from obitarchive.platform.storage import StorageBackend, with_timeout


def sanitize_filename(filename: str) -> str:
    """Make a name safe for zip entries and download headers.

    Anything outside ``A-Za-z0-9._-`` becomes ``_``, runs of dots or
    underscores collapse, and leading or trailing dots and underscores are
    dropped. Falls back to ``file`` when nothing is left.
    """
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
    sanitized = re.sub(r"\.{2,}", ".", sanitized)
    sanitized = re.sub(r"_{2,}", "_", sanitized)
    sanitized = re.sub(r"^[_.]+|[_.]+$", "", sanitized)
    return sanitized or "file"


def image_entry_name(key: str) -> str:
    """Zip entry name for an image: sanitized stem, original extension."""
    name = key.rsplit("/", 1)[-1]
    stem, dot, extension = name.rpartition(".")
    if not dot or not stem:
        return sanitize_filename(name)
    return sanitize_filename(stem) + "." + extension


def document_entry_name(reference: str) -> str:
    """Zip entry name of the generated report."""
    return f"Report-{sanitize_filename(reference)}.pdf"


def archive_filename(reference: str) -> str:
    """Download filename of the archive."""
    return f"ObituaryFiles_{sanitize_filename(reference)}.zip"


@dataclass
class _Fetched:
    """Outcome of one archive input."""

    label: str
    entry_name: str
    data: Optional[bytes] = None
    error: Optional[str] = None


class _ZipSink:
    """Write-only, non-seekable target for ``zipfile``.

    Without ``tell``/``seek`` zipfile writes data descriptors after each entry
    instead of patching local headers, so bytes can leave as soon as an entry
    is complete.
    """

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data: bytes) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


class ArchiveStream:
    """Zip bytes for one reference, produced while inputs are still arriving.

    Iterate once. Closing the stream (or abandoning the iteration) cancels
    any fetch that has not finished.
    """

    def __init__(
        self,
        reference: str,
        tasks: List["asyncio.Task"],
        results: "asyncio.Queue[_Fetched]",
        logger: ContextualLogger,
    ):
        """Wrap the running fetch tasks of one archive request."""
        self.reference = reference
        self.filename = archive_filename(reference)
        self.failures: List[str] = []
        self._tasks = tasks
        self._results = results
        self._remaining = len(tasks)
        self._ready: List[_Fetched] = []
        self._entries = 0
        self._started = False
        self.logger = logger

    async def _next_result(self) -> Optional[_Fetched]:
        """Return the next finished input, or None when all are accounted for."""
        if self._remaining == 0:
            return None
        result = await self._results.get()
        self._remaining -= 1
        if result.data is None:
            self.failures.append(f"{result.label}: {result.error}")
            self.logger.warning(f"Omitting {result.label} from archive: {result.error}")
        return result

    async def wait_for_content(self) -> None:
        """Block until at least one input succeeded.

        Raises:
            NoContentError: If every input failed
        """
        while True:
            result = await self._next_result()
            if result is None:
                raise NoContentError(self.reference)
            if result.data is not None:
                self._ready.append(result)
                return

    @staticmethod
    def _unique(name: str, used: Set[str]) -> str:
        if name not in used:
            used.add(name)
            return name
        stem, dot, extension = name.rpartition(".")
        if not dot:
            stem, extension = name, ""
        counter = 2
        while True:
            candidate = f"{stem}-{counter}{dot}{extension}"
            if candidate not in used:
                used.add(candidate)
                return candidate
            counter += 1

    def __aiter__(self) -> AsyncIterator[bytes]:
        if self._started:
            raise RuntimeError("ArchiveStream can only be iterated once")
        self._started = True
        return self._iter_bytes()

    async def _iter_bytes(self) -> AsyncIterator[bytes]:
        sink = _ZipSink()
        used: Set[str] = set()
        try:
            with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
                pending = list(self._ready)
                self._ready.clear()
                while True:
                    for item in pending:
                        archive.writestr(self._unique(item.entry_name, used), item.data)
                        self._entries += 1
                        chunk = sink.drain()
                        if chunk:
                            yield chunk
                    result = await self._next_result()
                    if result is None:
                        break
                    pending = [result] if result.data is not None else []
            tail = sink.drain()
            if tail:
                yield tail
        finally:
            await self.aclose()

        if self.failures:
            summary = PartialAssemblyError(self.reference, self.failures)
            self.logger.warning(str(summary))
        self.logger.info(f"Archive streamed with {self._entries} entries")

    async def aclose(self) -> None:
        """Cancel fetches that are still running."""
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class ArchiveAssembler:
    """Builds obituary archives from the report service and the object store."""

    def __init__(
        self,
        storage: StorageBackend,
        document_generator: DocumentGenerator,
        session_factory: SessionFactory = get_db_context,
        obituary_crud: crud.CRUDObituary = crud.obituary,
        concurrency: int = settings.ARCHIVE_FETCH_CONCURRENCY,
        timeout: float = settings.STORAGE_TIMEOUT_SECONDS,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the assembler.

        Args:
            storage: Object store holding the images
            document_generator: Produces the report document
            session_factory: Opens a database session
            obituary_crud: Record lookup CRUD
            concurrency: Maximum concurrent image reads per archive
            timeout: Deadline for each image read in seconds
            logger: Optional logger; defaults to the module logger
        """
        self.storage = storage
        self.document_generator = document_generator
        self.session_factory = session_factory
        self.obituary_crud = obituary_crud
        self.concurrency = concurrency
        self.timeout = timeout
        self.logger = logger or default_logger.with_context(component="archive")

    async def open(self, reference: str) -> ArchiveStream:
        """Start assembling the archive for ``reference``.

        Returns once the first input is available, so a request that would
        produce an empty archive fails before any byte is sent.

        Raises:
            NoContentError: If neither the report nor any image could be obtained
        """
        log = self.logger.with_context(reference=reference)
        results: "asyncio.Queue[_Fetched]" = asyncio.Queue()
        tasks = [asyncio.create_task(self._fetch_document(reference, results))]

        try:
            image_names = await self._image_names(reference, log)
        except BaseException:
            tasks[0].cancel()
            raise

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks.extend(
            asyncio.create_task(self._fetch_image(key, semaphore, results))
            for key in image_names
        )
        log.debug(f"Assembling archive from report and {len(image_names)} image(s)")

        stream = ArchiveStream(reference, tasks, results, log)
        try:
            await stream.wait_for_content()
        except BaseException:
            await stream.aclose()
            raise
        return stream

    async def _image_names(self, reference: str, log: ContextualLogger) -> List[str]:
        """Return the obituary's image keys; lookup failures leave the list empty."""
        try:
            async with self.session_factory() as db:
                record = await self.obituary_crud.get_by_reference(db, reference)
        except Exception as e:
            log.warning(f"Obituary lookup failed, archiving without images: {e}")
            return []
        if record is None:
            log.info("No obituary found for reference")
            return []
        return list(dict.fromkeys(record.image_names))

    async def _fetch_document(self, reference: str, results: "asyncio.Queue[_Fetched]") -> None:
        item = _Fetched(label="report", entry_name=document_entry_name(reference))
        try:
            item.data = await self.document_generator.generate(reference)
        except Exception as e:
            item.error = f"{type(e).__name__}: {e}"
        results.put_nowait(item)

    async def _fetch_image(
        self, key: str, semaphore: asyncio.Semaphore, results: "asyncio.Queue[_Fetched]"
    ) -> None:
        item = _Fetched(label=f"image {key}", entry_name=image_entry_name(key))
        try:
            async with semaphore:
                item.data = await with_timeout(
                    self.storage.get_object(key), self.timeout, f"Read of {key}"
                )
        except Exception as e:
            item.error = f"{type(e).__name__}: {e}"
        results.put_nowait(item)
