"""Document generator client.

The obituary report PDF is rendered by the report service; this module only
fetches the finished bytes.
"""

from abc import ABC, abstractmethod
from typing import Optional
from urllib.parse import quote

import httpx

from obitarchive.core.config import settings


class DocumentGenerationError(Exception):
    """Raised when the report for a reference could not be produced."""

    def __init__(self, reference: str, reason: str):
        """Initialize with the reference and a human-readable reason."""
        self.reference = reference
        self.reason = reason
        super().__init__(f"Report for {reference} could not be generated: {reason}")


class DocumentGenerator(ABC):
    """Produces the primary document of an obituary archive."""

    @abstractmethod
    async def generate(self, reference: str) -> bytes:
        """Return the document bytes for ``reference``.

        Raises:
            DocumentGenerationError: If no document could be produced
        """
        pass

    async def close(self) -> None:
        """Release any held resources."""
        pass


class HttpDocumentGenerator(DocumentGenerator):
    """Fetches report PDFs from the report service over HTTP."""

    def __init__(
        self,
        base_url: str = settings.DOCUMENT_SERVICE_URL,
        timeout: float = settings.DOCUMENT_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the generator.

        Args:
            base_url: Base URL of the report service
            timeout: Request timeout in seconds
            client: Optional shared client; one is created when omitted
        """
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _url(self, reference: str) -> str:
        return f"{self.base_url}/reports/{quote(reference, safe='')}.pdf"

    async def generate(self, reference: str) -> bytes:
        """Request the report PDF for ``reference``."""
        try:
            response = await self._client.get(self._url(reference))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DocumentGenerationError(
                reference, f"report service returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DocumentGenerationError(reference, f"{type(e).__name__}: {e}") from e

        if not response.content:
            raise DocumentGenerationError(reference, "report service returned an empty body")
        return response.content

    async def close(self) -> None:
        """Close the HTTP client if this generator created it."""
        if self._owns_client:
            await self._client.aclose()
