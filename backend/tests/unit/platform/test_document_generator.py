"""Tests for the HTTP report generator."""

import httpx
import pytest

from obitarchive.platform.documents import DocumentGenerationError, HttpDocumentGenerator


def _generator(handler) -> HttpDocumentGenerator:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpDocumentGenerator(base_url="http://reports.local/api/", client=client)


@pytest.mark.asyncio
async def test_generate_returns_pdf_bytes():
    """The report is fetched from the reference-specific URL."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, content=b"%PDF-1.4")

    generator = _generator(handler)

    assert await generator.generate("AB123456") == b"%PDF-1.4"
    assert seen == ["http://reports.local/api/reports/AB123456.pdf"]


@pytest.mark.asyncio
async def test_generate_error_status():
    """Non-2xx responses become DocumentGenerationError."""
    generator = _generator(lambda request: httpx.Response(404))

    with pytest.raises(DocumentGenerationError) as exc_info:
        await generator.generate("AB123456")
    assert "404" in str(exc_info.value)


@pytest.mark.asyncio
async def test_generate_transport_error():
    """Connection failures become DocumentGenerationError."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DocumentGenerationError):
        await _generator(handler).generate("AB123456")


@pytest.mark.asyncio
async def test_generate_empty_body():
    """An empty report is treated as a failure."""
    generator = _generator(lambda request: httpx.Response(200, content=b""))

    with pytest.raises(DocumentGenerationError):
        await generator.generate("AB123456")


@pytest.mark.asyncio
async def test_close_leaves_shared_client_open():
    """A client passed in is owned by the caller."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
    generator = HttpDocumentGenerator(base_url="http://reports.local", client=client)

    await generator.close()

    assert not client.is_closed
    await client.aclose()
