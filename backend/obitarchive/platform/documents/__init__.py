"""Report documents bundled with obituary archives."""

from obitarchive.platform.documents.generator import (
    DocumentGenerationError,
    DocumentGenerator,
    HttpDocumentGenerator,
)

__all__ = ["DocumentGenerator", "DocumentGenerationError", "HttpDocumentGenerator"]
