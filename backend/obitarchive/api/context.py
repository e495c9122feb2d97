"""Per-request API context."""

from pydantic import BaseModel, ConfigDict

from obitarchive.core.logging import ContextualLogger


class ApiContext(BaseModel):
    """Request tracking and a logger bound to the request."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    request_id: str
    auth_method: str
    logger: ContextualLogger

    def __str__(self) -> str:
        """Short description for logs."""
        return f"ApiContext(request_id={self.request_id}, auth_method={self.auth_method})"
