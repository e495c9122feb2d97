"""Logging setup with contextual (structured) fields.

Usage:
    from obitarchive.core.logging import logger

    log = logger.with_context(component="ingestion", key="AB123456_1.jpg")
    log.info("Stored object")
"""

import logging
import sys
from typing import Any, Dict, MutableMapping, Optional, Tuple

from obitarchive.core.config import settings

_CONTEXT_ATTR = "context"


class _ContextFormatter(logging.Formatter):
    """Formatter that appends the bound context as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        context = getattr(record, _CONTEXT_ATTR, None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in sorted(context.items()))
            message = f"{message} [{pairs}]"
        return message


class ContextualLogger(logging.LoggerAdapter):
    """Logger adapter carrying a dictionary of context dimensions.

    ``with_context`` returns a new adapter so context never leaks between
    callers that share the base logger.
    """

    def __init__(self, logger: logging.Logger, dimensions: Optional[Dict[str, Any]] = None):
        """Initialize the adapter.

        Args:
            logger: Underlying stdlib logger
            dimensions: Context fields attached to every record
        """
        super().__init__(logger, dict(dimensions or {}))
        self.dimensions: Dict[str, Any] = dict(dimensions or {})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        """Merge bound dimensions with any per-call ``extra``."""
        extra = dict(kwargs.get("extra") or {})
        context = {**self.dimensions, **extra.pop(_CONTEXT_ATTR, {})}
        extra[_CONTEXT_ATTR] = context
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **dimensions: Any) -> "ContextualLogger":
        """Return a logger with additional context dimensions."""
        return ContextualLogger(self.logger, {**self.dimensions, **dimensions})


def _configure_root() -> logging.Logger:
    base = logging.getLogger("obitarchive")
    if base.handlers:
        return base

    level = "DEBUG" if settings.LOCAL_DEVELOPMENT else settings.LOG_LEVEL.upper()
    base.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        _ContextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    base.addHandler(handler)
    base.propagate = False
    return base


logger = ContextualLogger(_configure_root(), {"environment": settings.ENVIRONMENT})
