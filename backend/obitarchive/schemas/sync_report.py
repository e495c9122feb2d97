"""Reconciliation report schemas."""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

SyncOperation = Literal["stat", "insert", "update", "evict", "relink"]


class SyncKeyError(BaseModel):
    """A per-key failure collected during reconciliation."""

    key: str = Field(..., description="Object key (or obituary reference for relink)")
    operation: SyncOperation
    error: str


class SyncReport(BaseModel):
    """Summary of one reconciliation run."""

    inserted: int = 0
    updated: int = 0
    evicted: int = 0
    orphaned: int = Field(0, description="Inserted entries whose key matched no obituary")
    unchanged: int = 0
    relinked: int = Field(0, description="Obituaries whose image_names were repaired")
    errors: List[SyncKeyError] = Field(default_factory=list)
    prefix: str = ""
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    def record_error(self, key: str, operation: SyncOperation, error: BaseException) -> None:
        """Append a per-key failure."""
        self.errors.append(SyncKeyError(key=key, operation=operation, error=str(error)))

    @property
    def changed(self) -> int:
        """Number of catalog mutations applied."""
        return self.inserted + self.updated + self.evicted
