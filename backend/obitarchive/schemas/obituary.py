"""Obituary schemas."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


class Obituary(BaseModel):
    """Obituary as seen by the media pipeline."""

    id: UUID
    reference: str
    surname: Optional[str] = None
    given_names: Optional[str] = None
    image_names: List[str] = Field(default_factory=list)
    created_at: datetime
    modified_at: datetime

    model_config = {"from_attributes": True}
