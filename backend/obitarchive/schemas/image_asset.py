"""Image asset schemas."""

from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, computed_field


class ImageAssetBase(BaseModel):
    """Fields shared by every image asset schema."""

    key: str = Field(..., description="Object key in the image bucket")
    size: int = Field(..., ge=0, description="Object size in bytes")
    last_modified: datetime = Field(..., description="Last modification time reported by the store")
    etag: str = Field(..., description="Content fingerprint reported by the store")
    content_type: Optional[str] = Field(None, description="MIME type of the object")


class ImageAssetUpsert(ImageAssetBase):
    """Schema for inserting or refreshing a catalog entry."""

    reference: Optional[str] = Field(None, description="Owning obituary reference, None for orphans")


class ImageAsset(ImageAssetBase):
    """Complete image asset schema."""

    id: UUID
    reference: Optional[str] = None
    created_at: datetime
    modified_at: datetime

    model_config = {"from_attributes": True}


class ImageListResponse(BaseModel):
    """Paginated catalog listing."""

    images: List[ImageAsset]
    total: int
    page: int
    limit: int
    sort_by: Literal["name", "last_modified"]


class IngestFailure(BaseModel):
    """A file from an upload batch that could not be ingested."""

    name: str
    error: str
    kind: Literal["invalid", "failed"] = Field(
        "failed", description="invalid when the file was rejected before any upload attempt"
    )


class IngestBatchResult(BaseModel):
    """Outcome of ingesting a multipart batch."""

    uploaded: List[ImageAsset] = Field(default_factory=list)
    failed: List[IngestFailure] = Field(default_factory=list)

    @computed_field
    @property
    def success(self) -> bool:
        """True when every file in the batch was ingested."""
        return not self.failed


class FileExistsResponse(BaseModel):
    """Result of a stem-based existence check."""

    filename: str
    exists: bool


class ImageUrlResponse(BaseModel):
    """Time-limited URL for viewing an image."""

    key: str
    url: str
    expires_in: Optional[int] = None


class RenameImageRequest(BaseModel):
    """Request body for renaming an image."""

    new_key: str = Field(..., min_length=1, description="New object key")
