"""Pydantic schemas for the obituary archive API."""

from .image_asset import (
    FileExistsResponse,
    ImageAsset,
    ImageAssetBase,
    ImageAssetUpsert,
    ImageListResponse,
    ImageUrlResponse,
    IngestBatchResult,
    IngestFailure,
    RenameImageRequest,
)
from .obituary import Obituary
from .sync_report import SyncKeyError, SyncReport

__all__ = [
    "FileExistsResponse",
    "ImageAsset",
    "ImageAssetBase",
    "ImageAssetUpsert",
    "ImageListResponse",
    "ImageUrlResponse",
    "IngestBatchResult",
    "IngestFailure",
    "Obituary",
    "RenameImageRequest",
    "SyncKeyError",
    "SyncReport",
]
