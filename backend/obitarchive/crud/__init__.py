"""CRUD singletons for the catalog tables."""

from .crud_image_asset import CRUDImageAsset, image_asset
from .crud_obituary import CRUDObituary, obituary

__all__ = ["CRUDImageAsset", "CRUDObituary", "image_asset", "obituary"]
