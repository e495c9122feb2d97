"""Models for the obituary archive catalog."""

from obitarchive.models._base import Base
from obitarchive.models.image_asset import ImageAsset
from obitarchive.models.obituary import Obituary

__all__ = ["Base", "ImageAsset", "Obituary"]
