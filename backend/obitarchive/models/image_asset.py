"""Image asset catalog model."""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from obitarchive.models._base import Base

if TYPE_CHECKING:
    from obitarchive.models.obituary import Obituary


class ImageAsset(Base):
    """Catalog row mirroring one object in the image bucket.

    The object store is the source of truth; this table is the queryable index.
    ``reference`` is NULL for orphans whose key prefix matches no obituary.
    """

    __tablename__ = "image_asset"

    key: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True, index=True)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    etag: Mapped[str] = mapped_column(String(128), nullable=False)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reference: Mapped[Optional[str]] = mapped_column(
        ForeignKey("obituary.reference", ondelete="SET NULL"), nullable=True, index=True
    )

    obituary: Mapped[Optional["Obituary"]] = relationship(
        "Obituary", back_populates="images", lazy="noload"
    )
