"""Obituary model."""

from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import Mapped, mapped_column, relationship

from obitarchive.models._base import Base

if TYPE_CHECKING:
    from obitarchive.models.image_asset import ImageAsset


class Obituary(Base):
    """Obituary record owning zero or more catalog images.

    ``image_names`` is a denormalized copy of the keys of every ImageAsset whose
    ``reference`` points at this obituary. Ingestion and reconciliation keep it
    in step with the image_asset table.
    """

    __tablename__ = "obituary"

    reference: Mapped[str] = mapped_column(String(16), nullable=False, unique=True, index=True)
    surname: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    given_names: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    image_names: Mapped[List[str]] = mapped_column(
        MutableList.as_mutable(JSONB), nullable=False, default=list
    )

    images: Mapped[list["ImageAsset"]] = relationship(
        "ImageAsset",
        back_populates="obituary",
        lazy="noload",
        passive_deletes=True,
    )
