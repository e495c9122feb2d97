"""Record lookup operations used by the media pipeline.

Obituary creation and editing belong to the CRUD surface of the wider
application; the pipeline only reads obituaries and maintains ``image_names``.
"""

from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from obitarchive.db.unit_of_work import UnitOfWork
from obitarchive.models.obituary import Obituary


class CRUDObituary:
    """Record lookup and image backlink maintenance."""

    def __init__(self):
        """Initialize the CRUD object."""
        self.model = Obituary

    async def _finish(self, db: AsyncSession, uow: Optional[UnitOfWork]) -> None:
        if uow:
            await uow.flush()
        else:
            await db.commit()

    async def get_by_reference(
        self, db: AsyncSession, reference: str, *, for_update: bool = False
    ) -> Optional[Obituary]:
        """Get an obituary by its reference.

        Args:
            db: Database session
            reference: Fixed-width obituary reference
            for_update: Lock the row for the rest of the transaction

        Returns:
            Obituary if found, None otherwise
        """
        stmt = select(self.model).where(self.model.reference == reference)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_image_names_by_reference(self, db: AsyncSession) -> Dict[str, List[str]]:
        """Return the stored ``image_names`` of every obituary."""
        result = await db.execute(select(self.model.reference, self.model.image_names))
        return {reference: list(names or []) for reference, names in result.all()}

    async def append_image_name(
        self,
        db: AsyncSession,
        *,
        reference: str,
        key: str,
        uow: Optional[UnitOfWork] = None,
    ) -> bool:
        """Add ``key`` to the obituary's image list if it is not already there.

        Returns:
            True if the list changed
        """
        obituary = await self.get_by_reference(db, reference, for_update=True)
        if obituary is None or key in obituary.image_names:
            return False
        obituary.image_names = [*obituary.image_names, key]
        await self._finish(db, uow)
        return True

    async def remove_image_name(
        self,
        db: AsyncSession,
        *,
        reference: str,
        key: str,
        uow: Optional[UnitOfWork] = None,
    ) -> bool:
        """Remove ``key`` from the obituary's image list if present.

        Returns:
            True if the list changed
        """
        obituary = await self.get_by_reference(db, reference, for_update=True)
        if obituary is None or key not in obituary.image_names:
            return False
        obituary.image_names = [name for name in obituary.image_names if name != key]
        await self._finish(db, uow)
        return True

    async def set_image_names(
        self,
        db: AsyncSession,
        *,
        reference: str,
        names: List[str],
        uow: Optional[UnitOfWork] = None,
    ) -> bool:
        """Overwrite the obituary's image list.

        Returns:
            True if the obituary exists
        """
        obituary = await self.get_by_reference(db, reference, for_update=True)
        if obituary is None:
            return False
        obituary.image_names = list(names)
        await self._finish(db, uow)
        return True


# Singleton instance
obituary = CRUDObituary()
