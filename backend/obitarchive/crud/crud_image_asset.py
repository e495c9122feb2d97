"""CRUD operations for the image asset catalog.

All writes are scoped by the unique object key so row-level locking in the
database is the only coordination needed between concurrent writers.
"""

from typing import Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from obitarchive.db.unit_of_work import UnitOfWork
from obitarchive.models.image_asset import ImageAsset
from obitarchive.schemas.image_asset import ImageAssetBase, ImageAssetUpsert


class CRUDImageAsset:
    """CRUD operations for image assets."""

    def __init__(self):
        """Initialize the CRUD object."""
        self.model = ImageAsset

    async def _finish(self, db: AsyncSession, uow: Optional[UnitOfWork]) -> None:
        if uow:
            await uow.flush()
        else:
            await db.commit()

    async def get_by_key(self, db: AsyncSession, key: str) -> Optional[ImageAsset]:
        """Get a catalog entry by object key.

        Args:
            db: Database session
            key: Object key

        Returns:
            ImageAsset if found, None otherwise
        """
        result = await db.execute(select(self.model).where(self.model.key == key))
        return result.scalar_one_or_none()

    async def get_all_by_key(self, db: AsyncSession, prefix: str = "") -> Dict[str, ImageAsset]:
        """Load every catalog entry, keyed by object key.

        Args:
            db: Database session
            prefix: Only include keys starting with this prefix

        Returns:
            Mapping of key to ImageAsset
        """
        stmt = select(self.model)
        if prefix:
            stmt = stmt.where(self.model.key.startswith(prefix, autoescape=True))
        result = await db.execute(stmt)
        return {row.key: row for row in result.scalars().all()}

    async def get_keys_grouped_by_reference(self, db: AsyncSession) -> Dict[str, List[str]]:
        """Return owned keys per obituary reference, each list sorted by key."""
        result = await db.execute(
            select(self.model.reference, self.model.key)
            .where(self.model.reference.is_not(None))
            .order_by(self.model.reference, self.model.key)
        )
        grouped: Dict[str, List[str]] = {}
        for reference, key in result.all():
            grouped.setdefault(reference, []).append(key)
        return grouped

    async def list_page(
        self,
        db: AsyncSession,
        *,
        search: str = "",
        sort_by: str = "name",
        skip: int = 0,
        limit: int = 5,
    ) -> Tuple[List[ImageAsset], int]:
        """List catalog entries for the admin image table.

        Args:
            db: Database session
            search: Case-insensitive substring filter on the key
            sort_by: "name" (ascending) or "last_modified" (most recent first)
            skip: Number of rows to skip
            limit: Maximum rows to return

        Returns:
            Tuple of (rows, total matching rows)
        """
        stmt = select(self.model)
        count_stmt = select(func.count()).select_from(self.model)
        if search:
            condition = self.model.key.icontains(search, autoescape=True)
            stmt = stmt.where(condition)
            count_stmt = count_stmt.where(condition)

        if sort_by == "last_modified":
            stmt = stmt.order_by(self.model.last_modified.desc(), self.model.key)
        else:
            stmt = stmt.order_by(self.model.key)

        total = (await db.execute(count_stmt)).scalar_one()
        result = await db.execute(stmt.offset(skip).limit(limit))
        return list(result.scalars().all()), total

    async def upsert(
        self,
        db: AsyncSession,
        *,
        obj_in: ImageAssetUpsert,
        uow: Optional[UnitOfWork] = None,
    ) -> ImageAsset:
        """Insert a catalog entry or overwrite the existing row for the key.

        Last writer wins at the row level.

        Args:
            db: Database session
            obj_in: Entry to write, including the resolved owner reference
            uow: Optional unit of work for transaction control

        Returns:
            The stored ImageAsset
        """
        values = obj_in.model_dump()
        stmt = (
            insert(self.model)
            .values(**values)
            .on_conflict_do_update(
                index_elements=[self.model.key],
                set_={
                    "size": values["size"],
                    "last_modified": values["last_modified"],
                    "etag": values["etag"],
                    "content_type": values["content_type"],
                    "reference": values["reference"],
                    "modified_at": func.now(),
                },
            )
            .returning(self.model)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        db_obj = result.scalar_one()
        await self._finish(db, uow)
        return db_obj

    async def update_fingerprint(
        self,
        db: AsyncSession,
        *,
        obj_in: ImageAssetBase,
        uow: Optional[UnitOfWork] = None,
    ) -> bool:
        """Refresh size, timestamps and etag of an entry without touching ownership.

        Args:
            db: Database session
            obj_in: New object metadata
            uow: Optional unit of work for transaction control

        Returns:
            True if a row was updated
        """
        values = {
            "size": obj_in.size,
            "last_modified": obj_in.last_modified,
            "etag": obj_in.etag,
            "modified_at": func.now(),
        }
        # Listings do not carry a content type; keep the stored one
        if obj_in.content_type:
            values["content_type"] = obj_in.content_type
        result = await db.execute(
            update(self.model).where(self.model.key == obj_in.key).values(**values)
        )
        await self._finish(db, uow)
        return result.rowcount > 0

    async def delete_by_key(
        self,
        db: AsyncSession,
        *,
        key: str,
        uow: Optional[UnitOfWork] = None,
    ) -> Tuple[bool, Optional[str]]:
        """Delete a catalog entry.

        Only the reconciliation engine calls this.

        Args:
            db: Database session
            key: Object key
            uow: Optional unit of work for transaction control

        Returns:
            Tuple of (deleted, owning reference of the deleted row)
        """
        result = await db.execute(
            delete(self.model).where(self.model.key == key).returning(self.model.reference)
        )
        row = result.first()
        await self._finish(db, uow)
        if row is None:
            return False, None
        return True, row[0]


# Singleton instance
image_asset = CRUDImageAsset()
