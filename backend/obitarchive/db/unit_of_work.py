"""Unit of work for grouping catalog writes into one transaction."""

from types import TracebackType
from typing import Optional, Type

from sqlalchemy.ext.asyncio import AsyncSession


class UnitOfWork:
    """Commit on clean exit, roll back when the block raises.

    Usage:
        async with UnitOfWork(db) as uow:
            await crud.image_asset.upsert(db, ..., uow=uow)
            await crud.obituary.append_image_name(db, ..., uow=uow)
    """

    def __init__(self, session: AsyncSession):
        """Wrap an open session."""
        self.session = session
        self._committed = False

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        if exc_type is not None:
            await self.rollback()
            return
        if not self._committed:
            await self.commit()

    async def commit(self) -> None:
        """Commit the transaction."""
        await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        """Roll back the transaction."""
        await self.session.rollback()

    async def flush(self) -> None:
        """Flush pending changes without committing."""
        await self.session.flush()
