# store.py — Entity Store over an async SQLAlchemy session
"""
get / conditional_update / append / query, the four operations the core needs.

conditional_update is a single compare-and-swap statement:

    UPDATE <table> SET ..., version = version + 1
    WHERE id = :id AND version = :expected

A zero row count means the precondition failed and nothing was written.
Lock contention from the database driver is reported as RateLimited so
callers back off instead of hammering a busy store.
"""
import logging
from typing import Any, Dict, Optional, Sequence, Type

from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ConflictingWrite, RateLimited
from models import Base, TaskHistory

logger = logging.getLogger("taskflow.store")

_BUSY_MARKERS = ("database is locked", "could not serialize", "deadlock detected", "lock timeout")


def _is_busy(exc: OperationalError) -> bool:
    text = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in text for marker in _BUSY_MARKERS)


class EntityStore:
    """Persistence interface consumed by the permission and workflow layers"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, model: Type[Base], entity_id: str, fresh: bool = True):
        """Read one record. fresh=True bypasses the identity map."""
        stmt = select(model).where(model.id == entity_id)
        if fresh:
            stmt = stmt.execution_options(populate_existing=True)
        try:
            result = await self.session.execute(stmt)
        except OperationalError as e:
            if _is_busy(e):
                raise RateLimited() from e
            raise
        return result.scalar_one_or_none()

    async def query(self, model: Type[Base], *criteria, order_by=None) -> Sequence[Any]:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def conditional_update(
        self,
        model: Type[Base],
        entity_id: str,
        expected_version: int,
        patch: Dict[str, Any],
        commit: bool = True,
        guards: Sequence[Any] = (),
    ) -> int:
        """Apply patch only if the stored version still equals expected_version.

        guards are extra WHERE criteria checked in the same statement. Returns
        the new version. Raises ConflictingWrite when any precondition fails
        and RateLimited when the store reports lock contention.
        """
        values = dict(patch)
        values["version"] = expected_version + 1
        stmt = (
            update(model)
            .where(model.id == entity_id, model.version == expected_version, *guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.session.execute(stmt)
            if result.rowcount != 1:
                await self.session.rollback()
                logger.debug(f"CAS miss on {model.__tablename__}:{entity_id[:8]} v{expected_version}")
                raise ConflictingWrite(entity_id)
            if commit:
                await self.session.commit()
        except OperationalError as e:
            await self.session.rollback()
            if _is_busy(e):
                raise RateLimited() from e
            raise
        return expected_version + 1

    async def append(self, entry: TaskHistory) -> TaskHistory:
        """Insert one audit entry in its own transaction."""
        self.session.add(entry)
        try:
            await self.session.commit()
        except OperationalError as e:
            await self.session.rollback()
            if _is_busy(e):
                raise RateLimited() from e
            raise
        return entry

    async def append_many(self, entries: Sequence[TaskHistory]) -> Sequence[TaskHistory]:
        if not entries:
            return entries
        self.session.add_all(list(entries))
        try:
            await self.session.commit()
        except OperationalError as e:
            await self.session.rollback()
            if _is_busy(e):
                raise RateLimited() from e
            raise
        return entries

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except OperationalError as e:
            await self.session.rollback()
            if _is_busy(e):
                raise RateLimited() from e
            raise

    async def rollback(self) -> None:
        await self.session.rollback()

    async def refresh(self, obj, attribute_names: Optional[list] = None) -> None:
        await self.session.refresh(obj, attribute_names)
