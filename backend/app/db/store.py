"""
Row-oriented persistence client for the forms tables.

The forms service talks to the database only through the primitives below
(insert / select / update / delete with equality filters), so rows cross
this boundary as plain dicts. Two write modes are supported:

- transactional (default): writes are flushed and the surrounding
  `transaction()` block commits or rolls back as a unit;
- autocommit: every write primitive commits on its own, which mirrors a
  thin REST-style data client. `committed_writes` lets callers detect
  that a failure happened after earlier writes already landed.
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import delete as sa_delete, select, update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PersistenceError
from app.core.logging import db_logger
from app.db.models import Form, FormField, FormResponse, FormResponseData, FormStep

Row = Dict[str, Any]


def row_to_dict(obj) -> Row:
    return {column.key: getattr(obj, column.key) for column in obj.__table__.columns}


class FormStore:
    COLLECTIONS = {
        "forms": Form,
        "form_steps": FormStep,
        "form_fields": FormField,
        "form_responses": FormResponse,
        "form_response_data": FormResponseData,
    }

    def __init__(self, session: AsyncSession, *, autocommit: bool = False):
        self.session = session
        self.autocommit = autocommit
        self.committed_writes = 0

    def _model(self, collection: str):
        try:
            return self.COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    @staticmethod
    def _where(model, filters: Optional[Mapping[str, Any]]) -> list:
        clauses = []
        for column, value in (filters or {}).items():
            attr = getattr(model, column)
            if isinstance(value, (list, tuple, set, frozenset)):
                clauses.append(attr.in_(list(value)))
            else:
                clauses.append(attr == value)
        return clauses

    async def _complete_write(self) -> None:
        if self.autocommit:
            await self.session.commit()
            self.committed_writes += 1

    async def _abort(self, action: str, collection: str, exc: Exception) -> PersistenceError:
        if self.autocommit:
            await self.session.rollback()
        db_logger.error(f"{action} on {collection} failed", error=exc)
        return PersistenceError(f"Failed to {action} {collection}", operation=f"{action}:{collection}")

    async def insert(self, collection: str, values: Mapping[str, Any]) -> Row:
        model = self._model(collection)
        try:
            obj = model(**dict(values))
            self.session.add(obj)
            await self.session.flush()
            row = row_to_dict(obj)
            await self._complete_write()
        except SQLAlchemyError as exc:
            raise await self._abort("insert", collection, exc) from exc
        return row

    async def insert_many(self, collection: str, rows: Iterable[Mapping[str, Any]]) -> List[Row]:
        model = self._model(collection)
        objects = [model(**dict(values)) for values in rows]
        if not objects:
            return []
        try:
            self.session.add_all(objects)
            await self.session.flush()
            inserted = [row_to_dict(obj) for obj in objects]
            await self._complete_write()
        except SQLAlchemyError as exc:
            raise await self._abort("insert", collection, exc) from exc
        return inserted

    async def select(
        self,
        collection: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Row]:
        model = self._model(collection)
        stmt = select(model).where(*self._where(model, filters)).execution_options(populate_existing=True)
        if order_by:
            column = getattr(model, order_by)
            stmt = stmt.order_by(column.desc() if descending else column.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            result = await self.session.execute(stmt)
            return [row_to_dict(obj) for obj in result.scalars().all()]
        except SQLAlchemyError as exc:
            raise await self._abort("select", collection, exc) from exc

    async def update(self, collection: str, values: Mapping[str, Any], *, filters: Mapping[str, Any]) -> List[Row]:
        """Update matching rows and return them re-read with the same filters."""
        model = self._model(collection)
        if not filters:
            raise ValueError("update requires at least one filter")
        stmt = (
            sa_update(model)
            .where(*self._where(model, filters))
            .values(**dict(values))
            .execution_options(synchronize_session=False)
        )
        try:
            await self.session.execute(stmt)
            await self._complete_write()
        except SQLAlchemyError as exc:
            raise await self._abort("update", collection, exc) from exc
        return await self.select(collection, filters=filters)

    async def delete(self, collection: str, *, filters: Mapping[str, Any]) -> int:
        model = self._model(collection)
        if not filters:
            raise ValueError("delete requires at least one filter")
        stmt = sa_delete(model).where(*self._where(model, filters)).execution_options(synchronize_session=False)
        try:
            result = await self.session.execute(stmt)
            await self._complete_write()
        except SQLAlchemyError as exc:
            raise await self._abort("delete", collection, exc) from exc
        return result.rowcount or 0

    @asynccontextmanager
    async def transaction(self):
        """Commit everything written inside the block, or roll it back on error."""
        try:
            yield self
            if not self.autocommit:
                await self.session.commit()
        except SQLAlchemyError as exc:
            await self.session.rollback()
            db_logger.error("transaction commit failed", error=exc)
            raise PersistenceError("Failed to commit changes", operation="commit") from exc
        except BaseException:
            await self.session.rollback()
            raise
