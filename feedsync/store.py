# feedsync/store.py
from typing import Any, Callable, Iterable, Optional, Type, TypeVar

from sqlalchemy import func, select, update, delete as sa_delete
from sqlalchemy.orm import sessionmaker

from .db import Base, session_scope

M = TypeVar("M", bound=Base)


def _where(model, stmt, filters: dict):
    for field, value in filters.items():
        column = getattr(model, field)
        if isinstance(value, (list, tuple, set)):
            stmt = stmt.where(column.in_(list(value)))
        elif value is None:
            stmt = stmt.where(column.is_(None))
        else:
            stmt = stmt.where(column == value)
    return stmt


class CatalogStore:
    """Canonical store for suppliers, products, variants, assets and sync sessions.

    Every call runs in its own short transaction. Returned rows are detached
    (the session factory does not expire on commit) so callers can read
    plain attributes after the call returns.
    """

    def __init__(self, factory: sessionmaker):
        self.factory = factory

    def find(self, model: Type[M], **filters) -> Optional[M]:
        with session_scope(self.factory) as s:
            return s.scalars(_where(model, select(model), filters).limit(1)).first()

    def get(self, model: Type[M], id: int) -> Optional[M]:
        with session_scope(self.factory) as s:
            return s.get(model, id)

    def find_many(self, model: Type[M], order_by=None, limit: int | None = None, offset: int = 0,
                  where: tuple = (), **filters) -> list[M]:
        """``where`` takes extra SQLAlchemy clauses for range filters."""
        stmt = _where(model, select(model), filters).where(*where)
        if order_by is not None:
            stmt = stmt.order_by(order_by)
        else:
            stmt = stmt.order_by(model.id)
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        with session_scope(self.factory) as s:
            return list(s.scalars(stmt).all())

    def find_many_by_keys(self, model: Type[M], key: str, keys: Iterable[Any], columns: tuple[str, ...] = (),
                          **filters) -> list:
        """One ``key IN (...)`` query. With ``columns`` returns tuples instead of rows."""
        keys = list(dict.fromkeys(keys))
        if not keys:
            return []
        key_col = getattr(model, key)
        if columns:
            stmt = select(key_col, *[getattr(model, c) for c in columns])
        else:
            stmt = select(model)
        stmt = _where(model, stmt.where(key_col.in_(keys)), filters)
        with session_scope(self.factory) as s:
            if columns:
                return [tuple(row) for row in s.execute(stmt).all()]
            return list(s.scalars(stmt).all())

    def count(self, model: Type[M], where: tuple = (), **filters) -> int:
        stmt = _where(model, select(func.count()).select_from(model), filters).where(*where)
        with session_scope(self.factory) as s:
            return int(s.execute(stmt).scalar_one())

    def create(self, model: Type[M], data: dict) -> M:
        with session_scope(self.factory) as s:
            row = model(**data)
            s.add(row)
            s.flush()
            s.refresh(row)
            return row

    def update(self, model: Type[M], id: int, data: dict) -> Optional[M]:
        with session_scope(self.factory) as s:
            row = s.get(model, id)
            if row is None:
                return None
            for field, value in data.items():
                setattr(row, field, value)
            s.flush()
            s.refresh(row)
            return row

    def locked_update(self, model: Type[M], key: str, value: Any, change: Callable[[M], None]) -> Optional[M]:
        """Read-modify-write of one row under ``SELECT ... FOR UPDATE``."""
        stmt = select(model).where(getattr(model, key) == value).with_for_update()
        with session_scope(self.factory) as s:
            row = s.scalars(stmt).first()
            if row is None:
                return None
            change(row)
            s.flush()
            s.refresh(row)
            return row

    def update_where(self, model: Type[M], data: dict, **filters) -> int:
        """Conditional bulk update; the rowcount tells the caller whether it won."""
        stmt = _where(model, update(model), filters).values(**data)
        with session_scope(self.factory) as s:
            return int(s.execute(stmt).rowcount or 0)

    def increment(self, model: Type[M], key: str, value: Any, field: str, by: int | float = 1) -> int:
        column = getattr(model, field)
        stmt = update(model).where(getattr(model, key) == value).values(
            {field: func.coalesce(column, 0) + by})
        with session_scope(self.factory) as s:
            return int(s.execute(stmt).rowcount or 0)

    def delete(self, model: Type[M], id: int) -> bool:
        with session_scope(self.factory) as s:
            return bool(s.execute(sa_delete(model).where(model.id == id)).rowcount)

    def delete_where(self, model: Type[M], **filters) -> int:
        with session_scope(self.factory) as s:
            return int(s.execute(_where(model, sa_delete(model), filters)).rowcount or 0)

    def ping(self) -> bool:
        with session_scope(self.factory) as s:
            s.execute(select(1))
        return True
