"""Tenant-scoped data access primitives.

Every helper that reads or writes a tenant-owned table takes the tenant as an
explicit argument. Global rows (``account_id IS NULL``) are only reachable by
passing :data:`GLOBAL_SCOPE`.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from .session import SessionLocal


class TenantRequiredError(ValueError):
    pass


class _GlobalScope:
    def __repr__(self) -> str:
        return "GLOBAL_SCOPE"


GLOBAL_SCOPE = _GlobalScope()


def _is_tenant_owned(model) -> bool:
    return hasattr(model, "account_id")


def tenant_clause(model, account_id: UUID | _GlobalScope | None):
    if account_id is None:
        raise TenantRequiredError(f"tenant is required to access {model.__tablename__}")
    if account_id is GLOBAL_SCOPE:
        return model.account_id.is_(None)
    return model.account_id == account_id


@contextmanager
def transaction() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def query_in_transaction(session: Session, stmt, *, scalars: bool = True) -> list:
    result = session.execute(stmt)
    if scalars:
        return list(result.scalars().all())
    return list(result.all())


def query(stmt, *, scalars: bool = True) -> list:
    with transaction() as session:
        return query_in_transaction(session, stmt, scalars=scalars)


def _filtered(model, account_id, filters: dict[str, Any]):
    stmt = select(model)
    if _is_tenant_owned(model):
        stmt = stmt.where(tenant_clause(model, account_id))
    for key, value in filters.items():
        column = getattr(model, key)
        stmt = stmt.where(column.is_(None) if value is None else column == value)
    return stmt


def find_one_in_transaction(session: Session, model, account_id, **filters):
    stmt = _filtered(model, account_id, filters).limit(1)
    return session.execute(stmt).scalars().first()


def find_one(model, account_id, **filters):
    with transaction() as session:
        return find_one_in_transaction(session, model, account_id, **filters)


def find_many_in_transaction(
    session: Session,
    model,
    account_id,
    *,
    order_by=None,
    limit: int | None = None,
    offset: int = 0,
    **filters,
) -> list:
    stmt = _filtered(model, account_id, filters)
    if order_by is not None:
        stmt = stmt.order_by(*order_by) if isinstance(order_by, (list, tuple)) else stmt.order_by(order_by)
    if offset:
        stmt = stmt.offset(offset)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.execute(stmt).scalars().all())


def find_many(model, account_id, **kwargs) -> list:
    with transaction() as session:
        return find_many_in_transaction(session, model, account_id, **kwargs)


def insert_in_transaction(session: Session, model, values: dict[str, Any]):
    if _is_tenant_owned(model) and values.get("account_id") is None and model.__table__.c.account_id.nullable is False:
        raise TenantRequiredError(f"tenant is required to insert into {model.__tablename__}")
    row = model(**values)
    session.add(row)
    session.flush()
    return row


def insert(model, values: dict[str, Any]):
    with transaction() as session:
        return insert_in_transaction(session, model, values)


def insert_with_tenant_in_transaction(session: Session, model, account_id: UUID, values: dict[str, Any]):
    if account_id is None or account_id is GLOBAL_SCOPE:
        raise TenantRequiredError(f"tenant is required to insert into {model.__tablename__}")
    return insert_in_transaction(session, model, {**values, "account_id": account_id})


def insert_with_tenant(model, account_id: UUID, values: dict[str, Any]):
    with transaction() as session:
        return insert_with_tenant_in_transaction(session, model, account_id, values)


def update_in_transaction(session: Session, model, account_id, row_id: int, values: dict[str, Any]):
    row = find_one_in_transaction(session, model, account_id, id=row_id)
    if row is None:
        return None
    for key, value in values.items():
        if key in {"id", "account_id"}:
            continue
        setattr(row, key, value)
    session.flush()
    return row


def update(model, account_id, row_id: int, values: dict[str, Any]):
    with transaction() as session:
        return update_in_transaction(session, model, account_id, row_id, values)
