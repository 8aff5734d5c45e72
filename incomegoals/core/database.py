from typing import Iterable, Optional
import logging

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from incomegoals.core.config import settings

logger = logging.getLogger(__name__)


def _engine_kwargs(database_url: str) -> dict:
    """SQLite needs cross-thread access, and in-memory databases one shared connection."""
    if not database_url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs = {"connect_args": {"check_same_thread": False}}
    if database_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(settings.database_url, **_engine_kwargs(settings.database_url))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def upsert(
    db: Session,
    model,
    values: dict,
    conflict_columns: Iterable[str],
    update_columns: Optional[Iterable[str]] = None,
):
    """
    Insert a row or update it in place when the unique key already exists.

    Relies on the database's own ON CONFLICT handling, so concurrent writers
    on the same key converge to last-write-wins without application locks.
    The caller owns the transaction (commit/rollback).
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise ValueError(f"Upsert not supported for dialect: {dialect}")

    conflict_columns = list(conflict_columns)
    if update_columns is None:
        update_columns = [key for key in values if key not in conflict_columns]

    stmt = insert(model.__table__).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=conflict_columns,
        set_={column: stmt.excluded[column] for column in update_columns},
    )
    db.execute(stmt)
