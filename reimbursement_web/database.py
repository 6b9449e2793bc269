"""Database setup utilities for the reimbursement service."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import (
    BigInteger,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from packages.reimbursement_common import StorageUnavailable

logger = logging.getLogger(__name__)

metadata = MetaData()

reimbursement_requests = Table(
    "reimbursement_requests",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("title", String(255), nullable=False),
    Column("subtitle", String(255), nullable=False, default=""),
    Column("description", Text, nullable=False, default=""),
    Column("expense_date", Date, nullable=True),
    Column("total_amount_cents", BigInteger, nullable=False),
    Column("status", String(16), nullable=False, index=True),
    Column("submitted_at", DateTime(timezone=True), nullable=False, index=True),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    Column("processed_by", String(64), nullable=True),
    Column("notes", Text, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

reimbursement_items = Table(
    "reimbursement_items",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "request_id",
        ForeignKey("reimbursement_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("position", Integer, nullable=False),
    Column("description", Text, nullable=False),
    Column("amount_cents", BigInteger, nullable=False),
    Column("category", String(120), nullable=False),
    Column("expense_date", Date, nullable=False),
    Column("receipt_reference", String(512), nullable=True),
)

reimbursement_files = Table(
    "reimbursement_files",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "request_id",
        ForeignKey("reimbursement_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column(
        "item_id",
        ForeignKey("reimbursement_items.id", ondelete="SET NULL"),
        nullable=True,
    ),
    Column("file_name", String(255), nullable=False),
    Column("file_path", String(512), nullable=False),
    Column("file_size", Integer, nullable=False),
    Column("mime_type", String(120), nullable=True),
    Column("uploaded_at", DateTime(timezone=True), nullable=False),
)

status_changes = Table(
    "status_changes",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "request_id",
        ForeignKey("reimbursement_requests.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("from_status", String(16), nullable=False),
    Column("to_status", String(16), nullable=False),
    Column("actor_id", String(64), nullable=False),
    Column("kind", String(16), nullable=False),
    Column("notes", Text, nullable=True),
    Column("changed_at", DateTime(timezone=True), nullable=False),
)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""

    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_db_engine(database_url: str) -> Engine:
    """Return a SQLAlchemy engine for the provided URL.

    SQLite connections get ``PRAGMA foreign_keys = ON`` so item and file rows
    cascade with their request.
    """

    engine = create_engine(database_url, future=True)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys = ON")
            cursor.close()

    return engine


def init_schema(engine: Engine) -> None:
    """Create database tables if they do not exist."""

    metadata.create_all(engine)


@contextmanager
def session_scope(engine: Engine) -> Iterator[Session]:
    """Context manager that yields a SQLAlchemy :class:`Session`.

    The session commits when the block exits cleanly and rolls back on any
    exception. Connectivity failures surface as :class:`StorageUnavailable`
    once the rollback has happened.
    """

    with Session(engine, future=True) as session:
        try:
            yield session
            session.commit()
        except OperationalError as exc:
            session.rollback()
            logger.exception("Database operation failed; transaction rolled back")
            raise StorageUnavailable("The reimbursement store is unavailable.") from exc
        except Exception:
            session.rollback()
            raise
