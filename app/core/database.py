"""Database configuration and session management for SQLite.

This module configures the SQLite database engine with settings optimized
for a web application: WAL mode for concurrent access and foreign key
enforcement for data integrity.

SQLite Configuration Choices:
    - **WAL (Write-Ahead Logging)**: Allows concurrent readers while writing.
      The background sync sweep writes external blocks while request
      handlers read the agenda.

    - **Foreign Keys**: Disabled by default in SQLite. Enabled so attendee
      links and change requests always reference an existing event.

    - **check_same_thread=False**: Required for FastAPI. Sessions may be
      handed between threads by the dependency injection machinery.

The non-overlap rule for schedule events is a trigger created together with
the ``scheduleevent`` table (see ``app.models.event``). The trigger only
compares stored rows, so writes that expand recurring events in Python take
the write lock first with ``begin_immediate``; the check and the write then
cannot interleave with another writer.
"""

from sqlalchemy import event as sa_event
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, create_engine

from app.core.config import settings

OVERLAP_CONSTRAINT = "schedule_events_no_overlap"

connect_args = {"check_same_thread": False}

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=settings.debug,  # Log SQL statements when DEBUG=true
)


def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite pragmas on each new connection.

    These settings are connection-level, not database-level, so they must
    be set each time a new connection is established from the pool.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


sa_event.listen(engine, "connect", set_sqlite_pragma)


def is_overlap_violation(error: IntegrityError) -> bool:
    """Return True if the error was raised by the overlap trigger."""
    return OVERLAP_CONSTRAINT in str(error.orig)


def begin_immediate(session: Session) -> None:
    """Take SQLite's write lock for the rest of the session's transaction.

    A no-op when the connection already holds a transaction (an earlier
    flush already took the lock). Other writers wait up to the driver's
    busy timeout.
    """
    connection = session.connection()
    if not connection.connection.dbapi_connection.in_transaction:
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def create_db_and_tables():
    """Create all database tables."""
    # Table modules register themselves on SQLModel.metadata when imported
    import app.models  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session():
    """Dependency for getting database session."""
    with Session(engine) as session:
        yield session
