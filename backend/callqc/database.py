"""
Database engine and session management for CallQC.

A single SQLite file is shared by the HTTP server, the digest endpoints and
the pipeline workers, so every connection runs in WAL mode.
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import get_database_url

logger = logging.getLogger('callqc.database')

Base = declarative_base()


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Database:
    """Owns the engine and session factory for one database file."""

    def __init__(self, url: Optional[str] = None):
        self.url = url or get_database_url()
        connect_args = {}
        if self.url.startswith("sqlite"):
            connect_args = {"check_same_thread": False, "timeout": 30}
            db_file = self.url.replace("sqlite:///", "", 1)
            if db_file and db_file != self.url and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        self.engine = create_engine(self.url, connect_args=connect_args, future=True)
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _sqlite_pragmas)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        logger.info(f"Database configured: {self.url}")

    def create_tables(self) -> None:
        # Import models so every table is registered on Base.metadata
        from . import models  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def drop_tables(self) -> None:
        from . import models  # noqa: F401
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional scope: commit on success, roll back on error."""
        db_session = self.SessionLocal()
        try:
            yield db_session
            db_session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error, rolling back: {e}")
            db_session.rollback()
            raise
        except Exception:
            db_session.rollback()
            raise
        finally:
            db_session.close()

    @contextmanager
    def scope(self, db_session: Optional[Session] = None) -> Iterator[Session]:
        """Join an outer transaction when one is given, else open a new one."""
        if db_session is not None:
            yield db_session
            return
        with self.session() as new_session:
            yield new_session

    def ping(self) -> bool:
        with self.engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return True

    def journal_mode(self) -> str:
        with self.engine.connect() as connection:
            return connection.execute(text("PRAGMA journal_mode")).scalar()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(database: Database) -> Iterator[Session]:
    """Yield a session for request-scoped use and always close it."""
    db_session = database.SessionLocal()
    try:
        yield db_session
    finally:
        db_session.close()
