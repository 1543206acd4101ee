"""
Engine, session factory and transaction scopes.

Every write path in the sync pipeline runs inside a short transaction scope
(one order, or one batch of financial events). A dry-run unit of work hands
out scopes that share one session, flush instead of committing, and roll
everything back when the run ends.
"""

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pnl_sync.core.config import settings
from pnl_sync.core.logging import get_logger
from pnl_sync.db.base import Base

logger = get_logger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    SQLite gets foreign-key enforcement, and in-memory SQLite a static pool
    so every session sees the same database.

    Args:
        db_url: Database URL (defaults to settings.database_url)
        echo: Log SQL statements

    Returns:
        Engine
    """
    url = db_url or settings.database_url

    if url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        else:
            db_path = Path(url.replace("sqlite:///", ""))
            db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(url, echo=echo, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=settings.db_pool_recycle,
        pool_pre_ping=True,
    )


def init_database(engine: Engine) -> None:
    """
    Create all tables that do not exist yet.

    Args:
        engine: Target engine
    """
    Base.metadata.create_all(engine)
    logger.info("Database schema ready", extra={"url": str(engine.url)})


def create_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Session factory bound to an engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    """
    Provide a transactional scope around a series of operations.

    Commits on success, rolls back and re-raises on error.
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


class UnitOfWork:
    """
    Hands out transaction scopes for one sync run.

    In dry-run mode all scopes share a single session; changes are flushed so
    later reads in the same run see them, and ``close`` discards them.

    Examples:
        >>> uow = UnitOfWork(session_factory, dry_run=True)
        >>> with uow.transaction() as session:
        ...     session.add(order)
        >>> uow.close()  # nothing was persisted
    """

    def __init__(self, session_factory: sessionmaker[Session], dry_run: bool = False) -> None:
        self.session_factory = session_factory
        self.dry_run = dry_run
        self._dry_run_session: Optional[Session] = None

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Scope for one all-or-nothing write."""
        if not self.dry_run:
            with session_scope(self.session_factory) as session:
                yield session
            return

        if self._dry_run_session is None:
            self._dry_run_session = self.session_factory()

        session = self._dry_run_session
        yield session
        session.flush()

    def close(self) -> None:
        """Release resources; dry-run changes are rolled back."""
        if self._dry_run_session is not None:
            self._dry_run_session.rollback()
            self._dry_run_session.close()
            self._dry_run_session = None

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
