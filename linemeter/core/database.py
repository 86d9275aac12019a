"""
Database
========

One SQL database holds the plan catalog, subscription periods, the usage
ledger and user accounts. The URL comes from LINEMETER_DATABASE_URL (or
DATABASE_URL) and defaults to a SQLite file under the data directory.

SQLite connections run in WAL mode with a 5s busy timeout and foreign keys
on. The batch jobs wrap each per-period transaction in ``sqlite_retry`` so a
concurrent writer holding the lock does not fail the whole run.
"""

import logging
import random
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine

from linemeter.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA foreign_keys=ON",
)

BUSY_RETRY_ATTEMPTS = 3
BUSY_BACKOFF_MS = (100, 500)

_engine: Optional[Engine] = None


def _redact(url: str) -> str:
    return url.split("@", 1)[-1] if "@" in url else url


def _engine_kwargs(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_size": 5, "max_overflow": 10, "pool_pre_ping": True}


def build_engine(url: str, echo: bool = False) -> Engine:
    """Engine for *url*; SQLite files get their parent directory created."""
    if url.startswith("sqlite:///"):
        db_path = url[len("sqlite:///"):]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(url, echo=echo, **_engine_kwargs(url))

    if engine.dialect.name == "sqlite":
        @event.listens_for(engine, "connect")
        def _on_connect(dbapi_conn, _record):
            cursor = dbapi_conn.cursor()
            for pragma in _SQLITE_PRAGMAS:
                cursor.execute(pragma)
            cursor.close()

    return engine


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        url = settings.get_database_url()
        _engine = build_engine(url, echo=settings.debug)
        logger.info("Database engine created: %s", _redact(url))
    return _engine


@contextmanager
def get_session_context(engine: Optional[Engine] = None) -> Iterator[Session]:
    """
    Session bound to *engine* (the process-wide engine by default).

    Usage::

        with get_session_context(self.engine) as session:
            session.exec(select(Plan))
    """
    with Session(engine or get_engine()) as session:
        yield session


def _is_busy(exc: OperationalError) -> bool:
    return "database is locked" in str(exc).lower()


def sqlite_retry(fn: Callable[[], T], attempts: int = BUSY_RETRY_ATTEMPTS) -> T:
    """Call *fn*, retrying on SQLITE_BUSY with jittered backoff.

    Only the batch jobs use this; request handlers surface storage errors
    to the caller.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except OperationalError as exc:
            if not _is_busy(exc) or attempt == attempts:
                raise
            delay = random.randint(*BUSY_BACKOFF_MS) / 1000
            logger.warning(
                "SQLITE_BUSY retry %d/%d, sleeping %.3fs", attempt, attempts, delay,
            )
            time.sleep(delay)
    raise RuntimeError("sqlite_retry called with attempts < 1")


def init_db() -> None:
    """Bring the schema to head at startup.

    Source checkouts and containers ship alembic.ini next to the package and
    get ``alembic upgrade head``; a bare wheel install falls back to
    ``create_all``.
    """
    from linemeter.models import billing  # noqa: F401  registers tables

    alembic_ini = Path(__file__).resolve().parents[2] / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found at %s, creating tables from metadata", alembic_ini)
        SQLModel.metadata.create_all(get_engine())
        return

    from alembic import command
    from alembic.config import Config

    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(alembic_ini.parent / "alembic"))
    cfg.set_main_option("sqlalchemy.url", settings.get_database_url())
    # Keep the structlog handlers installed by setup_logging
    cfg.attributes["configure_logger"] = False
    try:
        command.upgrade(cfg, "head")
    except Exception as exc:
        logger.error("Alembic migration failed: %s", exc)
        raise
    logger.info("Alembic migrations applied (upgrade head)")


def close_db() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None
    logger.info("Database connections closed")
