"""
Module: guarantee_kernel.db.engine
Responsibility: Process-wide database binding.  One engine and one session
    factory per process; services receive the factory, tests and scripts
    bind it from a URL.
Architecture position: Kernel > DB.  Imports models only inside
    create_tables/drop_tables, to register the mapped tables.

Invariants enforced:
    - Non-SQLite URLs run at READ COMMITTED; workflow rows are serialized
      by SELECT ... FOR UPDATE in the unit of work, not by isolation level.
    - SQLite (tests, local tooling) shares one connection via StaticPool so
      an in-memory database survives across sessions.
    - Sessions keep attribute state after commit (expire_on_commit=False);
      DTOs are built from committed rows without reloading.

Failure modes:
    - RuntimeError from any helper used before init_engine_from_url().
"""

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from guarantee_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_POOL_DEFAULTS = {
    "pool_pre_ping": True,
    "pool_timeout": 30,
    "pool_recycle": 1800,
}

_engine: Engine | None = None
_factory: sessionmaker[Session] | None = None


def _bound_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("No database bound; call init_engine_from_url() first")
    return _engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> Engine:
    """Bind the process to ``database_url`` and return the new engine.

    Rebinding replaces the previous engine without disposing it; call
    reset_engine() first when that matters.
    """
    global _engine, _factory

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            isolation_level="READ COMMITTED",
            **_POOL_DEFAULTS,
        )

    _engine = engine
    _factory = sessionmaker(bind=engine, expire_on_commit=False)

    configure_logging()
    logger.info(
        "engine_initialized",
        extra={"dialect": engine.dialect.name, "pool_size": pool_size, "echo": echo},
    )
    return engine


def get_session_factory() -> sessionmaker[Session]:
    """Factory handed to the ConsistencyCoordinator (one session per unit of work)."""
    if _factory is None:
        raise RuntimeError("No database bound; call init_engine_from_url() first")
    return _factory


@contextmanager
def session_scope() -> Iterator[Session]:
    """Commit on clean exit, roll back and re-raise otherwise; always close."""
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("session_scope_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables() -> None:
    from guarantee_kernel.db.base import Base
    import guarantee_kernel.models  # noqa: F401

    Base.metadata.create_all(_bound_engine())
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    """Test helper: drops every mapped table."""
    from guarantee_kernel.db.base import Base
    import guarantee_kernel.models  # noqa: F401

    Base.metadata.drop_all(_bound_engine())


def reset_engine() -> None:
    """Dispose the engine and unbind the process."""
    global _engine, _factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _factory = None


def is_postgres() -> bool:
    return _engine is not None and _engine.dialect.name == "postgresql"
