from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.config import settings
from app.logging import get_logger

logger = get_logger(__name__)


class Base(DeclarativeBase):
    pass


_engine: Engine | None = None


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        return init_db()
    return _engine


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )


SessionLocal = sessionmaker(autoflush=False, autocommit=False)


def init_db(engine: Engine | None = None) -> Engine:
    """Bind the session factory to ``engine`` (or one built from settings).

    Called from application startup; safe to call more than once.
    """
    global _engine
    if engine is None:
        engine = _engine or _build_engine(settings.database_url)
    _engine = engine
    SessionLocal.configure(bind=engine)
    logger.info("db_initialized dialect=%s", engine.dialect.name)
    return engine


def dispose_db() -> None:
    """Release pooled connections on graceful shutdown."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        logger.info("db_disposed")
    _engine = None


def new_session():
    get_engine()
    return SessionLocal()


def get_db():
    """Centralized database session dependency for FastAPI.

    Yields a database session and ensures it is closed after the request.
    """
    db = new_session()
    try:
        yield db
    finally:
        db.close()
