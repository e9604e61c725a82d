"""
Database Connection
"""
import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auction_house.core.config import get_settings

logger = logging.getLogger(__name__)


def build_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create a SQLAlchemy engine for the given URL

    SQLite gets ``check_same_thread=False`` (the engine is shared by the
    request threadpool) and, for ``:memory:`` URLs, a single static
    connection so every session sees the same database.
    """
    settings = get_settings()
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        echo=echo,
    )


@lru_cache()
def get_engine() -> Engine:
    """Process-wide engine built from settings"""
    settings = get_settings()
    return build_engine(settings.DATABASE_URL, echo=settings.DEBUG)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Optional[Engine] = None) -> None:
    """Initialize database tables"""
    from auction_house.models import Base

    Base.metadata.create_all(bind=engine or get_engine())
    logger.info("✅ Database tables created")
