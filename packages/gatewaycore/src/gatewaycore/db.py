import functools

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from gatewaycore.settings import get_settings

Base = declarative_base()


def engine_kwargs(url: str) -> dict:
    """Engine options for a database URL (SQLite needs cross-thread access)."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


@functools.lru_cache()
def get_engine():
    """
    Get SQLAlchemy engine (cached).

    This function lazily initializes the engine to avoid import-time side effects.
    The engine is created using DATABASE_URL from settings.
    """
    settings = get_settings()
    return create_engine(settings.DATABASE_URL, echo=False, **engine_kwargs(settings.DATABASE_URL))


@functools.lru_cache()
def get_sessionmaker():
    """
    Get SQLAlchemy sessionmaker (cached).
    """
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine=None) -> None:
    """Create all tables registered on ``Base`` (idempotent)."""
    Base.metadata.create_all(bind=engine or get_engine())

