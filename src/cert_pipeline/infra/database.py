"""SQLAlchemy engine and session factory for the certificate tables."""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def create_db_engine(database_url: str) -> Engine:
    """Create an engine for the given URL (SQLite or any SQLAlchemy URL)."""
    # SQLite needs special connect args; Postgres does not
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url in _MEMORY_URLS:
        # every session must see the same in-memory database
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        connect_args=connect_args,
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create the certificate tables if missing."""
    # Import models to register them with Base
    from . import registry, status_store  # noqa: F401

    Base.metadata.create_all(bind=engine)
