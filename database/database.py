"""
Database connection and session management
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import NullPool, StaticPool
from sqlalchemy.dialects import postgresql, sqlite

# Base class for models
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    Create an engine for the given URL.

    PostgreSQL gets NullPool and a connect timeout (Cloud Run startup),
    SQLite gets a thread-agnostic connection so sync sessions can be used
    from async request handlers. In-memory SQLite shares one connection.
    """
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, echo=False, **kwargs)

    return create_engine(
        database_url,
        poolclass=NullPool,  # For async compatibility
        echo=False,  # Set to True for SQL logging
        connect_args={
            "connect_timeout": 10,  # 10 second connection timeout
        },
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind: Engine):
    """
    Initialize database tables
    """
    from . import models  # noqa: F401  (registers tables on Base.metadata)

    Base.metadata.create_all(bind=bind)


def insert_for(db: Session, model):
    """
    Dialect-specific INSERT for a model.

    Both the PostgreSQL and SQLite constructs support
    on_conflict_do_nothing / on_conflict_do_update, which every upsert
    in the sync engine relies on.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"Upserts are not supported on dialect {dialect}")
