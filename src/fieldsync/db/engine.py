"""SQLModel engine singleton and schema setup."""
from sqlmodel import SQLModel, create_engine

from fieldsync.config import get_settings

_engine = None


def build_engine(database_url: str):
    """Create an engine for `database_url` with every table and migration applied."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False  # engine runs under asyncio + API threads
    engine = create_engine(database_url, connect_args=connect_args)
    init_schema(engine)
    return engine


def init_schema(engine) -> None:
    """Create tables and apply migrations. Idempotent."""
    # Import all models so metadata is populated before create_all
    from fieldsync.models.mutation import Mutation  # noqa
    from fieldsync.models.record import EntityRecord  # noqa
    from fieldsync.models.sync import SyncLog  # noqa
    from fieldsync.models.token import CachedToken  # noqa
    SQLModel.metadata.create_all(engine)
    from fieldsync.db.migrations import run_migrations
    run_migrations(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().database_url)
    return _engine
