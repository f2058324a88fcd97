"""
Schema migrations for the local store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

create_all() already builds every current column on a fresh store, so today
these calls are no-ops there. They are the place where later column
additions go; the queue's `revision` column is the one example kept, since
coalescing depends on it and a queue table created without it would
otherwise fail on first read.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times. Non-SQLite engines are left to create_all().

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # Mutation: revision counter for coalesced writes
        _add_column_if_missing(conn, "mutation", "revision", "INTEGER NOT NULL DEFAULT 0")
        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Tables that do not exist yet are skipped; create_all() makes them whole.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite column definition, e.g. "INTEGER", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if existing_columns and column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
