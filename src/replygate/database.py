"""SQLite connection setup plus schema creation, reset, migration and row counts."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from replygate.config import Config, load_config

_SCHEMA_PATH = Path(__file__).parent / "schema.sql"


def get_db(config: Config | None = None, db_path: str | None = None) -> sqlite3.Connection:
    """Return a configured SQLite connection.

    Uses WAL mode and row_factory=sqlite3.Row for dict-like access. The
    connection may be shared across threads; callers serialize access
    (see replygate.store.Store).
    """
    if db_path is None:
        if config is None:
            config = load_config()
        db_path = config.storage.sqlite_path

    conn = sqlite3.connect(db_path, timeout=10, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=5000")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Apply schema.sql; every statement is idempotent."""
    schema = _SCHEMA_PATH.read_text()
    conn.executescript(schema)


def reset_db(config: Config | None = None) -> sqlite3.Connection:
    """Delete the database file and start over with an empty schema."""
    if config is None:
        config = load_config()

    db_path = Path(config.storage.sqlite_path)
    if db_path.exists():
        db_path.unlink()

    conn = get_db(config)
    init_db(conn)
    return conn


def migrate_db(conn: sqlite3.Connection) -> list[str]:
    """Add columns introduced after a database was first created.

    Returns one line per column added; an up-to-date database yields [].
    """
    migrations: list[str] = []

    expected_columns = [
        ("messages", "escalation_reason", "TEXT"),
        ("messages", "processed_at", "TIMESTAMP"),
        ("account_settings", "grounding_quality", "TEXT"),
        ("account_settings", "loyal_customer_greeting", "BOOLEAN DEFAULT FALSE"),
        ("approval_queue", "reviewer_note", "TEXT"),
        ("knowledge_chunks", "embedding_model", "TEXT"),
    ]

    for table, column, col_type in expected_columns:
        existing = conn.execute(f"PRAGMA table_info({table})").fetchall()
        if not existing:
            continue
        existing_names = {row["name"] for row in existing}
        if column not in existing_names:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}")
            migrations.append(f"Added {table}.{column} ({col_type})")

    if migrations:
        conn.commit()

    return migrations


def db_stats(conn: sqlite3.Connection) -> dict[str, int]:
    """Row count per table, -1 for a table the database lacks."""
    tables = [
        "account_settings", "automation_rules", "messages", "threads",
        "thread_messages", "knowledge_chunks", "approval_queue",
        "escalation_queue", "activity_log",
    ]
    stats = {}
    for table in tables:
        try:
            row = conn.execute(f"SELECT COUNT(*) as cnt FROM {table}").fetchone()
            stats[table] = row["cnt"]
        except sqlite3.OperationalError:
            stats[table] = -1
    return stats
