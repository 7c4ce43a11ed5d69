"""SQLite schema creation and migrations."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

SCHEMA_VERSION = 1

TABLES: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        email               TEXT    NOT NULL UNIQUE,
        name                TEXT    DEFAULT '',
        is_active           INTEGER DEFAULT 1,
        notify_email        INTEGER DEFAULT 1,
        notify_telegram     INTEGER DEFAULT 0,
        notify_line         INTEGER DEFAULT 0,
        telegram_chat_id    TEXT    DEFAULT '',
        line_user_id        TEXT    DEFAULT '',
        created_at          TEXT    NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS exchanges (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id         INTEGER NOT NULL,
        name            TEXT    NOT NULL,
        type            TEXT    NOT NULL,
        api_key         TEXT    NOT NULL,
        api_secret      TEXT    NOT NULL,
        passphrase      TEXT    DEFAULT '',
        is_active       INTEGER DEFAULT 1,
        last_sync_at    TEXT,
        created_at      TEXT    NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategies (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id         INTEGER NOT NULL,
        exchange_id     INTEGER NOT NULL,
        name            TEXT    NOT NULL,
        description     TEXT    DEFAULT '',
        pair            TEXT    NOT NULL,
        base_currency   TEXT    NOT NULL,
        quote_currency  TEXT    NOT NULL,
        amount          REAL    NOT NULL CHECK (amount > 0),
        amount_type     TEXT    NOT NULL DEFAULT 'fixed',
        frequency       TEXT    NOT NULL,
        start_date      TEXT    NOT NULL,
        end_date        TEXT,
        is_active       INTEGER DEFAULT 1,
        created_at      TEXT    NOT NULL,
        updated_at      TEXT    NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE,
        FOREIGN KEY (exchange_id) REFERENCES exchanges(id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS strategy_conditions (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id     INTEGER NOT NULL,
        type            TEXT    NOT NULL,
        operator        TEXT    NOT NULL,
        value           REAL    NOT NULL,
        is_active       INTEGER DEFAULT 1,
        FOREIGN KEY (strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS executions (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        strategy_id         INTEGER NOT NULL,
        amount              REAL    NOT NULL,
        quantity            REAL    DEFAULT 0.0,
        price               REAL    DEFAULT 0.0,
        fee                 REAL    DEFAULT 0.0,
        status              TEXT    NOT NULL DEFAULT 'pending',
        type                TEXT    NOT NULL DEFAULT 'scheduled',
        exchange_order_id   TEXT    DEFAULT '',
        client_order_id     TEXT    DEFAULT '',
        error_message       TEXT    DEFAULT '',
        timestamp           TEXT    NOT NULL,
        updated_at          TEXT,
        FOREIGN KEY (strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_jobs (
        strategy_id     INTEGER PRIMARY KEY,
        next_run_at     TEXT    NOT NULL,
        last_run_at     TEXT,
        run_count       INTEGER DEFAULT 0,
        failure_count   INTEGER DEFAULT 0,
        is_active       INTEGER DEFAULT 1,
        locked_by       TEXT    DEFAULT '',
        locked_until    TEXT,
        FOREIGN KEY (strategy_id) REFERENCES strategies(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id         INTEGER NOT NULL,
        type            TEXT    NOT NULL,
        title           TEXT    NOT NULL,
        message         TEXT    NOT NULL,
        data            TEXT    DEFAULT '{}',
        channels        TEXT    DEFAULT '',
        is_read         INTEGER DEFAULT 0,
        created_at      TEXT    NOT NULL,
        FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
    )
    """,
]

INDEXES: list[str] = [
    "CREATE INDEX IF NOT EXISTS idx_exchanges_user ON exchanges(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_strategies_user ON strategies(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_strategies_exchange ON strategies(exchange_id)",
    "CREATE INDEX IF NOT EXISTS idx_conditions_strategy ON strategy_conditions(strategy_id)",
    "CREATE INDEX IF NOT EXISTS idx_executions_strategy_ts ON executions(strategy_id, timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_executions_status_ts ON executions(status, timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_jobs_due ON scheduled_jobs(is_active, next_run_at)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at DESC)",
]


async def run_migrations(db_path: str) -> None:
    """Create all tables and indexes if they don't exist."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        for ddl in TABLES:
            await db.execute(ddl)
        for idx in INDEXES:
            await db.execute(idx)
        await db.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await db.commit()
