"""Versioned schema migrations for the candle database.

Migrations are ordered ``(version, name, up_sql, down_sql)`` tuples applied
inside one transaction each; applied versions are recorded in
``schema_migrations``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class Migration:
    version: int
    name: str
    up: str
    down: str


@dataclass(slots=True)
class MigrationStatus:
    version: int
    name: str
    applied_at: Optional[int]

    @property
    def applied(self) -> bool:
        return self.applied_at is not None


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        version=1,
        name="create_candles",
        up="""
        CREATE TABLE IF NOT EXISTS candles (
            exchange TEXT NOT NULL,
            product_id TEXT NOT NULL,
            time INTEGER NOT NULL,
            open REAL NOT NULL,
            high REAL NOT NULL,
            low REAL NOT NULL,
            close REAL NOT NULL,
            volume REAL NOT NULL,
            PRIMARY KEY (exchange, product_id, time)
        );
        """,
        down="DROP TABLE IF EXISTS candles;",
    ),
    Migration(
        version=2,
        name="create_products",
        up="""
        CREATE TABLE IF NOT EXISTS products (
            exchange TEXT NOT NULL,
            product_id TEXT NOT NULL,
            base_name TEXT,
            quote_name TEXT,
            base_currency_id TEXT,
            quote_currency_id TEXT,
            status TEXT,
            product_type TEXT,
            is_disabled INTEGER NOT NULL DEFAULT 0,
            trading_disabled INTEGER NOT NULL DEFAULT 0,
            price REAL,
            volume_24h REAL,
            base_increment REAL,
            quote_increment REAL,
            display_name TEXT,
            alias TEXT,
            alias_to TEXT,
            new_at INTEGER,
            raw_json TEXT,
            updated_at INTEGER NOT NULL,
            PRIMARY KEY (exchange, product_id)
        );
        """,
        down="DROP TABLE IF EXISTS products;",
    ),
    Migration(
        version=3,
        name="index_sentinel_candles",
        up="""
        CREATE INDEX IF NOT EXISTS idx_candles_sentinel
        ON candles(exchange, product_id, time) WHERE volume = -1;
        """,
        down="DROP INDEX IF EXISTS idx_candles_sentinel;",
    ),
)

LATEST_VERSION = MIGRATIONS[-1].version


def connect(db_path: Union[str, Path], timeout: float = 30.0) -> sqlite3.Connection:
    """Open a connection with WAL journaling so readers do not block the writers."""
    path = Path(db_path)
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at INTEGER NOT NULL
        )
        """
    )
    conn.commit()


def _applied_versions(conn: sqlite3.Connection) -> dict[int, int]:
    _ensure_version_table(conn)
    rows = conn.execute("SELECT version, applied_at FROM schema_migrations").fetchall()
    return {int(version): int(applied_at) for version, applied_at in rows}


def current_version(db_path: Union[str, Path]) -> int:
    with closing(connect(db_path)) as conn:
        applied = _applied_versions(conn)
    return max(applied) if applied else 0


def status(db_path: Union[str, Path]) -> List[MigrationStatus]:
    """Return every known migration with its applied timestamp (or None)."""
    with closing(connect(db_path)) as conn:
        applied = _applied_versions(conn)
    return [
        MigrationStatus(version=m.version, name=m.name, applied_at=applied.get(m.version))
        for m in MIGRATIONS
    ]


def _apply(conn: sqlite3.Connection, migration: Migration, direction: str) -> None:
    sql = migration.up if direction == "up" else migration.down
    try:
        conn.execute("BEGIN")
        for statement in _split_statements(sql):
            conn.execute(statement)
        if direction == "up":
            conn.execute(
                "INSERT INTO schema_migrations (version, name, applied_at) VALUES (?, ?, ?)",
                (migration.version, migration.name, int(time.time())),
            )
        else:
            conn.execute("DELETE FROM schema_migrations WHERE version = ?", (migration.version,))
        conn.execute("COMMIT")
    except sqlite3.Error:
        conn.execute("ROLLBACK")
        raise
    logger.info("Migration %03d_%s %s", migration.version, migration.name, direction)


def _split_statements(sql: str) -> List[str]:
    return [part.strip() for part in sql.split(";") if part.strip()]


def upgrade(db_path: Union[str, Path], target: Optional[int] = None) -> List[Migration]:
    """Apply pending migrations up to ``target`` (latest by default)."""
    target = LATEST_VERSION if target is None else target
    applied_now: List[Migration] = []
    with closing(connect(db_path)) as conn:
        conn.isolation_level = None
        applied = _applied_versions(conn)
        for migration in MIGRATIONS:
            if migration.version > target or migration.version in applied:
                continue
            _apply(conn, migration, "up")
            applied_now.append(migration)
    return applied_now


def downgrade(db_path: Union[str, Path], steps: int = 1) -> List[Migration]:
    """Roll back the ``steps`` most recently applied migrations (at least one)."""
    steps = max(1, steps)
    reverted: List[Migration] = []
    with closing(connect(db_path)) as conn:
        conn.isolation_level = None
        applied = _applied_versions(conn)
        for migration in sorted(MIGRATIONS, key=lambda m: m.version, reverse=True):
            if len(reverted) >= steps:
                break
            if migration.version not in applied:
                continue
            _apply(conn, migration, "down")
            reverted.append(migration)
    return reverted


def reset(db_path: Union[str, Path]) -> List[Migration]:
    """Roll back every migration, then re-apply all of them."""
    downgrade(db_path, steps=len(MIGRATIONS))
    return upgrade(db_path)

