"""SQLite candle and product store.

Every public method opens its own connection and runs in a single
transaction that is committed on success and rolled back on failure; no
transaction spans more than one call.

Updates: v0.2.0 - 2026-09-02 - Sentinel-aware gap counting and product upserts.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Tuple, Union

from api.models import SENTINEL_VOLUME, Candle, Product
from storage import migrations

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a storage operation fails; the transaction has been rolled back."""


class ProductNotFoundError(StoreError):
    """Raised when a product (or its listing time) is not in the store."""


_PRODUCT_COLUMNS: Tuple[str, ...] = (
    "exchange",
    "product_id",
    "base_name",
    "quote_name",
    "base_currency_id",
    "quote_currency_id",
    "status",
    "product_type",
    "is_disabled",
    "trading_disabled",
    "price",
    "volume_24h",
    "base_increment",
    "quote_increment",
    "display_name",
    "alias",
    "alias_to",
    "new_at",
    "raw_json",
    "updated_at",
)


class CandleStore:
    """Durable candle storage keyed by ``(exchange, product_id, time)``."""

    def __init__(self, db_path: Union[str, Path], timeout: float = 30.0, auto_migrate: bool = True) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        if auto_migrate:
            try:
                applied = migrations.upgrade(self.db_path)
            except (sqlite3.Error, OSError) as exc:
                raise StoreError(f"Failed to migrate {self.db_path}: {exc}") from exc
            if applied:
                logger.info("Applied %d migration(s) to %s", len(applied), self.db_path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = migrations.connect(self.db_path, timeout=self.timeout)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Failed to open database {self.db_path}: {exc}") from exc

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(str(exc)) from exc
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Candles
    # ------------------------------------------------------------------

    def count_candles_in_range(self, exchange: str, product_id: str, start: int, end: int) -> int:
        """Count stored rows (real or sentinel) with ``start <= time < end``."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM candles
                WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ?
                """,
                (exchange, product_id, int(start), int(end)),
            ).fetchone()
        return int(row[0])

    def count_gaps_to_fill(self, exchange: str, product_id: str, start: int, end: int,
                           bucket_seconds: int) -> int:
        """Return expected buckets in ``[start, end)`` minus the resolved ones."""
        expected = max(0, (int(end) - int(start)) // bucket_seconds)
        if expected == 0:
            return 0
        grid_end = int(start) + expected * bucket_seconds
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM candles
                WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ?
                  AND (time - ?) % ? = 0
                """,
                (exchange, product_id, int(start), grid_end, int(start), bucket_seconds),
            ).fetchone()
        return max(0, expected - int(row[0]))

    def get_missing_candle_timestamps(self, exchange: str, product_id: str, start: int, end: int,
                                      bucket_seconds: int) -> List[int]:
        """Return the unresolved bucket starts in ``[start, end)``, ascending."""
        expected = max(0, (int(end) - int(start)) // bucket_seconds)
        if expected == 0:
            return []
        grid_end = int(start) + expected * bucket_seconds
        with self._transaction() as conn:
            present = {
                int(row[0])
                for row in conn.execute(
                    """
                    SELECT time FROM candles
                    WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ?
                    """,
                    (exchange, product_id, int(start), grid_end),
                )
            }
        return [ts for ts in range(int(start), grid_end, bucket_seconds) if ts not in present]

    def insert_candles(self, exchange: str, product_id: str, candles: Iterable[Candle]) -> int:
        """Insert candles in one transaction, skipping existing keys; return rows written."""
        rows = [(exchange, product_id) + candle.to_row() for candle in candles]
        if not rows:
            return 0
        with self._transaction() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT INTO candles (exchange, product_id, time, open, high, low, close, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(exchange, product_id, time) DO NOTHING
                """,
                rows,
            )
            inserted = conn.total_changes - before
        return inserted

    def insert_sentinel(self, exchange: str, product_id: str, timestamp: int) -> int:
        """Record a confirmed-empty bucket; returns 0 when the bucket was already resolved."""
        return self.insert_candles(exchange, product_id, [Candle.sentinel(timestamp)])

    def get_candles(self, exchange: str, product_id: str, start: int, end: int,
                    include_sentinels: bool = True) -> List[Candle]:
        query = """
            SELECT time, open, high, low, close, volume FROM candles
            WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ?
        """
        if not include_sentinels:
            query += " AND volume != ?"
        query += " ORDER BY time"
        params: tuple = (exchange, product_id, int(start), int(end))
        if not include_sentinels:
            params += (SENTINEL_VOLUME,)
        with self._transaction() as conn:
            return [Candle(int(r[0]), r[1], r[2], r[3], r[4], r[5]) for r in conn.execute(query, params)]

    def iter_candle_times(self, exchange: str, product_id: str, start: int, end: int) -> List[Tuple[int, bool]]:
        """Return ``(time, is_sentinel)`` pairs in ``[start, end)`` ordered by time."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT time, volume FROM candles
                WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ?
                ORDER BY time
                """,
                (exchange, product_id, int(start), int(end)),
            ).fetchall()
        return [(int(ts), float(volume) == SENTINEL_VOLUME) for ts, volume in rows]

    def count_sentinels_in_range(self, exchange: str, product_id: str, start: int, end: int) -> int:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM candles
                WHERE exchange = ? AND product_id = ? AND time >= ? AND time < ? AND volume = ?
                """,
                (exchange, product_id, int(start), int(end), SENTINEL_VOLUME),
            ).fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Products
    # ------------------------------------------------------------------

    def upsert_products(self, exchange: str, products: Iterable[Product]) -> int:
        """Insert or replace product metadata keyed by ``(exchange, product_id)``."""
        now = int(time.time())
        rows = [
            (
                exchange,
                p.product_id,
                p.base_name,
                p.quote_name,
                p.base_currency_id,
                p.quote_currency_id,
                p.status,
                p.product_type,
                int(p.is_disabled),
                int(p.trading_disabled),
                p.price,
                p.volume_24h,
                p.base_increment,
                p.quote_increment,
                p.display_name,
                p.alias,
                json.dumps(p.alias_to),
                p.new_at,
                json.dumps(p.raw, sort_keys=True),
                now,
            )
            for p in products
            if p.product_id
        ]
        if not rows:
            return 0

        placeholders = ", ".join("?" for _ in _PRODUCT_COLUMNS)
        updates = ", ".join(f"{col} = excluded.{col}" for col in _PRODUCT_COLUMNS[2:])
        with self._transaction() as conn:
            conn.executemany(
                f"""
                INSERT INTO products ({", ".join(_PRODUCT_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(exchange, product_id) DO UPDATE SET {updates}
                """,
                rows,
            )
        return len(rows)

    def get_product_new_at(self, exchange: str, product_id: str) -> int:
        """Return the product's listing time in epoch seconds."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT new_at FROM products WHERE exchange = ? AND product_id = ?",
                (exchange, product_id),
            ).fetchone()
        if row is None:
            raise ProductNotFoundError(f"Product {product_id} not found for {exchange}; run a product sync first")
        if row[0] is None:
            raise ProductNotFoundError(f"Product {product_id} has no listing time recorded")
        return int(row[0])

    def get_all_products(self, exchange: str, include_disabled: bool = False) -> List[Product]:
        query = f"SELECT {', '.join(_PRODUCT_COLUMNS)} FROM products WHERE exchange = ?"
        if not include_disabled:
            query += " AND is_disabled = 0"
        query += " ORDER BY product_id"
        with self._transaction() as conn:
            rows = conn.execute(query, (exchange,)).fetchall()
        return [self._row_to_product(row) for row in rows]

    @staticmethod
    def _row_to_product(row: tuple) -> Product:
        record = dict(zip(_PRODUCT_COLUMNS, row))
        return Product(
            product_id=record["product_id"],
            base_name=record["base_name"] or "",
            quote_name=record["quote_name"] or "",
            base_currency_id=record["base_currency_id"] or "",
            quote_currency_id=record["quote_currency_id"] or "",
            status=record["status"] or "",
            product_type=record["product_type"] or "",
            is_disabled=bool(record["is_disabled"]),
            trading_disabled=bool(record["trading_disabled"]),
            price=record["price"] or 0.0,
            volume_24h=record["volume_24h"] or 0.0,
            base_increment=record["base_increment"] or 0.0,
            quote_increment=record["quote_increment"] or 0.0,
            display_name=record["display_name"] or "",
            alias=record["alias"] or "",
            alias_to=json.loads(record["alias_to"] or "[]"),
            new_at=record["new_at"],
            raw=json.loads(record["raw_json"] or "{}"),
        )

    def earliest_product_start(self, exchange: str) -> Optional[int]:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT MIN(new_at) FROM products WHERE exchange = ? AND is_disabled = 0",
                (exchange,),
            ).fetchone()
        return int(row[0]) if row and row[0] is not None else None

    def ping(self) -> bool:
        """Return True when the database answers a trivial query."""
        try:
            with self._transaction() as conn:
                conn.execute("SELECT 1").fetchone()
        except StoreError as exc:
            logger.warning("Database ping failed: %s", exc)
            return False
        return True
