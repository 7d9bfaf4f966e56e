"""
store.py — Durable Order Store (SQLite)

Committed orders are stored as one row in `orders` plus one row per item in
`order_items`, written in a single transaction. Saving is idempotent on the
order number: a repeated save of the same order is a no-op.

Each operation opens its own connection, so the store can be used from worker
threads (the workflow writes via asyncio.to_thread).
"""

import logging
import sqlite3
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional, Protocol

from .models import Item, Order

log = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS orders (
    order_number TEXT PRIMARY KEY,
    created_at   TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS order_items (
    order_number TEXT    NOT NULL REFERENCES orders(order_number),
    position     INTEGER NOT NULL,
    sku_code     TEXT    NOT NULL,
    quantity     INTEGER NOT NULL,
    unit_price   TEXT    NOT NULL,
    PRIMARY KEY (order_number, position)
);
"""


class OrderStoreError(Exception):
    """Persisting or reading an order failed."""


class OrderStore(Protocol):
    def save(self, order: Order) -> None: ...


class SqliteOrderStore:
    """
    OrderStore backed by a SQLite database file.

    Args:
        db_path (str | Path): Location of the database file. Parent directories are created.
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)

    def connect(self) -> sqlite3.Connection:
        """
        Opens a connection with WAL and foreign keys enabled.

        Raises:
            OrderStoreError: If the database cannot be opened or configured (e.g. locked).
        """
        try:
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=5)
        except sqlite3.Error as e:
            log.error(f"Datenbank {self.db_path} kann nicht geöffnet werden: {e}")
            raise OrderStoreError(f"Could not open {self.db_path}: {e}") from e
        try:
            # WAL erlaubt parallele Leser während eines Schreibvorgangs
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA foreign_keys=ON;")
        except sqlite3.Error as e:
            conn.close()
            log.error(f"Datenbank {self.db_path} kann nicht konfiguriert werden: {e}")
            raise OrderStoreError(f"Could not configure {self.db_path}: {e}") from e
        return conn

    def init_db(self) -> None:
        """Creates the schema if it does not exist yet. Safe to call repeatedly."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        conn = self.connect()
        try:
            conn.executescript(SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def save(self, order: Order) -> None:
        """
        Persists an order and its items in one transaction.

        Args:
            order (Order): The order to store.

        Raises:
            OrderStoreError: If the database cannot be opened or rejects the write. Nothing is stored in that case.
        """
        conn = self.connect()
        try:
            with conn:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO orders (order_number, created_at) VALUES (?, ?)",
                    (order.orderNumber, datetime.now(timezone.utc).isoformat()),
                )
                if cursor.rowcount == 0:
                    log.info(f"[Order: {order.orderNumber}] Bereits gespeichert, erneutes Speichern ignoriert.")
                    return
                conn.executemany(
                    "INSERT INTO order_items (order_number, position, sku_code, quantity, unit_price) "
                    "VALUES (?, ?, ?, ?, ?)",
                    [
                        (order.orderNumber, position, item.skuCode, item.quantity, str(item.unitPrice))
                        for position, item in enumerate(order.items)
                    ],
                )
            log.info(f"[Order: {order.orderNumber}] Bestellung mit {len(order.items)} Position(en) gespeichert.")
        except sqlite3.Error as e:
            log.error(f"[Order: {order.orderNumber}] Speichern fehlgeschlagen: {e}")
            raise OrderStoreError(f"Could not save order {order.orderNumber}: {e}") from e
        finally:
            conn.close()

    def get(self, order_number: str) -> Optional[Order]:
        conn = self.connect()
        try:
            row = conn.execute(
                "SELECT order_number FROM orders WHERE order_number = ?", (order_number,)
            ).fetchone()
            if row is None:
                return None
            rows = conn.execute(
                "SELECT sku_code, quantity, unit_price FROM order_items "
                "WHERE order_number = ? ORDER BY position",
                (order_number,),
            ).fetchall()
        except sqlite3.Error as e:
            raise OrderStoreError(f"Could not load order {order_number}: {e}") from e
        finally:
            conn.close()
        items = tuple(Item(skuCode=sku, quantity=qty, unitPrice=Decimal(price)) for sku, qty, price in rows)
        return Order(orderNumber=order_number, items=items)

    def count(self) -> int:
        conn = self.connect()
        try:
            return conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0]
        except sqlite3.Error as e:
            raise OrderStoreError(f"Could not count orders: {e}") from e
        finally:
            conn.close()
