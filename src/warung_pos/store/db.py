from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from ..errors import NotFound, ValidationError
from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .constants import (
    DEFAULT_DETECTION_LABELS,
    DEFAULT_LOW_STOCK_THRESHOLD,
    DIRECTION_CHOICES,
    STATUS_CHOICES,
    STATUS_PENDING,
)
from .models import Product, Transaction, TransactionItem


LOG = get_logger("store-db")


DEFAULT_DB_FOLDER = "warung"
DEFAULT_DB_FILENAME = "warung.sqlite3"

DIRECTION_ENUM_SQL = ", ".join(f"'{value}'" for value in DIRECTION_CHOICES)
STATUS_ENUM_SQL = ", ".join(f"'{value}'" for value in STATUS_CHOICES)


SCHEMA_SQL = f"""
PRAGMA foreign_keys = ON;

-- 1) Catalog
CREATE TABLE IF NOT EXISTS products (
  product_id          INTEGER PRIMARY KEY,
  barcode             TEXT NOT NULL UNIQUE,
  name                TEXT NOT NULL,
  category            TEXT,
  buy_price           INTEGER NOT NULL DEFAULT 0 CHECK(buy_price >= 0),   -- rupiah
  sell_price          INTEGER NOT NULL DEFAULT 0 CHECK(sell_price >= 0),  -- rupiah
  stock               INTEGER NOT NULL DEFAULT 0,  -- may go negative
  low_stock_threshold INTEGER NOT NULL DEFAULT {DEFAULT_LOW_STOCK_THRESHOLD},
  vision_label        TEXT,
  image_url           TEXT,
  created_at          TEXT DEFAULT (datetime('now')),
  updated_at          TEXT DEFAULT (datetime('now'))
);

-- 2) Cart / ledger header
CREATE TABLE IF NOT EXISTS transactions (
  transaction_id  INTEGER PRIMARY KEY,
  direction       TEXT NOT NULL CHECK(direction IN ({DIRECTION_ENUM_SQL})),
  status          TEXT NOT NULL DEFAULT '{STATUS_PENDING}' CHECK(status IN ({STATUS_ENUM_SQL})),
  total_amount    INTEGER NOT NULL DEFAULT 0,
  created_at      TEXT DEFAULT (datetime('now')),
  completed_at    TEXT,
  kepo_guess      TEXT,             -- raw commentary JSON
  kepo_audio_url  TEXT
);

-- 3) Line items
CREATE TABLE IF NOT EXISTS transaction_items (
  item_id         INTEGER PRIMARY KEY,
  transaction_id  INTEGER NOT NULL REFERENCES transactions(transaction_id) ON DELETE CASCADE,
  product_id      INTEGER NOT NULL REFERENCES products(product_id) ON DELETE RESTRICT,
  quantity        INTEGER NOT NULL CHECK(quantity > 0),
  unit_price      INTEGER NOT NULL,  -- price snapshot at add time
  created_at      TEXT DEFAULT (datetime('now')),
  UNIQUE(transaction_id, product_id)
);

CREATE INDEX IF NOT EXISTS idx_items_transaction     ON transaction_items(transaction_id);
CREATE INDEX IF NOT EXISTS idx_items_product         ON transaction_items(product_id);
CREATE INDEX IF NOT EXISTS idx_transactions_status   ON transactions(status, completed_at);
CREATE INDEX IF NOT EXISTS idx_products_category     ON products(category);
"""

# Columns callers may write through create/update.
_EDITABLE_PRODUCT_FIELDS = (
    "barcode",
    "name",
    "category",
    "buy_price",
    "sell_price",
    "stock",
    "low_stock_threshold",
    "vision_label",
    "image_url",
)
_NON_NEGATIVE_FIELDS = ("buy_price", "sell_price", "low_stock_threshold")

ProductRef = Union[int, str]


class WarungDatabase:
    """SQLite-backed catalog and transaction ledger.

    - Places DB under `<repo-root>/var/warung/warung.sqlite3` unless an
      explicit `db_path` is given.
    - Ensures schema on first use.
    - `connect()` for reads, `write()` for one atomic write unit.
    """

    def __init__(self, root_dir: Optional[str] = None, *, db_path: Optional[str] = None) -> None:
        if db_path:
            self.db_path = os.path.abspath(db_path)
            os.makedirs(os.path.dirname(self.db_path), exist_ok=True)
        else:
            root = find_project_root(root_dir)
            db_folder = os.path.join(var_dir(root), DEFAULT_DB_FOLDER)
            os.makedirs(db_folder, exist_ok=True)
            self.db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        LOG.info(f"Warung DB path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def write(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside BEGIN IMMEDIATE; commit on success, roll back on error.

        IMMEDIATE takes SQLite's write lock up front, so concurrent writers
        are serialized and every read inside the block sees the state the
        writes will be applied against.
        """
        with self.connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError:
                # Non-fatal; continue with schema creation
                LOG.debug("WAL journal mode unavailable; keeping defaults")
            LOG.info("Ensuring warung DB schema is present…")
            cur.executescript(SCHEMA_SQL)
            conn.commit()
            LOG.info("Warung DB schema ensured.")

    # --------------- Query helpers ---------------
    @staticmethod
    def rows_to_dicts(rows: Sequence[sqlite3.Row]) -> List[Dict[str, Any]]:
        return [dict(row) for row in rows]

    # --------------- Catalog ---------------
    def list_products(self, *, search: Optional[str] = None, category: Optional[str] = None) -> List[Product]:
        where: List[str] = []
        params: List[Any] = []
        if category:
            where.append("category = ?")
            params.append(category)
        if search:
            like = f"%{search.lower()}%"
            where.append("(LOWER(name) LIKE ? OR barcode LIKE ? OR LOWER(COALESCE(vision_label,'')) LIKE ?)")
            params.extend([like, like, like])
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        with self.connect() as conn:
            rows = conn.execute(f"SELECT * FROM products {where_sql} ORDER BY name ASC;", params).fetchall()
        return [Product.from_row(row) for row in rows]

    def get_product(self, product_id: int) -> Product:
        with self.connect() as conn:
            return self.find_product(conn, int(product_id))

    def get_product_by_barcode(self, barcode: str) -> Product:
        with self.connect() as conn:
            return self.find_product(conn, str(barcode))

    @staticmethod
    def find_product(conn: sqlite3.Connection, ref: ProductRef) -> Product:
        """Resolve a catalog id (int) or a scan code (str); NotFound names the ref."""
        if isinstance(ref, int) and not isinstance(ref, bool):
            row = conn.execute("SELECT * FROM products WHERE product_id = ?;", (ref,)).fetchone()
        else:
            row = conn.execute("SELECT * FROM products WHERE barcode = ?;", (str(ref).strip(),)).fetchone()
        if row is None:
            raise NotFound("product", ref)
        return Product.from_row(row)

    @staticmethod
    def _clean_product_fields(data: Dict[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for key in _EDITABLE_PRODUCT_FIELDS:
            if key not in data:
                continue
            value = data[key]
            if key in ("buy_price", "sell_price", "stock", "low_stock_threshold"):
                try:
                    value = int(value)
                except (TypeError, ValueError) as exc:
                    raise ValidationError(f"{key} must be an integer", field=key) from exc
                if key in _NON_NEGATIVE_FIELDS and value < 0:
                    raise ValidationError(f"{key} must not be negative", field=key)
            elif key in ("barcode", "name"):
                value = str(value or "").strip()
                if not value:
                    raise ValidationError(f"{key} is required", field=key)
            elif value is not None:
                value = str(value).strip() or None
            cleaned[key] = value
        return cleaned

    def create_product(self, data: Dict[str, Any]) -> Product:
        for required in ("barcode", "name"):
            if not data.get(required):
                raise ValidationError(f"{required} is required", field=required)
        fields = self._clean_product_fields(data)
        fields.setdefault("stock", 0)
        fields.setdefault("low_stock_threshold", DEFAULT_LOW_STOCK_THRESHOLD)
        columns = ", ".join(fields)
        placeholders = ", ".join("?" for _ in fields)
        try:
            with self.write() as conn:
                cur = conn.execute(
                    f"INSERT INTO products ({columns}) VALUES ({placeholders});",
                    tuple(fields.values()),
                )
                product_id = int(cur.lastrowid)
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Barcode already exists", field="barcode") from exc
        LOG.info(f"Created product {product_id} ({fields['name']!r}, barcode={fields['barcode']})")
        return self.get_product(product_id)

    def update_product(self, product_id: int, changes: Dict[str, Any]) -> Product:
        fields = self._clean_product_fields(changes)
        if not fields:
            return self.get_product(product_id)
        assignments = ", ".join(f"{key} = ?" for key in fields)
        try:
            with self.write() as conn:
                cur = conn.execute(
                    f"UPDATE products SET {assignments}, updated_at = datetime('now') WHERE product_id = ?;",
                    (*fields.values(), int(product_id)),
                )
                if cur.rowcount == 0:
                    raise NotFound("product", product_id)
        except sqlite3.IntegrityError as exc:
            raise ValidationError("Barcode already exists", field="barcode") from exc
        return self.get_product(product_id)

    def delete_product(self, product_id: int) -> None:
        with self.write() as conn:
            self.find_product(conn, int(product_id))
            refs = conn.execute(
                "SELECT COUNT(*) AS n FROM transaction_items WHERE product_id = ?;", (int(product_id),)
            ).fetchone()["n"]
            if refs:
                raise ValidationError(
                    f"Product {product_id} is referenced by {refs} transaction line(s)", field="product_id"
                )
            conn.execute("DELETE FROM products WHERE product_id = ?;", (int(product_id),))
        LOG.info(f"Deleted product {product_id}")

    @staticmethod
    def apply_stock_delta(conn: sqlite3.Connection, product_id: int, delta: int) -> None:
        """In-place `stock = stock + delta`; the row update itself is the guard."""
        cur = conn.execute(
            "UPDATE products SET stock = stock + ?, updated_at = datetime('now') WHERE product_id = ?;",
            (int(delta), int(product_id)),
        )
        if cur.rowcount == 0:
            raise NotFound("product", product_id)

    def adjust_stock(self, product_id: int, delta: int) -> Product:
        with self.write() as conn:
            self.apply_stock_delta(conn, product_id, delta)
        return self.get_product(product_id)

    def detection_labels(self) -> List[str]:
        """Distinct vision labels from the catalog, used as detector prompts."""
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT TRIM(vision_label) AS label
                FROM products
                WHERE vision_label IS NOT NULL AND TRIM(vision_label) != ''
                ORDER BY label;
                """
            ).fetchall()
        labels = [row["label"] for row in rows]
        return labels or list(DEFAULT_DETECTION_LABELS)

    # --------------- Transactions ---------------
    @staticmethod
    def load_transaction(conn: sqlite3.Connection, transaction_id: int) -> Transaction:
        """Read the aggregate (header + lines + product snapshots) on `conn`."""
        row = conn.execute(
            "SELECT * FROM transactions WHERE transaction_id = ?;", (int(transaction_id),)
        ).fetchone()
        if row is None:
            raise NotFound("transaction", transaction_id)
        item_rows = conn.execute(
            """
            SELECT
                i.item_id, i.transaction_id, i.product_id, i.quantity, i.unit_price,
                i.created_at AS item_created_at,
                p.*
            FROM transaction_items i
            JOIN products p ON p.product_id = i.product_id
            WHERE i.transaction_id = ?
            ORDER BY i.item_id ASC;
            """,
            (int(transaction_id),),
        ).fetchall()
        items = [
            TransactionItem(
                item_id=int(r["item_id"]),
                transaction_id=int(r["transaction_id"]),
                product_id=int(r["product_id"]),
                quantity=int(r["quantity"]),
                unit_price=int(r["unit_price"]),
                product=Product.from_row(r),
                created_at=r["item_created_at"],
            )
            for r in item_rows
        ]
        return Transaction(
            transaction_id=int(row["transaction_id"]),
            direction=row["direction"],
            status=row["status"],
            total_amount=int(row["total_amount"]),
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            kepo_guess=row["kepo_guess"],
            kepo_audio_url=row["kepo_audio_url"],
            items=items,
        )

    def fetch_transaction(self, transaction_id: int) -> Transaction:
        with self.connect() as conn:
            return self.load_transaction(conn, transaction_id)

    def fetch_transactions(
        self,
        *,
        page: int = 1,
        limit: int = 20,
        direction: Optional[str] = None,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Return paginated aggregates, newest first."""
        where: List[str] = []
        params: List[Any] = []
        if direction:
            if direction not in DIRECTION_CHOICES:
                raise ValueError(f"Unsupported direction: {direction}")
            where.append("direction = ?")
            params.append(direction)
        if status:
            if status not in STATUS_CHOICES:
                raise ValueError(f"Unsupported status: {status}")
            where.append("status = ?")
            params.append(status)
        if date_from:
            where.append("created_at >= ?")
            params.append(date_from)
        if date_to:
            where.append("created_at <= ?")
            params.append(date_to)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        page = max(1, int(page))
        limit = max(1, int(limit))
        offset = (page - 1) * limit

        with self.connect() as conn:
            total = int(conn.execute(f"SELECT COUNT(*) AS total FROM transactions {where_sql};", params).fetchone()["total"])
            ids = [
                int(r["transaction_id"])
                for r in conn.execute(
                    f"""
                    SELECT transaction_id FROM transactions {where_sql}
                    ORDER BY created_at DESC, transaction_id DESC
                    LIMIT ? OFFSET ?;
                    """,
                    (*params, limit, offset),
                ).fetchall()
            ]
            transactions = [self.load_transaction(conn, tx_id) for tx_id in ids]

        return {
            "transactions": transactions,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }
