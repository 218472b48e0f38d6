"""SQLite-backed catalog.

Stores products and a receiving journal. transaction() uses a native SQLite
write transaction so a bill's receipts commit or roll back together.
"""

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from catalog.base import CatalogProduct, CatalogService, CatalogSkuNotFound
from core.errors import CollaboratorError
from core.observability.logging import get_logger
from sku_matcher.normalize import normalize_sku, text_similarity

logger = get_logger(__name__)


def init_catalog_db(db_path: Path) -> None:
    """Initialize catalog tables.

    Creates:
    - catalog_products: One row per internal SKU
    - catalog_receiving: Journal of every applied receipt
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS catalog_products (
                sku TEXT PRIMARY KEY,
                sku_norm TEXT NOT NULL,
                name TEXT NOT NULL,
                barcodes TEXT NOT NULL DEFAULT '[]',
                vendor_refs TEXT NOT NULL DEFAULT '[]',
                cost TEXT NOT NULL DEFAULT '0',
                on_hand TEXT NOT NULL DEFAULT '0',
                unit TEXT NOT NULL DEFAULT 'EA',
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS catalog_receiving (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                sku TEXT NOT NULL,
                qty_delta TEXT NOT NULL,
                previous_cost TEXT NOT NULL,
                new_cost TEXT NOT NULL,
                reference TEXT,
                applied_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_catalog_products_sku_norm
            ON catalog_products(sku_norm)
        """)

        conn.commit()
    finally:
        conn.close()


def _row_to_product(row: sqlite3.Row) -> CatalogProduct:
    return CatalogProduct(
        sku=row["sku"],
        name=row["name"],
        barcodes=json.loads(row["barcodes"]),
        vendor_refs=json.loads(row["vendor_refs"]),
        cost=Decimal(row["cost"]),
        on_hand=Decimal(row["on_hand"]),
        unit=row["unit"],
    )


class _Session(CatalogService):
    """Operations bound to one open connection."""

    def __init__(self, catalog: "SQLiteCatalog", conn: sqlite3.Connection):
        self._catalog = catalog
        self._conn = conn

    async def search_by_text(self, query, limit=10):
        return self._catalog._search_text(self._conn, query, limit)

    async def search_by_sku_or_barcode(self, code):
        return self._catalog._find(self._conn, code)

    async def apply_receiving(self, sku, qty_delta, new_cost, reference=None):
        return self._catalog._apply(self._conn, sku, qty_delta, new_cost, reference)

    async def create_product(self, product):
        return self._catalog._insert(self._conn, product)


class SQLiteCatalog(CatalogService):
    """Catalog stored in SQLite.

    Example:
        catalog = SQLiteCatalog(Path("vendor_bills.db"))
        await catalog.create_product(CatalogProduct(sku="WIDGET-1", name="Blue Widget"))
        async with catalog.transaction() as tx:
            await tx.apply_receiving("WIDGET-1", Decimal("5"), Decimal("2.50"))
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._tx_lock = asyncio.Lock()
        init_catalog_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    # =========================================================================
    # Connection-bound operations
    # =========================================================================

    def _search_text(self, conn, query: str, limit: int) -> List[CatalogProduct]:
        rows = conn.execute("SELECT * FROM catalog_products").fetchall()
        scored = []
        for row in rows:
            score = text_similarity(query, row["name"])
            if score > 0:
                scored.append((score, row["sku"], row))
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [_row_to_product(row) for _, _, row in scored[:limit]]

    def _find(self, conn, code: str) -> Optional[CatalogProduct]:
        key = normalize_sku(code)
        if not key:
            return None
        row = conn.execute(
            "SELECT * FROM catalog_products WHERE sku_norm = ? ORDER BY sku LIMIT 1", (key,)
        ).fetchone()
        if row:
            return _row_to_product(row)
        for row in conn.execute("SELECT * FROM catalog_products ORDER BY sku").fetchall():
            refs = json.loads(row["barcodes"]) + json.loads(row["vendor_refs"])
            if any(normalize_sku(ref) == key for ref in refs):
                return _row_to_product(row)
        return None

    def _apply(self, conn, sku, qty_delta, new_cost, reference) -> CatalogProduct:
        row = conn.execute("SELECT * FROM catalog_products WHERE sku = ?", (sku,)).fetchone()
        if row is None:
            raise CatalogSkuNotFound(sku)
        now = datetime.utcnow().isoformat()
        on_hand = Decimal(row["on_hand"]) + Decimal(qty_delta)
        conn.execute(
            "UPDATE catalog_products SET on_hand = ?, cost = ?, updated_at = ? WHERE sku = ?",
            (str(on_hand), str(new_cost), now, sku),
        )
        conn.execute("""
            INSERT INTO catalog_receiving (sku, qty_delta, previous_cost, new_cost, reference, applied_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (sku, str(qty_delta), row["cost"], str(new_cost), reference, now))
        return _row_to_product(
            conn.execute("SELECT * FROM catalog_products WHERE sku = ?", (sku,)).fetchone()
        )

    def _insert(self, conn, product: CatalogProduct) -> CatalogProduct:
        conn.execute("""
            INSERT OR IGNORE INTO catalog_products
            (sku, sku_norm, name, barcodes, vendor_refs, cost, on_hand, unit, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            product.sku,
            normalize_sku(product.sku),
            product.name,
            json.dumps(product.barcodes),
            json.dumps(product.vendor_refs),
            str(product.cost),
            str(product.on_hand),
            product.unit,
            datetime.utcnow().isoformat(),
        ))
        row = conn.execute("SELECT * FROM catalog_products WHERE sku = ?", (product.sku,)).fetchone()
        return _row_to_product(row)

    # =========================================================================
    # CatalogService
    # =========================================================================

    def _run(self, operation: str, fn, *args, write: bool = False):
        conn = self._connect()
        try:
            result = fn(conn, *args)
            if write:
                conn.commit()
            return result
        except sqlite3.OperationalError as e:
            conn.rollback()
            raise CollaboratorError(f"Catalog {operation} failed: {e}") from e
        finally:
            conn.close()

    async def search_by_text(self, query, limit=10):
        return self._run("search_by_text", self._search_text, query, limit)

    async def search_by_sku_or_barcode(self, code):
        return self._run("search_by_sku_or_barcode", self._find, code)

    async def apply_receiving(self, sku, qty_delta, new_cost, reference=None):
        return self._run("apply_receiving", self._apply, sku, qty_delta, new_cost, reference, write=True)

    async def create_product(self, product):
        return self._run("create_product", self._insert, product, write=True)

    @asynccontextmanager
    async def transaction(self):
        """One SQLite write transaction for the whole block."""
        async with self._tx_lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as e:
                conn.close()
                raise CollaboratorError(f"Catalog transaction could not start: {e}") from e
            try:
                yield _Session(self, conn)
            except BaseException:
                conn.rollback()
                raise
            else:
                try:
                    conn.commit()
                except sqlite3.OperationalError as e:
                    conn.rollback()
                    raise CollaboratorError(f"Catalog commit failed: {e}") from e
            finally:
                conn.close()
