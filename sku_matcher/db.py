"""SKU Alias Database Operations.

This module handles all database operations for vendor SKU aliases:
- Schema initialization
- Conflict-tolerant upserts
- Ordered lookups used by the matcher
- Atomic usage tracking

Several aliases may exist for the same (vendor, normalized SKU) pair when
they point at different internal SKUs. Lookups order them by priority,
then recency, then internal SKU so the winner is always deterministic.
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional

from sku_matcher.models import UnitConversion, VendorSkuAlias


# Default database path (shared with the bill tables)
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "vendor_bills.db"

ORDER_CLAUSE = """
    ORDER BY priority DESC,
             last_seen_at IS NULL,
             last_seen_at DESC,
             internal_sku ASC
"""


def get_db_connection(db_path: Path = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection with row access by column name."""
    conn = sqlite3.connect(str(db_path), timeout=10.0)
    conn.row_factory = sqlite3.Row
    return conn


def init_alias_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize alias tables.

    Creates:
    - vendor_sku_alias: Maps (vendor, normalized SKU) to internal SKUs

    The unique index on (tenant_id, vendor_id, vendor_sku_norm, internal_sku)
    lets competing aliases coexist for one pair while identical writes
    collapse into a single row.

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vendor_sku_alias (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tenant_id TEXT NOT NULL DEFAULT 'default',
                vendor_id TEXT NOT NULL,
                vendor_sku_norm TEXT NOT NULL,
                internal_sku TEXT NOT NULL,
                unit_conversion TEXT,
                priority INTEGER NOT NULL DEFAULT 0,
                usage_count INTEGER NOT NULL DEFAULT 0,
                last_seen_at TEXT,
                created_by TEXT DEFAULT 'system',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(tenant_id, vendor_id, vendor_sku_norm, internal_sku)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_vendor_sku_alias_lookup
            ON vendor_sku_alias(tenant_id, vendor_id, vendor_sku_norm)
        """)

        conn.commit()
    finally:
        conn.close()


def _dump_conversion(conversion: Optional[UnitConversion]) -> Optional[str]:
    if conversion is None:
        return None
    return json.dumps({
        "multiplier": str(conversion.multiplier),
        "from_unit": conversion.from_unit,
        "to_unit": conversion.to_unit,
    })


def _row_to_alias(row: sqlite3.Row) -> VendorSkuAlias:
    """Convert a database row to a VendorSkuAlias."""
    conversion = None
    if row["unit_conversion"]:
        data = json.loads(row["unit_conversion"])
        conversion = UnitConversion(
            multiplier=Decimal(data["multiplier"]),
            from_unit=data["from_unit"],
            to_unit=data["to_unit"],
        )
    return VendorSkuAlias(
        id=row["id"],
        tenant_id=row["tenant_id"],
        vendor_id=row["vendor_id"],
        vendor_sku_norm=row["vendor_sku_norm"],
        internal_sku=row["internal_sku"],
        unit_conversion=conversion,
        priority=row["priority"],
        usage_count=row["usage_count"],
        last_seen_at=datetime.fromisoformat(row["last_seen_at"]) if row["last_seen_at"] else None,
        created_by=row["created_by"],
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


# =============================================================================
# CRUD Operations
# =============================================================================

def upsert_alias(
    tenant_id: str,
    vendor_id: str,
    vendor_sku_norm: str,
    internal_sku: str,
    unit_conversion: Optional[UnitConversion] = None,
    priority: Optional[int] = None,
    created_by: str = "system",
    db_path: Path = DEFAULT_DB_PATH,
) -> VendorSkuAlias:
    """Create or update an alias inside a single write transaction.

    - Same pair, same internal SKU: priority and unit conversion are updated
      (kept when not supplied).
    - Same pair, different internal SKU: a competing row is added with a
      priority above every existing alias for the pair.

    Returns:
        The stored VendorSkuAlias
    """
    now = datetime.utcnow().isoformat()
    conn = get_db_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        rows = conn.execute("""
            SELECT internal_sku, priority FROM vendor_sku_alias
            WHERE tenant_id = ? AND vendor_id = ? AND vendor_sku_norm = ?
        """, (tenant_id, vendor_id, vendor_sku_norm)).fetchall()

        existing = {row["internal_sku"]: row["priority"] for row in rows}
        competitors = [p for sku, p in existing.items() if sku != internal_sku]

        if internal_sku in existing:
            new_priority = existing[internal_sku] if priority is None else priority
        elif competitors:
            floor = max(competitors) + 1
            new_priority = floor if priority is None else max(priority, floor)
        else:
            new_priority = priority or 0

        conn.execute("""
            INSERT INTO vendor_sku_alias
            (tenant_id, vendor_id, vendor_sku_norm, internal_sku, unit_conversion,
             priority, usage_count, created_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            ON CONFLICT(tenant_id, vendor_id, vendor_sku_norm, internal_sku) DO UPDATE SET
                priority = excluded.priority,
                unit_conversion = COALESCE(excluded.unit_conversion, vendor_sku_alias.unit_conversion),
                updated_at = excluded.updated_at
        """, (
            tenant_id,
            vendor_id,
            vendor_sku_norm,
            internal_sku,
            _dump_conversion(unit_conversion),
            new_priority,
            created_by,
            now,
            now,
        ))

        row = conn.execute("""
            SELECT * FROM vendor_sku_alias
            WHERE tenant_id = ? AND vendor_id = ? AND vendor_sku_norm = ? AND internal_sku = ?
        """, (tenant_id, vendor_id, vendor_sku_norm, internal_sku)).fetchone()
        conn.commit()
        return _row_to_alias(row)
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def lookup_aliases(
    tenant_id: str,
    vendor_id: str,
    vendor_sku_norm: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[VendorSkuAlias]:
    """Get every alias for a pair, best first."""
    conn = get_db_connection(db_path)
    try:
        rows = conn.execute(f"""
            SELECT * FROM vendor_sku_alias
            WHERE tenant_id = ? AND vendor_id = ? AND vendor_sku_norm = ?
            {ORDER_CLAUSE}
        """, (tenant_id, vendor_id, vendor_sku_norm)).fetchall()
        return [_row_to_alias(row) for row in rows]
    finally:
        conn.close()


def get_alias(alias_id: int, db_path: Path = DEFAULT_DB_PATH) -> Optional[VendorSkuAlias]:
    """Get an alias by ID."""
    conn = get_db_connection(db_path)
    try:
        row = conn.execute("SELECT * FROM vendor_sku_alias WHERE id = ?", (alias_id,)).fetchone()
        return _row_to_alias(row) if row else None
    finally:
        conn.close()


def list_aliases_for_vendor(
    tenant_id: str,
    vendor_id: str,
    db_path: Path = DEFAULT_DB_PATH,
) -> List[VendorSkuAlias]:
    """Get all aliases for a vendor, grouped by normalized SKU."""
    conn = get_db_connection(db_path)
    try:
        rows = conn.execute(f"""
            SELECT * FROM vendor_sku_alias
            WHERE tenant_id = ? AND vendor_id = ?
            ORDER BY vendor_sku_norm ASC, priority DESC, last_seen_at IS NULL,
                     last_seen_at DESC, internal_sku ASC
        """, (tenant_id, vendor_id)).fetchall()
        return [_row_to_alias(row) for row in rows]
    finally:
        conn.close()


def record_alias_usage(alias_id: int, db_path: Path = DEFAULT_DB_PATH) -> bool:
    """Increment usage_count and refresh last_seen_at in one statement.

    Returns:
        True if the alias exists
    """
    conn = sqlite3.connect(str(db_path), timeout=2.0)
    try:
        cursor = conn.execute("""
            UPDATE vendor_sku_alias
            SET usage_count = usage_count + 1, last_seen_at = ?
            WHERE id = ?
        """, (datetime.utcnow().isoformat(), alias_id))
        conn.commit()
        return cursor.rowcount > 0
    finally:
        conn.close()
