"""Vendor Bill Database Operations.

This module handles all persistence for vendor bills:
- Schema initialization (bills, lines, posting snapshots)
- Idempotent inserts keyed on (tenant, idempotency_key)
- Optimistic-concurrency saves (version column)
- Posting snapshots used to compute net deltas on re-post

Every write runs in a short BEGIN IMMEDIATE transaction; no lock is held
while the caller awaits a collaborator.
"""

import json
import sqlite3
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel

from core.errors import ConflictError, NotFoundError
from sku_matcher.matcher import MatchHistory
from sku_matcher.models import MatchReason
from vendor_bills.models import BillStatus, VendorBill, VendorBillLine


# Default database path (shared with the alias table)
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "vendor_bills.db"

BILL_COLUMNS = [
    "id", "tenant_id", "store_id", "vendor_id", "invoice_no", "invoice_date",
    "po_number", "currency", "subtotal", "tax", "total", "lines_total",
    "content_hash", "idempotency_key", "ocr_confidence", "template_id",
    "template_hash", "warnings", "status", "posted_at", "posted_by",
    "posting_seq", "version", "created_by", "created_at", "updated_at",
]

LINE_COLUMNS = [
    "id", "bill_id", "line_no", "vendor_sku_raw", "desc_raw", "qty_raw",
    "unit_raw", "unit_price_raw", "ext_price_raw", "vendor_sku_norm",
    "desc_norm", "normalized_qty", "normalized_unit", "unit_price",
    "ext_price", "ext_price_discrepancy", "normalization_flags",
    "suggested_sku", "suggested_alias_id", "matched_sku", "match_confidence",
    "match_reason", "user_overridden", "alias_conversion_applied", "updated_at",
]

DECIMAL_FIELDS = {
    "subtotal", "tax", "total", "lines_total", "normalized_qty", "unit_price",
    "ext_price", "ext_price_discrepancy",
}
JSON_FIELDS = {"warnings", "normalization_flags"}
BOOL_FIELDS = {"user_overridden", "alias_conversion_applied"}


class PostingSnapshotLine(BaseModel):
    """What one line contributed to a committed posting."""
    posting_seq: int
    line_no: int
    sku: str
    qty: Decimal
    unit_price: Decimal


def init_bills_db(db_path: Path = DEFAULT_DB_PATH) -> None:
    """Initialize vendor bill tables.

    Creates:
    - vendor_bills: One row per ingested invoice
    - vendor_bill_lines: Lines, unique per (bill_id, line_no)
    - vendor_bill_postings: Immutable per-line snapshot of every posting

    Args:
        db_path: Path to SQLite database file
    """
    conn = sqlite3.connect(str(db_path))
    try:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vendor_bills (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                store_id TEXT,
                vendor_id TEXT NOT NULL,
                invoice_no TEXT NOT NULL,
                invoice_date TEXT,
                po_number TEXT,
                currency TEXT NOT NULL DEFAULT 'USD',
                subtotal TEXT,
                tax TEXT,
                total TEXT,
                lines_total TEXT NOT NULL DEFAULT '0',
                content_hash TEXT NOT NULL,
                idempotency_key TEXT NOT NULL,
                ocr_confidence REAL NOT NULL DEFAULT 1.0,
                template_id TEXT,
                template_hash TEXT,
                warnings TEXT NOT NULL DEFAULT '[]',
                status TEXT NOT NULL,
                posted_at TEXT,
                posted_by TEXT,
                posting_seq INTEGER NOT NULL DEFAULT 0,
                version INTEGER NOT NULL DEFAULT 0,
                created_by TEXT NOT NULL DEFAULT 'system',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE(tenant_id, idempotency_key)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vendor_bill_lines (
                id TEXT PRIMARY KEY,
                bill_id TEXT NOT NULL REFERENCES vendor_bills(id),
                line_no INTEGER NOT NULL,
                vendor_sku_raw TEXT,
                desc_raw TEXT,
                qty_raw TEXT,
                unit_raw TEXT,
                unit_price_raw TEXT,
                ext_price_raw TEXT,
                vendor_sku_norm TEXT NOT NULL DEFAULT '',
                desc_norm TEXT NOT NULL DEFAULT '',
                normalized_qty TEXT NOT NULL DEFAULT '0',
                normalized_unit TEXT NOT NULL DEFAULT 'EA',
                unit_price TEXT NOT NULL DEFAULT '0',
                ext_price TEXT NOT NULL DEFAULT '0',
                ext_price_discrepancy TEXT,
                normalization_flags TEXT NOT NULL DEFAULT '[]',
                suggested_sku TEXT,
                suggested_alias_id INTEGER,
                matched_sku TEXT,
                match_confidence REAL NOT NULL DEFAULT 0,
                match_reason TEXT,
                user_overridden INTEGER NOT NULL DEFAULT 0,
                alias_conversion_applied INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                UNIQUE(bill_id, line_no)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS vendor_bill_postings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bill_id TEXT NOT NULL REFERENCES vendor_bills(id),
                posting_seq INTEGER NOT NULL,
                line_no INTEGER NOT NULL,
                sku TEXT NOT NULL,
                qty TEXT NOT NULL,
                unit_price TEXT NOT NULL,
                posted_at TEXT NOT NULL,
                posted_by TEXT NOT NULL,
                UNIQUE(bill_id, posting_seq, line_no)
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_vendor_bills_content_hash
            ON vendor_bills(tenant_id, vendor_id, content_hash)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_vendor_bills_status
            ON vendor_bills(tenant_id, status)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_vendor_bill_lines_bill
            ON vendor_bill_lines(bill_id, line_no)
        """)

        conn.commit()
    finally:
        conn.close()


# =============================================================================
# Row conversion
# =============================================================================

def _to_db(field: str, value):
    if value is None:
        return None
    if field in JSON_FIELDS:
        return json.dumps(value)
    if field in BOOL_FIELDS:
        return 1 if value else 0
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BillStatus):
        return value.value
    return value


def _from_db(field: str, value):
    if value is None:
        return None
    if field in JSON_FIELDS:
        return json.loads(value)
    if field in BOOL_FIELDS:
        return bool(value)
    if field in DECIMAL_FIELDS:
        return Decimal(value)
    return value


def _row_to_line(row: sqlite3.Row) -> VendorBillLine:
    return VendorBillLine(**{col: _from_db(col, row[col]) for col in LINE_COLUMNS})


def _row_to_bill(row: sqlite3.Row, lines: List[VendorBillLine]) -> VendorBill:
    data = {col: _from_db(col, row[col]) for col in BILL_COLUMNS}
    return VendorBill(lines=lines, **data)


# =============================================================================
# Repository
# =============================================================================

class BillRepository(MatchHistory):
    """SQLite persistence for the bill aggregate.

    Also serves the matcher's history tier from stored lines.

    Example:
        repo = BillRepository(Path("vendor_bills.db"))
        bill, created = repo.insert_or_get(bill)
        bill.start_review()
        repo.save(bill)
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        init_bills_db(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _load(self, conn: sqlite3.Connection, bill_id: str) -> Optional[VendorBill]:
        row = conn.execute("SELECT * FROM vendor_bills WHERE id = ?", (bill_id,)).fetchone()
        if row is None:
            return None
        line_rows = conn.execute(
            "SELECT * FROM vendor_bill_lines WHERE bill_id = ? ORDER BY line_no", (bill_id,)
        ).fetchall()
        return _row_to_bill(row, [_row_to_line(r) for r in line_rows])

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, bill_id: str) -> VendorBill:
        """Load a bill with its lines.

        Raises:
            NotFoundError: If the bill doesn't exist
        """
        conn = self._connect()
        try:
            bill = self._load(conn, bill_id)
        finally:
            conn.close()
        if bill is None:
            raise NotFoundError(f"Bill {bill_id} not found")
        return bill

    def find_duplicate(
        self,
        tenant_id: str,
        vendor_id: str,
        idempotency_key: str,
        content_hash: str,
    ) -> Optional[VendorBill]:
        """Find a bill with the same idempotency key, or the same content from the same vendor."""
        conn = self._connect()
        try:
            row = conn.execute("""
                SELECT id FROM vendor_bills
                WHERE tenant_id = ? AND (idempotency_key = ? OR (vendor_id = ? AND content_hash = ?))
                ORDER BY created_at ASC
                LIMIT 1
            """, (tenant_id, idempotency_key, vendor_id, content_hash)).fetchone()
            return self._load(conn, row["id"]) if row else None
        finally:
            conn.close()

    def list(
        self,
        tenant_id: str = "default",
        status: Optional[BillStatus] = None,
        vendor_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[VendorBill]:
        """List bills, newest first."""
        query = "SELECT id FROM vendor_bills WHERE tenant_id = ?"
        params: list = [tenant_id]
        if status is not None:
            query += " AND status = ?"
            params.append(BillStatus(status).value)
        if vendor_id is not None:
            query += " AND vendor_id = ?"
            params.append(vendor_id)
        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
            return [self._load(conn, row["id"]) for row in rows]
        finally:
            conn.close()

    def last_posting(self, bill_id: str) -> List[PostingSnapshotLine]:
        """Snapshot of the most recent committed posting (empty if never posted)."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM vendor_bill_postings
                WHERE bill_id = ? AND posting_seq = (
                    SELECT MAX(posting_seq) FROM vendor_bill_postings WHERE bill_id = ?
                )
                ORDER BY line_no
            """, (bill_id, bill_id)).fetchall()
            return [
                PostingSnapshotLine(
                    posting_seq=row["posting_seq"],
                    line_no=row["line_no"],
                    sku=row["sku"],
                    qty=Decimal(row["qty"]),
                    unit_price=Decimal(row["unit_price"]),
                )
                for row in rows
            ]
        finally:
            conn.close()

    def confirmed_matches(
        self,
        vendor_id: str,
        vendor_sku_norm: str,
        tenant_id: str = "default",
        limit: int = 3,
    ) -> List[Tuple[str, datetime]]:
        """SKUs this vendor's lines were manually matched to, most recent first.

        Lines on void bills are ignored.
        """
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT l.matched_sku AS sku, MAX(l.updated_at) AS last_matched
                FROM vendor_bill_lines l
                JOIN vendor_bills b ON b.id = l.bill_id
                WHERE b.tenant_id = ? AND b.vendor_id = ? AND b.status != ?
                  AND l.vendor_sku_norm = ?
                  AND l.matched_sku IS NOT NULL
                  AND l.match_reason = ?
                GROUP BY l.matched_sku
                ORDER BY last_matched DESC, l.matched_sku ASC
                LIMIT ?
            """, (
                tenant_id,
                vendor_id,
                BillStatus.VOID.value,
                vendor_sku_norm,
                MatchReason.MANUAL.value,
                limit,
            )).fetchall()
            return [(row["sku"], datetime.fromisoformat(row["last_matched"])) for row in rows]
        finally:
            conn.close()

    # =========================================================================
    # Writes
    # =========================================================================

    def insert_or_get(self, bill: VendorBill) -> Tuple[VendorBill, bool]:
        """Insert a new bill unless its idempotency key already exists.

        Returns:
            Tuple of (stored bill, created)
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                f"INSERT INTO vendor_bills ({', '.join(BILL_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in BILL_COLUMNS)})",
                [_to_db(col, getattr(bill, col)) for col in BILL_COLUMNS],
            )
            for line in bill.lines:
                conn.execute(
                    f"INSERT INTO vendor_bill_lines ({', '.join(LINE_COLUMNS)}) "
                    f"VALUES ({', '.join('?' for _ in LINE_COLUMNS)})",
                    [_to_db(col, getattr(line, col)) for col in LINE_COLUMNS],
                )
            conn.commit()
            return bill, True
        except sqlite3.IntegrityError:
            conn.rollback()
            row = conn.execute(
                "SELECT id FROM vendor_bills WHERE tenant_id = ? AND idempotency_key = ?",
                (bill.tenant_id, bill.idempotency_key),
            ).fetchone()
            if row is None:
                raise
            return self._load(conn, row["id"]), False
        finally:
            conn.close()

    def _write(self, conn: sqlite3.Connection, bill: VendorBill, expected_version: int) -> None:
        updatable = [c for c in BILL_COLUMNS if c not in ("id", "version")]
        assignments = ", ".join(f"{col} = ?" for col in updatable)
        cursor = conn.execute(
            f"UPDATE vendor_bills SET {assignments}, version = version + 1 "
            f"WHERE id = ? AND version = ?",
            [_to_db(col, getattr(bill, col)) for col in updatable] + [bill.id, expected_version],
        )
        if cursor.rowcount == 0:
            exists = conn.execute("SELECT version FROM vendor_bills WHERE id = ?", (bill.id,)).fetchone()
            if exists is None:
                raise NotFoundError(f"Bill {bill.id} not found")
            raise ConflictError(
                f"Bill {bill.id} was modified concurrently "
                f"(expected version {expected_version}, found {exists['version']})"
            )

        line_updatable = [c for c in LINE_COLUMNS if c not in ("id", "bill_id", "line_no")]
        line_assignments = ", ".join(f"{col} = ?" for col in line_updatable)
        for line in bill.lines:
            conn.execute(
                f"UPDATE vendor_bill_lines SET {line_assignments} WHERE id = ? AND bill_id = ?",
                [_to_db(col, getattr(line, col)) for col in line_updatable] + [line.id, bill.id],
            )

    def save(self, bill: VendorBill) -> VendorBill:
        """Persist the aggregate if nobody else changed it since it was loaded.

        Raises:
            ConflictError: If the stored version moved on
            NotFoundError: If the bill doesn't exist
        """
        expected = bill.version
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._write(conn, bill, expected)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        bill.version = expected + 1
        return bill

    def commit_posting(
        self,
        bill: VendorBill,
        expected_version: int,
        snapshot: List[PostingSnapshotLine],
    ) -> VendorBill:
        """Persist a POSTED bill and its posting snapshot in one transaction.

        Raises:
            ConflictError: If the bill changed since expected_version
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._write(conn, bill, expected_version)
            for item in snapshot:
                conn.execute("""
                    INSERT INTO vendor_bill_postings
                    (bill_id, posting_seq, line_no, sku, qty, unit_price, posted_at, posted_by)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    bill.id,
                    item.posting_seq,
                    item.line_no,
                    item.sku,
                    str(item.qty),
                    str(item.unit_price),
                    _to_db("posted_at", bill.posted_at),
                    bill.posted_by,
                ))
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        bill.version = expected_version + 1
        return bill

    def revert_posting(self, original: VendorBill, posted_version: int, posting_seq: int) -> VendorBill:
        """Undo a committed posting whose catalog transaction failed to commit.

        Restores the bill as it was before posting and drops the snapshot
        written for posting_seq.

        Raises:
            ConflictError: If the bill changed after the posting was committed
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._write(conn, original, posted_version)
            conn.execute(
                "DELETE FROM vendor_bill_postings WHERE bill_id = ? AND posting_seq = ?",
                (original.id, posting_seq),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
        original.version = posted_version + 1
        return original
