"""Vendor bill ingestion.

Turns a parsed document into a VendorBill in REVIEW:
1. Validate the document (and its template, if one came with it)
2. Compute content hash and idempotency key; return the existing bill on a repeat
3. Normalize every line and compute extended prices
4. Suggest a match per line (alias leaders get their unit conversion applied)
5. Check header totals against the line sum (informational only)
"""

import hashlib
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from catalog.base import CatalogService
from core.audit import AuditEventType, AuditLogger
from core.errors import ValidationError
from core.observability.logging import get_logger, log_transition
from core.observability.metrics import get_metrics
from sku_matcher.alias_store import AliasStore
from sku_matcher.matcher import SkuMatcher
from sku_matcher.models import MatchReason, NormalizedLine
from sku_matcher.normalize import normalize_line, normalize_unit, parse_money
from sku_matcher.units import UnitConverter
from vendor_bills.db import BillRepository
from vendor_bills.models import (
    BillStatus,
    ParsedDocument,
    ParsedHeader,
    VendorBill,
    VendorBillLine,
)
from vendor_bills.templates import validate_template

logger = get_logger(__name__)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class IngestResult:
    """Output of an ingestion.

    Attributes:
        bill: The stored bill (existing one on a repeat)
        created: False when the document had already been ingested
    """
    bill: VendorBill
    created: bool


# =============================================================================
# Utility Functions
# =============================================================================

def validate_document(raw: Union[ParsedDocument, Dict[str, Any]]) -> ParsedDocument:
    """Validate a parsed document, including its template.

    Raises:
        ValidationError: With every schema violation listed
    """
    if isinstance(raw, ParsedDocument):
        return raw

    if isinstance(raw, dict) and raw.get("template") is not None:
        raw = dict(raw)
        raw["template"] = validate_template(raw["template"])

    try:
        return ParsedDocument.model_validate(raw)
    except PydanticValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ValidationError("Invalid parsed document: " + "; ".join(problems)) from e


def compute_content_hash(document: ParsedDocument, file_bytes: Optional[bytes] = None) -> str:
    """SHA256 of the source file, or of the document's canonical JSON."""
    if file_bytes:
        return hashlib.sha256(file_bytes).hexdigest()
    payload = json.dumps(
        document.model_dump(mode="json", exclude={"ocr_confidence"}),
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compute_idempotency_key(tenant_id: str, vendor_id: str, header: ParsedHeader) -> str:
    """SHA256 of tenant|vendor|invoice_no|invoice_date."""
    invoice_date = header.invoice_date.isoformat() if header.invoice_date else ""
    key = f"{tenant_id}|{vendor_id}|{header.invoice_no}|{invoice_date}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def validate_totals(header: ParsedHeader, lines_total: Decimal, tolerance_pct: float) -> List[str]:
    """Compare header totals with the sum of line extended prices.

    The subtotal is checked against the lines when present, otherwise
    total minus tax. subtotal + tax is also checked against total.

    Returns:
        Warning messages (empty when everything reconciles)
    """
    warnings = []
    tolerance = Decimal(str(tolerance_pct)) / Decimal("100")

    expected = header.subtotal
    label = "subtotal"
    if expected is None and header.total is not None:
        expected = header.total - (header.tax or Decimal("0"))
        label = "total less tax" if header.tax is not None else "total"

    if expected is not None and expected > 0 and lines_total > 0:
        diff = abs(expected - lines_total)
        if diff > expected * tolerance:
            pct = (diff / expected * 100).quantize(Decimal("0.1"))
            warnings.append(
                f"Total mismatch: {label} {expected:.2f} vs lines {lines_total:.2f} ({pct}% difference)"
            )

    if header.subtotal is not None and header.tax is not None and header.total is not None:
        calculated = header.subtotal + header.tax
        if abs(calculated - header.total) > header.total * tolerance:
            warnings.append(
                f"Totals do not reconcile: subtotal {header.subtotal:.2f} + tax {header.tax:.2f} "
                f"= {calculated:.2f} but total is {header.total:.2f}"
            )

    return warnings


def build_line(bill_id: str, line_no: int, raw) -> VendorBillLine:
    """Normalize one parsed line into a VendorBillLine."""
    normalized = normalize_line(raw.sku, raw.description, raw.qty, raw.unit)
    unit_price, price_flags = parse_money(raw.unit_price)

    line = VendorBillLine(
        bill_id=bill_id,
        line_no=line_no,
        vendor_sku_raw=raw.sku,
        desc_raw=raw.description,
        qty_raw=raw.qty,
        unit_raw=raw.unit,
        unit_price_raw=raw.unit_price,
        ext_price_raw=raw.ext_price,
        vendor_sku_norm=normalized.vendor_sku,
        desc_norm=normalized.description,
        normalized_qty=normalized.quantity,
        normalized_unit=normalized.unit,
        unit_price=unit_price,
        normalization_flags=list(normalized.flags) + price_flags,
    )
    line.recompute_ext_price()
    return line


def as_normalized(line: VendorBillLine) -> NormalizedLine:
    """View a stored line as the matcher's input."""
    return NormalizedLine(
        vendor_sku=line.vendor_sku_norm,
        description=line.desc_norm,
        quantity=line.normalized_qty,
        unit=line.normalized_unit,
        flags=line.normalization_flags,
    )


# =============================================================================
# Ingestion Service
# =============================================================================

class BillIngestService:
    """Creates bills from parsed documents."""

    def __init__(
        self,
        repository: BillRepository,
        alias_store: AliasStore,
        matcher: SkuMatcher,
        catalog: CatalogService,
        audit: AuditLogger,
        totals_tolerance_pct: float = 1.0,
    ):
        self.repository = repository
        self.alias_store = alias_store
        self.matcher = matcher
        self.catalog = catalog
        self.audit = audit
        self.totals_tolerance_pct = totals_tolerance_pct

    async def ingest(
        self,
        document: Union[ParsedDocument, Dict[str, Any]],
        vendor_id: str,
        tenant_id: str = "default",
        store_id: Optional[str] = None,
        actor: str = "system",
        file_bytes: Optional[bytes] = None,
    ) -> IngestResult:
        """Ingest a parsed document.

        Raises:
            ValidationError: If the document, its template or vendor_id is invalid
        """
        start_time = time.time()
        vendor_id = (vendor_id or "").strip()
        if not vendor_id:
            raise ValidationError("vendor_id must not be empty")

        document = validate_document(document)
        header = document.header
        content_hash = compute_content_hash(document, file_bytes)
        idempotency_key = compute_idempotency_key(tenant_id, vendor_id, header)

        existing = self.repository.find_duplicate(tenant_id, vendor_id, idempotency_key, content_hash)
        if existing is not None:
            logger.info(
                f"Duplicate ingestion of invoice {header.invoice_no}; returning bill {existing.id}",
                extra_fields={"bill_id": existing.id},
            )
            get_metrics().record_bill_ingested(duplicate=True)
            return IngestResult(bill=existing, created=False)

        bill = VendorBill(
            tenant_id=tenant_id,
            store_id=store_id,
            vendor_id=vendor_id,
            invoice_no=header.invoice_no,
            invoice_date=header.invoice_date,
            po_number=header.po_number,
            currency=header.currency,
            subtotal=header.subtotal,
            tax=header.tax,
            total=header.total,
            content_hash=content_hash,
            idempotency_key=idempotency_key,
            ocr_confidence=document.ocr_confidence,
            template_id=document.template.template_id if document.template else None,
            template_hash=document.template.config_hash() if document.template else None,
            created_by=actor,
        )
        bill.lines = [build_line(bill.id, i, raw) for i, raw in enumerate(document.lines, start=1)]

        for line in bill.lines:
            await self._suggest_initial(bill, line)

        bill.recompute_totals()
        bill.warnings.extend(validate_totals(header, bill.lines_total, self.totals_tolerance_pct))
        flagged = [line.line_no for line in bill.lines if line.normalization_flags]
        if flagged:
            bill.warnings.append(f"Lines with normalization problems: {', '.join(map(str, flagged))}")

        bill.start_review()
        stored, created = self.repository.insert_or_get(bill)
        if not created:
            get_metrics().record_bill_ingested(duplicate=True)
            return IngestResult(bill=stored, created=False)

        log_transition(bill.id, BillStatus.DRAFT.value, BillStatus.REVIEW.value, invoice_no=bill.invoice_no)
        scope = dict(tenant_id=tenant_id, store_id=store_id, bill_id=bill.id, invoice_no=bill.invoice_no, actor=actor)
        self.audit.log_info(
            AuditEventType.BILL_CREATED,
            f"Bill created for invoice {bill.invoice_no} ({len(bill.lines)} lines)",
            details={"vendor_id": vendor_id, "content_hash": content_hash, "warnings": bill.warnings},
            **scope,
        )
        self.audit.log_info(
            AuditEventType.BILL_REVIEW_STARTED,
            f"Bill {bill.invoice_no} ready for review",
            details={"suggested": sum(1 for line in bill.lines if line.suggested_sku)},
            **scope,
        )

        elapsed = (time.time() - start_time) * 1000
        get_metrics().record_bill_ingested()
        get_metrics().record_processing_time("ingest", elapsed)
        logger.info(
            f"Ingested invoice {bill.invoice_no}: {len(bill.lines)} lines in {elapsed:.0f}ms",
            extra_fields={"bill_id": bill.id, "warnings": len(bill.warnings)},
        )
        return IngestResult(bill=stored, created=True)

    async def _suggest_initial(self, bill: VendorBill, line: VendorBillLine) -> None:
        suggestions = await self.matcher.suggest(
            as_normalized(line),
            bill.vendor_id,
            self.catalog,
            tenant_id=bill.tenant_id,
        )
        best = suggestions.best
        bill.record_suggestion(line.id, best)
        if suggestions.degraded:
            bill.warnings.extend(f"Line {line.line_no}: {w}" for w in suggestions.warnings)
        if best is None or best.reason != MatchReason.ALIAS or best.alias_id is None:
            return

        self.alias_store.record_usage(best.alias_id)
        alias = self.alias_store.get(best.alias_id)
        conversion = alias.unit_conversion if alias else None
        if conversion is None or normalize_unit(conversion.from_unit) != line.normalized_unit:
            return

        line.normalized_qty, line.unit_price, line.normalized_unit = UnitConverter.apply_alias_conversion(
            line.normalized_qty, line.unit_price, conversion,
        )
        line.alias_conversion_applied = True
        line.recompute_ext_price()
