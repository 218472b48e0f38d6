"""Vendor Bill Data Models.

This module defines the Pydantic models for vendor bills:
- ParsedDocument / ParsedHeader / ParsedLine: Output of the OCR/template pipeline
- VendorBillLine: One line item with its normalization and match state
- VendorBill: The aggregate; owns its lines and enforces the state machine

State machine:
    DRAFT -> REVIEW        automatic after ingestion
    REVIEW -> POSTED       post(), every line matched
    POSTED -> REVIEW       reopen()
    DRAFT|REVIEW -> VOID   void(), terminal
"""

import uuid
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional, Set

from pydantic import BaseModel, Field, field_validator

from core.errors import InvalidStateError, AlreadyPostedError, NotFoundError, ValidationError
from sku_matcher.models import HIGH_CONFIDENCE, MatchCandidate, MatchReason
from sku_matcher.normalize import normalize_unit, parse_decimal, parse_money, parse_quantity
from vendor_bills.templates import TemplateConfig

CENTS = Decimal("0.01")


class BillStatus(str, Enum):
    """Vendor bill lifecycle status."""
    DRAFT = "DRAFT"
    REVIEW = "REVIEW"
    POSTED = "POSTED"
    VOID = "VOID"


ALLOWED_TRANSITIONS: Dict[BillStatus, Set[BillStatus]] = {
    BillStatus.DRAFT: {BillStatus.REVIEW, BillStatus.VOID},
    BillStatus.REVIEW: {BillStatus.POSTED, BillStatus.VOID},
    BillStatus.POSTED: {BillStatus.REVIEW},
    BillStatus.VOID: set(),
}


def compute_ext_price(qty: Decimal, unit_price: Decimal) -> Decimal:
    """Extended price, rounded to cents."""
    return (qty * unit_price).quantize(CENTS, rounding=ROUND_HALF_UP)


# =============================================================================
# Parsed Input
# =============================================================================

class ParsedLine(BaseModel):
    """One raw line as produced by extraction. Numbers stay raw text."""
    sku: Optional[str] = None
    description: Optional[str] = None
    qty: Optional[str] = None
    unit: Optional[str] = None
    unit_price: Optional[str] = None
    ext_price: Optional[str] = None

    @field_validator("qty", "unit_price", "ext_price", mode="before")
    @classmethod
    def numbers_as_text(cls, v):
        if isinstance(v, (int, float, Decimal)) and not isinstance(v, bool):
            return str(v)
        return v


class ParsedHeader(BaseModel):
    """Header fields as produced by extraction."""
    invoice_no: str = Field(..., min_length=1, description="Vendor invoice number")
    invoice_date: Optional[date] = None
    po_number: Optional[str] = None
    currency: str = Field(default="USD")
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None

    @field_validator("invoice_no")
    @classmethod
    def strip_invoice_no(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("invoice_no must not be blank")
        return v


class ParsedDocument(BaseModel):
    """A parsed vendor invoice ready for ingestion."""
    header: ParsedHeader
    lines: List[ParsedLine] = Field(..., min_length=1)
    ocr_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    template: Optional[TemplateConfig] = None


# =============================================================================
# Bill Aggregate
# =============================================================================

class VendorBillLine(BaseModel):
    """One line item of a vendor bill.

    suggested_* hold the system's best candidate; matched_sku is only set
    once a user (or the bulk accept) commits a match.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    bill_id: str
    line_no: int = Field(..., ge=1)

    # Raw fields
    vendor_sku_raw: Optional[str] = None
    desc_raw: Optional[str] = None
    qty_raw: Optional[str] = None
    unit_raw: Optional[str] = None
    unit_price_raw: Optional[str] = None
    ext_price_raw: Optional[str] = None

    # Normalized fields
    vendor_sku_norm: str = ""
    desc_norm: str = ""
    normalized_qty: Decimal = Decimal("0")
    normalized_unit: str = "EA"
    unit_price: Decimal = Decimal("0")
    ext_price: Decimal = Decimal("0")
    ext_price_discrepancy: Optional[Decimal] = None
    normalization_flags: List[str] = Field(default_factory=list)

    # Match state
    suggested_sku: Optional[str] = None
    suggested_alias_id: Optional[int] = None
    matched_sku: Optional[str] = None
    match_confidence: float = 0.0
    match_reason: Optional[str] = None
    user_overridden: bool = False
    alias_conversion_applied: bool = False

    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_matched(self) -> bool:
        return bool(self.matched_sku and self.matched_sku.strip())

    def recompute_ext_price(self) -> None:
        """Recompute ext_price from qty and unit price; record the raw discrepancy."""
        self.ext_price = compute_ext_price(self.normalized_qty, self.unit_price)
        raw_ext = parse_decimal(self.ext_price_raw)
        if raw_ext is None:
            self.ext_price_discrepancy = None
        else:
            self.ext_price_discrepancy = (raw_ext - self.ext_price).quantize(CENTS)

    def restore_raw_quantities(self) -> None:
        """Undo an alias unit conversion: qty, unit and price come from the raw fields again."""
        self.normalized_qty, _ = parse_quantity(self.qty_raw)
        self.normalized_unit = normalize_unit(self.unit_raw)
        self.unit_price, _ = parse_money(self.unit_price_raw)
        self.alias_conversion_applied = False
        self.recompute_ext_price()


class VendorBill(BaseModel):
    """One ingested vendor invoice and its lines."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(default="default")
    store_id: Optional[str] = None
    vendor_id: str
    invoice_no: str
    invoice_date: Optional[date] = None
    po_number: Optional[str] = None
    currency: str = "USD"

    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Optional[Decimal] = None
    lines_total: Decimal = Decimal("0")

    content_hash: str
    idempotency_key: str
    ocr_confidence: float = 1.0
    template_id: Optional[str] = None
    template_hash: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)

    status: BillStatus = BillStatus.DRAFT
    posted_at: Optional[datetime] = None
    posted_by: Optional[str] = None
    posting_seq: int = 0
    version: int = 0

    created_by: str = "system"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    lines: List[VendorBillLine] = Field(default_factory=list)

    # =========================================================================
    # Accessors
    # =========================================================================

    def line(self, line_id: str) -> VendorBillLine:
        for line in self.lines:
            if line.id == line_id:
                return line
        raise NotFoundError(f"Line {line_id} does not belong to bill {self.id}")

    @property
    def unmatched_line_numbers(self) -> List[int]:
        return [line.line_no for line in self.lines if not line.is_matched]

    def recompute_totals(self) -> None:
        self.lines_total = sum((line.ext_price for line in self.lines), Decimal("0"))

    # =========================================================================
    # Transitions
    # =========================================================================

    def _transition(self, target: BillStatus) -> BillStatus:
        if target not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidStateError(f"Bill {self.id} cannot move from {self.status.value} to {target.value}")
        previous = self.status
        self.status = target
        self.updated_at = datetime.utcnow()
        return previous

    def start_review(self) -> None:
        """DRAFT -> REVIEW once initial matching has run."""
        self._transition(BillStatus.REVIEW)

    def _require_editable(self) -> None:
        if self.status in (BillStatus.POSTED, BillStatus.VOID):
            raise InvalidStateError(f"Bill {self.id} is {self.status.value}; lines are immutable")

    # =========================================================================
    # Line Matching
    # =========================================================================

    def record_suggestion(self, line_id: str, candidate: Optional[MatchCandidate]) -> VendorBillLine:
        """Store the system's best candidate on a line without committing it."""
        line = self.line(line_id)
        if candidate is None:
            line.suggested_sku = None
            line.suggested_alias_id = None
            line.match_confidence = 0.0
            line.match_reason = None
        else:
            line.suggested_sku = candidate.internal_sku
            line.suggested_alias_id = candidate.alias_id
            line.match_confidence = candidate.confidence
            line.match_reason = candidate.reason.value
        line.updated_at = datetime.utcnow()
        return line

    def update_match(
        self,
        line_id: str,
        internal_sku: str,
        qty: Optional[Decimal] = None,
        unit: Optional[str] = None,
        unit_price: Optional[Decimal] = None,
    ) -> VendorBillLine:
        """Manually set a line's match (and optionally correct qty/unit/price).

        Raises:
            NotFoundError: If the line is not on this bill
            InvalidStateError: If the bill is POSTED or VOID
            ValidationError: If the SKU is empty or a correction is negative
        """
        line = self.line(line_id)
        self._require_editable()

        internal_sku = (internal_sku or "").strip()
        if not internal_sku:
            raise ValidationError("internal_sku must not be empty", line_numbers=[line.line_no])
        if qty is not None and qty < 0:
            raise ValidationError("quantity must not be negative", line_numbers=[line.line_no])
        if unit_price is not None and unit_price < 0:
            raise ValidationError("unit price must not be negative", line_numbers=[line.line_no])

        line.matched_sku = internal_sku
        line.match_confidence = 1.0
        line.match_reason = MatchReason.MANUAL.value
        line.user_overridden = internal_sku != line.suggested_sku

        # The alias conversion only holds for the alias's own SKU
        restored = line.alias_conversion_applied and internal_sku != line.suggested_sku
        if restored:
            line.restore_raw_quantities()

        if qty is not None:
            line.normalized_qty = qty
        if unit is not None:
            line.normalized_unit = normalize_unit(unit)
        if unit_price is not None:
            line.unit_price = unit_price
        if qty is not None or unit_price is not None:
            line.recompute_ext_price()
        if restored or qty is not None or unit_price is not None:
            self.recompute_totals()

        line.updated_at = datetime.utcnow()
        self.updated_at = line.updated_at
        return line

    def accept_all_high_confidence(self) -> List[int]:
        """Commit every HIGH-confidence, non-overridden suggestion.

        Returns:
            Line numbers that changed (empty list is a valid no-op)
        """
        self._require_editable()
        changed = []
        for line in self.lines:
            if not line.suggested_sku or line.user_overridden:
                continue
            if line.match_confidence < HIGH_CONFIDENCE:
                continue
            if line.matched_sku == line.suggested_sku:
                continue
            line.matched_sku = line.suggested_sku
            line.updated_at = datetime.utcnow()
            changed.append(line.line_no)
        if changed:
            self.updated_at = datetime.utcnow()
        return changed

    def apply_alias_match(self, vendor_sku_norm: str, internal_sku: str, alias_id: Optional[int]) -> List[int]:
        """Match every unresolved line carrying vendor_sku_norm to internal_sku.

        Returns:
            Line numbers that changed
        """
        self._require_editable()
        changed = []
        for line in self.lines:
            if line.is_matched or line.vendor_sku_norm != vendor_sku_norm:
                continue
            if line.alias_conversion_applied and internal_sku != line.suggested_sku:
                line.restore_raw_quantities()
            line.suggested_sku = internal_sku
            line.suggested_alias_id = alias_id
            line.matched_sku = internal_sku
            line.match_confidence = 1.0
            line.match_reason = MatchReason.ALIAS.value
            line.user_overridden = False
            line.updated_at = datetime.utcnow()
            changed.append(line.line_no)
        if changed:
            self.updated_at = datetime.utcnow()
        return changed

    def ensure_alias_eligible(self, line_id: str) -> VendorBillLine:
        """Check a line may seed an alias: matched, and not a manual override."""
        line = self.line(line_id)
        if not line.is_matched:
            raise InvalidStateError("Line has no match to learn from", line_numbers=[line.line_no])
        if line.user_overridden:
            raise InvalidStateError(
                "Line was manually overridden; only confirmed suggestions create aliases",
                line_numbers=[line.line_no],
            )
        if not line.vendor_sku_norm:
            raise ValidationError("Line has no vendor SKU to alias", line_numbers=[line.line_no])
        return line

    # =========================================================================
    # Posting / Reopen / Void
    # =========================================================================

    def ensure_postable(self) -> None:
        """Validate the posting preconditions from scratch.

        Raises:
            AlreadyPostedError: If the bill is already POSTED
            InvalidStateError: If not in REVIEW, empty, or any line unmatched
            ValidationError: If any line has a non-positive quantity
        """
        if self.status == BillStatus.POSTED:
            raise AlreadyPostedError(f"Bill {self.id} was already posted at {self.posted_at}")
        if self.status != BillStatus.REVIEW:
            raise InvalidStateError(f"Bill {self.id} is {self.status.value}; only REVIEW bills can be posted")
        if not self.lines:
            raise InvalidStateError(f"Bill {self.id} has no lines")

        unmatched = self.unmatched_line_numbers
        if unmatched:
            raise InvalidStateError(
                f"{len(unmatched)} line(s) have no matched SKU",
                line_numbers=unmatched,
            )

        bad_qty = [line.line_no for line in self.lines if line.normalized_qty <= 0]
        if bad_qty:
            raise ValidationError("Quantity must be greater than zero", line_numbers=bad_qty)

    def mark_posted(self, actor: str, at: Optional[datetime] = None) -> None:
        self._transition(BillStatus.POSTED)
        self.posted_at = at or datetime.utcnow()
        self.posted_by = actor
        self.posting_seq += 1

    def reopen(self) -> None:
        """POSTED -> REVIEW. Inventory is left as posted."""
        if self.status != BillStatus.POSTED:
            raise InvalidStateError(f"Bill {self.id} is {self.status.value}; only POSTED bills can be reopened")
        self._transition(BillStatus.REVIEW)
        self.posted_at = None
        self.posted_by = None

    def void(self) -> None:
        """DRAFT|REVIEW -> VOID."""
        if self.status == BillStatus.POSTED:
            raise InvalidStateError(f"Bill {self.id} is POSTED; reopen it before voiding")
        self._transition(BillStatus.VOID)

    class Config:
        json_encoders = {
            Decimal: lambda v: str(v)
        }
