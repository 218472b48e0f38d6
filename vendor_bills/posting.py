"""Posting Service.

Applies a bill's matched lines to the catalog as one all-or-nothing batch:

    1. Re-read the bill and re-check every precondition
    2. Plan receipts (one per line, or net per-SKU deltas on a re-post)
    3. Inside a catalog transaction: apply every receipt, then commit the
       POSTED bill and its posting snapshot with an optimistic version check
    4. Any failure rolls the catalog back and leaves the bill in REVIEW; if
       the catalog fails to commit after the bill was committed, the bill is
       restored and the snapshot removed

The bills database write happens last and is short, so no database lock is
held while waiting on the catalog.
"""

import time
from collections import OrderedDict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from catalog.base import CatalogService, CatalogSkuNotFound, bounded
from core.audit import AuditEventType, AuditLogger
from core.errors import ReconciliationError, ValidationError
from core.observability.logging import get_logger, log_transition
from core.observability.metrics import get_metrics
from vendor_bills.db import BillRepository, PostingSnapshotLine
from vendor_bills.models import BillStatus, VendorBill, CENTS

logger = get_logger(__name__)

COST_PLACES = Decimal("0.0001")


# =============================================================================
# Cost Policy
# =============================================================================

class CostPolicy(str, Enum):
    """How a receipt changes the catalog unit cost."""
    AVERAGE_COST = "average_cost"
    LAST_COST = "last_cost"
    NO_UPDATE = "no_update"

    @classmethod
    def parse(cls, value) -> "CostPolicy":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(p.value for p in cls)
            raise ValidationError(f"Unknown cost policy '{value}' (expected one of: {allowed})")

    def new_cost(
        self,
        current_cost: Decimal,
        on_hand: Decimal,
        qty: Decimal,
        unit_price: Decimal,
    ) -> Decimal:
        """Cost after receiving qty at unit_price.

        Negative quantities (corrections) never change the cost.
        """
        if self == CostPolicy.NO_UPDATE or qty <= 0:
            return current_cost
        if self == CostPolicy.LAST_COST:
            return unit_price

        denominator = on_hand + qty
        if denominator <= 0:
            return unit_price
        average = (current_cost * on_hand + unit_price * qty) / denominator
        return average.quantize(COST_PLACES, rounding=ROUND_HALF_UP)


# =============================================================================
# Results
# =============================================================================

class ReceivingRecord(BaseModel):
    """One receipt applied to the catalog."""
    line_numbers: List[int] = Field(default_factory=list, description="Bill lines this receipt covers")
    sku: str
    qty_delta: Decimal
    unit_price: Decimal
    new_cost: Optional[Decimal] = None

    class Config:
        json_encoders = {
            Decimal: lambda v: str(v)
        }


class PostingResult(BaseModel):
    """Outcome of a successful posting."""
    bill_id: str
    posting_seq: int
    lines_posted: int
    total_qty: Decimal
    total_cost: Decimal
    posted_at: datetime
    posted_by: str
    receipts: List[ReceivingRecord] = Field(default_factory=list)

    class Config:
        json_encoders = {
            Decimal: lambda v: str(v)
        }


# =============================================================================
# Receipt Planning
# =============================================================================

def _weighted_price(items) -> Decimal:
    qty = sum((q for q, _ in items), Decimal("0"))
    if qty == 0:
        return items[0][1]
    value = sum((q * p for q, p in items), Decimal("0"))
    return (value / qty).quantize(COST_PLACES, rounding=ROUND_HALF_UP)


def plan_receipts(bill: VendorBill, previous: List[PostingSnapshotLine]) -> List[ReceivingRecord]:
    """Plan the receipts for a posting.

    First posting: one receipt per line, in line order.

    Re-posting: the net quantity difference per SKU against the previous
    snapshot. SKUs whose quantity is unchanged produce nothing; a SKU that
    was dropped from the bill is received back out.
    """
    if not previous:
        return [
            ReceivingRecord(
                line_numbers=[line.line_no],
                sku=line.matched_sku,
                qty_delta=line.normalized_qty,
                unit_price=line.unit_price,
            )
            for line in sorted(bill.lines, key=lambda l: l.line_no)
        ]

    current: Dict[str, list] = OrderedDict()
    for line in sorted(bill.lines, key=lambda l: l.line_no):
        current.setdefault(line.matched_sku, []).append(line)

    before: Dict[str, list] = OrderedDict()
    for item in previous:
        before.setdefault(item.sku, []).append(item)

    receipts = []
    for sku in list(current) + sorted(set(before) - set(current)):
        lines = current.get(sku, [])
        old = before.get(sku, [])
        new_qty = sum((line.normalized_qty for line in lines), Decimal("0"))
        old_qty = sum((item.qty for item in old), Decimal("0"))
        delta = new_qty - old_qty
        if delta == 0:
            continue

        if delta > 0:
            price = _weighted_price([(line.normalized_qty, line.unit_price) for line in lines])
        else:
            price = _weighted_price([(item.qty, item.unit_price) for item in old])

        receipts.append(ReceivingRecord(
            line_numbers=[line.line_no for line in lines] or [item.line_no for item in old],
            sku=sku,
            qty_delta=delta,
            unit_price=price,
        ))
    return receipts


# =============================================================================
# Posting Service
# =============================================================================

class PostingService:
    """Applies approved bills to the catalog.

    Example:
        service = PostingService(repository, catalog, audit)
        result = await service.post(bill_id, actor="alice")
        print(f"Posted {result.lines_posted} lines, seq {result.posting_seq}")
    """

    def __init__(
        self,
        repository: BillRepository,
        catalog: CatalogService,
        audit: AuditLogger,
        catalog_timeout: float = 5.0,
        default_cost_policy: CostPolicy = CostPolicy.AVERAGE_COST,
    ):
        self.repository = repository
        self.catalog = catalog
        self.audit = audit
        self.catalog_timeout = catalog_timeout
        self.default_cost_policy = CostPolicy.parse(default_cost_policy)

    async def post(
        self,
        bill_id: str,
        actor: str,
        cost_policy: Optional[CostPolicy] = None,
    ) -> PostingResult:
        """Post a bill.

        The bill is re-read here; nothing the caller validated earlier is
        trusted.

        Raises:
            AlreadyPostedError: If the bill is already POSTED
            InvalidStateError: If not REVIEW, or any line is unmatched
            ValidationError: Bad quantity, or a matched SKU missing from the catalog
            ConflictError: If the bill changed while posting
            CollaboratorError: If the catalog timed out or was unavailable
        """
        start_time = time.time()
        policy = CostPolicy.parse(cost_policy) if cost_policy else self.default_cost_policy
        bill = self.repository.get(bill_id)

        try:
            bill.ensure_postable()
            expected_version = bill.version
            previous = self.repository.last_posting(bill.id)
            receipts = plan_receipts(bill, previous)
            posting_seq = bill.posting_seq + 1
            original = bill.model_copy(deep=True)
            committed = False

            try:
                async with self.catalog.transaction() as session:
                    for receipt in receipts:
                        await self._apply(session, bill, receipt, policy, posting_seq)

                    bill.mark_posted(actor)
                    snapshot = [
                        PostingSnapshotLine(
                            posting_seq=bill.posting_seq,
                            line_no=line.line_no,
                            sku=line.matched_sku,
                            qty=line.normalized_qty,
                            unit_price=line.unit_price,
                        )
                        for line in bill.lines
                    ]
                    self.repository.commit_posting(bill, expected_version, snapshot)
                    committed = True
            except BaseException:
                # The catalog rolled back after the bill was committed
                if committed:
                    self._revert_commit(original, bill.version, posting_seq)
                raise
        except ReconciliationError as e:
            self._record_failure(bill, actor, e)
            raise

        total_qty = sum((r.qty_delta for r in receipts), Decimal("0"))
        total_cost = sum((r.qty_delta * r.unit_price for r in receipts), Decimal("0")).quantize(CENTS)
        result = PostingResult(
            bill_id=bill.id,
            posting_seq=bill.posting_seq,
            lines_posted=len(bill.lines),
            total_qty=total_qty,
            total_cost=total_cost,
            posted_at=bill.posted_at,
            posted_by=actor,
            receipts=receipts,
        )

        elapsed = (time.time() - start_time) * 1000
        get_metrics().record_bill_posted(duration_ms=elapsed)
        log_transition(bill.id, BillStatus.REVIEW.value, BillStatus.POSTED.value, posting_seq=bill.posting_seq)
        self.audit.log_info(
            AuditEventType.BILL_POSTED,
            f"Bill {bill.invoice_no} posted ({len(receipts)} receipts, seq {bill.posting_seq})",
            tenant_id=bill.tenant_id,
            store_id=bill.store_id,
            bill_id=bill.id,
            invoice_no=bill.invoice_no,
            actor=actor,
            details={
                "posting_seq": bill.posting_seq,
                "cost_policy": policy.value,
                "total_qty": str(total_qty),
                "total_cost": str(total_cost),
                "receipts": [r.model_dump(mode="json") for r in receipts],
            },
        )
        return result

    async def _apply(
        self,
        session: CatalogService,
        bill: VendorBill,
        receipt: ReceivingRecord,
        policy: CostPolicy,
        posting_seq: int,
    ) -> None:
        product = await bounded(
            session.search_by_sku_or_barcode(receipt.sku),
            self.catalog_timeout,
            "search_by_sku_or_barcode",
        )
        if product is None or product.sku != receipt.sku:
            raise ValidationError(
                f"SKU {receipt.sku} no longer exists in the catalog",
                line_numbers=receipt.line_numbers,
            )

        receipt.new_cost = policy.new_cost(product.cost, product.on_hand, receipt.qty_delta, receipt.unit_price)
        try:
            await bounded(
                session.apply_receiving(
                    receipt.sku,
                    receipt.qty_delta,
                    receipt.new_cost,
                    reference=f"bill:{bill.id}:{posting_seq}",
                ),
                self.catalog_timeout,
                "apply_receiving",
            )
        except CatalogSkuNotFound as e:
            raise ValidationError(
                f"Catalog rejected receipt for SKU {e.sku}",
                line_numbers=receipt.line_numbers,
            ) from e

    def _revert_commit(self, original: VendorBill, posted_version: int, posting_seq: int) -> None:
        logger.warning(
            f"Catalog did not commit posting {posting_seq} of bill {original.id}, restoring bill",
            extra_fields={"posting_seq": posting_seq},
        )
        try:
            self.repository.revert_posting(original, posted_version, posting_seq)
        except Exception as e:
            logger.error(
                f"Could not restore bill {original.id} after failed catalog commit: {e}",
                extra_fields={"posting_seq": posting_seq},
                exc_info=True,
            )
            raise

    def _record_failure(self, bill: VendorBill, actor: str, error: ReconciliationError) -> None:
        get_metrics().record_posting_failed(error.code)
        logger.error(
            f"Posting failed for bill {bill.id}: {error.message}",
            extra_fields={"error": error.code, "line_numbers": error.line_numbers},
        )
        self.audit.log_error(
            AuditEventType.POSTING_FAILED,
            f"Posting failed: {error.message}",
            tenant_id=bill.tenant_id,
            store_id=bill.store_id,
            bill_id=bill.id,
            invoice_no=bill.invoice_no,
            actor=actor,
            details=error.to_dict(),
        )
