"""Reconciliation Service.

Facade over ingestion, matching, the alias store and posting. Every mutating
operation on a bill runs under that bill's lock so a reopen and a post (or
two line edits) cannot interleave. The repository's version check catches
writers outside this process.

Usage:
    service = ReconciliationService.from_settings()
    result = await service.ingest(document, vendor_id="V-1")
    await service.accept_all_high_confidence(result.bill.id, actor="alice")
    await service.post(result.bill.id, actor="alice")
"""

import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple, Union

from catalog.base import CatalogProduct, CatalogService, bounded
from catalog.sqlite_catalog import SQLiteCatalog
from core.audit import (
    AuditEventType,
    AuditLogger,
    InMemoryAuditBackend,
    JSONFileAuditBackend,
)
from core.config import Settings, get_settings
from core.errors import ConflictError, InvalidStateError, ValidationError
from core.models import AuditEvent
from core.observability.logging import get_logger, log_transition, with_correlation
from core.observability.metrics import get_metrics
from sku_matcher.alias_store import AliasStore, SQLiteAliasStore
from sku_matcher.matcher import SkuMatcher
from sku_matcher.models import MatchSuggestions, UnitConversion, VendorSkuAlias
from vendor_bills.db import BillRepository
from vendor_bills.ingest import BillIngestService, IngestResult, as_normalized
from vendor_bills.models import BillStatus, ParsedDocument, VendorBill
from vendor_bills.posting import CostPolicy, PostingResult, PostingService

logger = get_logger(__name__)

# Priority given to the alias created alongside a new product
NEW_PRODUCT_ALIAS_PRIORITY = 10


class ReconciliationService:
    """Reconciliation API for vendor bills."""

    def __init__(
        self,
        repository: BillRepository,
        alias_store: AliasStore,
        catalog: CatalogService,
        audit: Optional[AuditLogger] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository
        self.alias_store = alias_store
        self.catalog = catalog

        if audit is None:
            audit = AuditLogger()
            audit.add_backend(InMemoryAuditBackend())
        self.audit = audit

        self.matcher = SkuMatcher(
            alias_store,
            history=repository,
            catalog_timeout=self.settings.catalog_timeout_seconds,
            default_limit=self.settings.suggest_limit,
        )
        self.ingestion = BillIngestService(
            repository,
            alias_store,
            self.matcher,
            catalog,
            self.audit,
            totals_tolerance_pct=self.settings.totals_tolerance_pct,
        )
        self.posting = PostingService(
            repository,
            catalog,
            self.audit,
            catalog_timeout=self.settings.catalog_timeout_seconds,
            default_cost_policy=CostPolicy.parse(self.settings.cost_policy),
        )

        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._locks_loop = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ReconciliationService":
        """Build a SQLite-backed service from settings."""
        settings = settings or get_settings()
        audit = AuditLogger()
        if settings.audit_dir:
            audit.add_backend(JSONFileAuditBackend(settings.audit_dir))
        else:
            audit.add_backend(InMemoryAuditBackend())
        return cls(
            repository=BillRepository(settings.db_path),
            alias_store=SQLiteAliasStore(settings.db_path),
            catalog=SQLiteCatalog(settings.effective_catalog_db_path),
            audit=audit,
            settings=settings,
        )

    # =========================================================================
    # Locking
    # =========================================================================

    @asynccontextmanager
    async def _bill_lock(self, bill_id: str):
        loop = asyncio.get_running_loop()
        if self._locks_loop is not loop:
            self._locks = {}
            self._lock_users = {}
            self._locks_loop = loop
        lock = self._locks.setdefault(bill_id, asyncio.Lock())
        self._lock_users[bill_id] = self._lock_users.get(bill_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Drop the lock once no holder or waiter references it
            self._lock_users[bill_id] -= 1
            if not self._lock_users[bill_id]:
                del self._lock_users[bill_id]
                del self._locks[bill_id]

    def _scope(self, bill: VendorBill, actor: str) -> Dict[str, Any]:
        return dict(
            tenant_id=bill.tenant_id,
            store_id=bill.store_id,
            bill_id=bill.id,
            invoice_no=bill.invoice_no,
            actor=actor,
        )

    # =========================================================================
    # Ingestion and Reads
    # =========================================================================

    async def ingest(
        self,
        document: Union[ParsedDocument, Dict[str, Any]],
        vendor_id: str,
        tenant_id: str = "default",
        store_id: Optional[str] = None,
        actor: str = "system",
        file_bytes: Optional[bytes] = None,
    ) -> IngestResult:
        """Ingest a parsed document; repeats return the existing bill."""
        with with_correlation(tenant_id=tenant_id, store_id=store_id, vendor_id=vendor_id,
                              actor=actor, operation="ingest"):
            return await self.ingestion.ingest(
                document,
                vendor_id,
                tenant_id=tenant_id,
                store_id=store_id,
                actor=actor,
                file_bytes=file_bytes,
            )

    def get_bill(self, bill_id: str) -> VendorBill:
        return self.repository.get(bill_id)

    def list_bills(
        self,
        tenant_id: str = "default",
        status: Optional[BillStatus] = None,
        vendor_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[VendorBill]:
        return self.repository.list(tenant_id=tenant_id, status=status, vendor_id=vendor_id, limit=limit)

    def bill_history(self, bill_id: str) -> List[AuditEvent]:
        """Audit entries for a bill, oldest first."""
        self.repository.get(bill_id)
        events = self.audit.query(bill_id=bill_id, limit=1000)
        return sorted(events, key=lambda e: e.timestamp)

    async def suggest_for_line(
        self,
        bill_id: str,
        line_id: str,
        limit: Optional[int] = None,
    ) -> MatchSuggestions:
        """Ranked candidates for one line. Read-only."""
        bill = self.repository.get(bill_id)
        line = bill.line(line_id)
        with with_correlation(bill_id=bill.id, line_no=line.line_no, operation="suggest"):
            return await self.matcher.suggest(
                as_normalized(line),
                bill.vendor_id,
                self.catalog,
                limit=limit,
                tenant_id=bill.tenant_id,
            )

    # =========================================================================
    # Line Matching
    # =========================================================================

    async def update_match(
        self,
        bill_id: str,
        line_id: str,
        internal_sku: str,
        actor: str,
        qty: Optional[Decimal] = None,
        unit: Optional[str] = None,
        unit_price: Optional[Decimal] = None,
    ) -> VendorBill:
        """Manually match a line, optionally correcting qty, unit and price."""
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="update_match"):
                line = bill.update_match(line_id, internal_sku, qty=qty, unit=unit, unit_price=unit_price)
                self.repository.save(bill)

                get_metrics().record_line_matched("manual")
                logger.info(
                    f"Line {line.line_no} matched to {line.matched_sku}",
                    extra_fields={"user_overridden": line.user_overridden},
                )
                self.audit.log_info(
                    AuditEventType.LINE_MATCHED,
                    f"Line {line.line_no} matched to {line.matched_sku}",
                    line_no=line.line_no,
                    details={
                        "internal_sku": line.matched_sku,
                        "suggested_sku": line.suggested_sku,
                        "user_overridden": line.user_overridden,
                        "qty": str(line.normalized_qty),
                        "unit": line.normalized_unit,
                        "unit_price": str(line.unit_price),
                    },
                    **self._scope(bill, actor),
                )
                return bill

    async def accept_all_high_confidence(self, bill_id: str, actor: str) -> int:
        """Commit every HIGH suggestion. Returns the number of changed lines."""
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="accept_all_high_confidence"):
                changed = bill.accept_all_high_confidence()
                if not changed:
                    logger.info("No high-confidence lines to accept")
                    return 0

                self.repository.save(bill)
                by_reason: Dict[str, int] = {}
                for line in bill.lines:
                    if line.line_no in changed:
                        by_reason[line.match_reason] = by_reason.get(line.match_reason, 0) + 1
                for reason, count in by_reason.items():
                    get_metrics().record_line_matched(reason, count)

                self.audit.log_info(
                    AuditEventType.LINES_BULK_ACCEPTED,
                    f"Accepted {len(changed)} high-confidence line(s)",
                    details={"line_numbers": changed},
                    **self._scope(bill, actor),
                )
                return len(changed)

    # =========================================================================
    # Aliases and Products
    # =========================================================================

    async def create_alias_from_line(
        self,
        bill_id: str,
        line_id: str,
        actor: str,
        priority: Optional[int] = None,
        unit_conversion: Optional[UnitConversion] = None,
        apply_to_vendor: bool = False,
    ) -> VendorSkuAlias:
        """Learn an alias from a confirmed (not overridden) line match.

        With apply_to_vendor, other unresolved lines of the bill carrying
        the same vendor SKU are matched as well.
        """
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="create_alias"):
                line = bill.ensure_alias_eligible(line_id)
                alias = self.alias_store.upsert(
                    bill.vendor_id,
                    line.vendor_sku_norm,
                    line.matched_sku,
                    unit_conversion=unit_conversion,
                    priority=priority,
                    tenant_id=bill.tenant_id,
                    created_by=actor,
                )
                get_metrics().record_alias_created()

                applied: List[int] = []
                if apply_to_vendor and bill.status not in (BillStatus.POSTED, BillStatus.VOID):
                    applied = bill.apply_alias_match(alias.vendor_sku_norm, alias.internal_sku, alias.id)
                    if applied:
                        self.repository.save(bill)
                        get_metrics().record_line_matched("alias", len(applied))

                self.audit.log_info(
                    AuditEventType.ALIAS_CREATED,
                    f"Alias {alias.vendor_sku_norm} -> {alias.internal_sku} created from line {line.line_no}",
                    line_no=line.line_no,
                    details={
                        "alias_id": alias.id,
                        "priority": alias.priority,
                        "applied_to_lines": applied,
                    },
                    **self._scope(bill, actor),
                )
                return alias

    def upsert_alias(
        self,
        vendor_id: str,
        vendor_sku: str,
        internal_sku: str,
        actor: str,
        unit_conversion: Optional[UnitConversion] = None,
        priority: Optional[int] = None,
        tenant_id: str = "default",
    ) -> VendorSkuAlias:
        """Administrative alias write; no line precondition."""
        alias = self.alias_store.upsert(
            vendor_id,
            vendor_sku,
            internal_sku,
            unit_conversion=unit_conversion,
            priority=priority,
            tenant_id=tenant_id,
            created_by=actor,
        )
        get_metrics().record_alias_created()
        self.audit.log_info(
            AuditEventType.ALIAS_CREATED,
            f"Alias {alias.vendor_sku_norm} -> {alias.internal_sku} upserted",
            tenant_id=tenant_id,
            actor=actor,
            details={"alias_id": alias.id, "vendor_id": alias.vendor_id, "priority": alias.priority},
        )
        return alias

    def list_aliases(self, vendor_id: str, tenant_id: str = "default") -> List[VendorSkuAlias]:
        return self.alias_store.list_for_vendor(vendor_id, tenant_id=tenant_id)

    async def create_product_from_line(
        self,
        bill_id: str,
        line_id: str,
        actor: str,
        product: CatalogProduct,
    ) -> Tuple[VendorBill, CatalogProduct, Optional[VendorSkuAlias]]:
        """Create a catalog product for an unmatched line and match the line to it.

        An alias at priority 10 is created so the next bill from the vendor
        resolves automatically.
        """
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="create_product"):
                line = bill.line(line_id)
                if bill.status in (BillStatus.POSTED, BillStatus.VOID):
                    raise InvalidStateError(
                        f"Bill {bill.id} is {bill.status.value}; lines are immutable",
                        line_numbers=[line.line_no],
                    )

                try:
                    created = await bounded(
                        self.catalog.create_product(product),
                        self.settings.catalog_timeout_seconds,
                        "create_product",
                    )
                except NotImplementedError as e:
                    raise ValidationError(str(e), line_numbers=[line.line_no]) from e

                bill.update_match(line_id, created.sku)
                alias = None
                if line.vendor_sku_norm:
                    alias = self.alias_store.upsert(
                        bill.vendor_id,
                        line.vendor_sku_norm,
                        created.sku,
                        priority=NEW_PRODUCT_ALIAS_PRIORITY,
                        tenant_id=bill.tenant_id,
                        created_by=actor,
                    )
                    get_metrics().record_alias_created()
                self.repository.save(bill)
                get_metrics().record_line_matched("manual")

                self.audit.log_info(
                    AuditEventType.PRODUCT_CREATED,
                    f"Product {created.sku} created from line {line.line_no}",
                    line_no=line.line_no,
                    details={
                        "sku": created.sku,
                        "name": created.name,
                        "alias_id": alias.id if alias else None,
                    },
                    **self._scope(bill, actor),
                )
                return bill, created, alias

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def post(
        self,
        bill_id: str,
        actor: str,
        cost_policy: Optional[CostPolicy] = None,
    ) -> PostingResult:
        """Post a bill to the catalog; a version conflict is retried once."""
        async with self._bill_lock(bill_id):
            with with_correlation(bill_id=bill_id, actor=actor, operation="post"):
                try:
                    return await self.posting.post(bill_id, actor, cost_policy=cost_policy)
                except ConflictError as e:
                    logger.warning(f"Posting conflict, retrying once: {e.message}")
                    return await self.posting.post(bill_id, actor, cost_policy=cost_policy)

    async def reopen(self, bill_id: str, actor: str, reason: Optional[str] = None) -> VendorBill:
        """POSTED -> REVIEW. Inventory stays as posted; the next post applies net changes."""
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="reopen"):
                bill.reopen()
                self.repository.save(bill)

                get_metrics().record_bill_reopened()
                log_transition(bill.id, BillStatus.POSTED.value, BillStatus.REVIEW.value, reason=reason)
                self.audit.log_info(
                    AuditEventType.BILL_REOPENED,
                    f"Bill {bill.invoice_no} reopened",
                    reason=reason,
                    details={"posting_seq": bill.posting_seq},
                    **self._scope(bill, actor),
                )
                return bill

    async def void(self, bill_id: str, actor: str, reason: Optional[str] = None) -> VendorBill:
        """DRAFT|REVIEW -> VOID."""
        async with self._bill_lock(bill_id):
            bill = self.repository.get(bill_id)
            with with_correlation(bill_id=bill.id, actor=actor, operation="void"):
                previous = bill.status
                bill.void()
                self.repository.save(bill)

                get_metrics().record_bill_voided()
                log_transition(bill.id, previous.value, BillStatus.VOID.value, reason=reason)
                self.audit.log_info(
                    AuditEventType.BILL_VOIDED,
                    f"Bill {bill.invoice_no} voided",
                    reason=reason,
                    **self._scope(bill, actor),
                )
                return bill
