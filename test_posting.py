"""
Posting Test

Validates posting bills to the catalog:
1. One receipt per line on first posting, with cost policy applied
2. All-or-nothing: a failing receipt rolls every receipt back
3. Double posting is rejected without a second mutation
4. Re-posting after reopen applies net per-SKU deltas
5. Collaborator timeouts and version conflicts
"""

import asyncio
import sqlite3
from decimal import Decimal

import pytest

from conftest import VENDOR_ID, make_products


def ready_bill(service, document):
    """Ingest and accept every high-confidence line."""
    bill = asyncio.run(service.ingest(document, VENDOR_ID, actor="alice")).bill
    asyncio.run(service.accept_all_high_confidence(bill.id, actor="alice"))
    return service.get_bill(bill.id)


def build_service(db_path, settings, catalog, audit_backend=None, repository=None):
    from core.audit import AuditLogger, InMemoryAuditBackend
    from sku_matcher.alias_store import SQLiteAliasStore
    from vendor_bills.db import BillRepository
    from vendor_bills.service import ReconciliationService
    audit = AuditLogger()
    audit.add_backend(audit_backend or InMemoryAuditBackend())
    return ReconciliationService(
        repository=repository or BillRepository(db_path),
        alias_store=SQLiteAliasStore(db_path),
        catalog=catalog,
        audit=audit,
        settings=settings,
    )


class TestFirstPosting:
    """Test a clean first posting."""

    def test_scenario_one_receipt_per_line(self, service, catalog, make_document):
        bill = ready_bill(service, make_document())

        result = asyncio.run(service.post(bill.id, actor="alice"))

        stored = service.get_bill(bill.id)
        assert stored.status.value == "POSTED"
        assert stored.posted_by == "alice"
        assert stored.posted_at is not None

        calls = catalog.receiving_calls
        assert [(c.sku, c.qty_delta) for c in calls] == [
            ("WIDGET-1", Decimal("2")),
            ("GADGET-7", Decimal("3")),
        ]
        assert all(c.reference == f"bill:{bill.id}:1" for c in calls)

        assert result.posting_seq == 1
        assert result.lines_posted == 2
        assert result.total_qty == Decimal("5")
        assert result.total_cost == Decimal("17.00")
        assert [r.unit_price for r in result.receipts] == [Decimal("2.50"), Decimal("4.00")]

    def test_average_cost_applied(self, service, catalog, make_document):
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice"))

        widget = catalog.get("WIDGET-1")
        assert widget.on_hand == Decimal("12")
        assert widget.cost == Decimal("2.0833")

        gadget = catalog.get("GADGET-7")
        assert gadget.on_hand == Decimal("3")
        assert gadget.cost == Decimal("4.0000")

    def test_last_cost_policy(self, service, catalog, make_document):
        from vendor_bills.posting import CostPolicy
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice", cost_policy=CostPolicy.LAST_COST))
        assert catalog.get("WIDGET-1").cost == Decimal("2.50")

    def test_no_update_policy(self, service, catalog, make_document):
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice", cost_policy="no_update"))
        widget = catalog.get("WIDGET-1")
        assert widget.cost == Decimal("2.00")
        assert widget.on_hand == Decimal("12")

    def test_posted_audit_and_metrics(self, service, audit_backend, make_document):
        from core.observability.metrics import get_metrics
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice"))

        events = audit_backend.query(event_type="BILL_POSTED", bill_id=bill.id)
        assert len(events) == 1
        assert events[0].details["cost_policy"] == "average_cost"
        assert len(events[0].details["receipts"]) == 2
        assert get_metrics().get_summary()["bills"]["posted"] == 1


class TestAtomicity:
    """Test all-or-nothing posting."""

    def test_failed_receipt_rolls_back_everything(self, service, catalog, audit_backend, make_document):
        from core.errors import ValidationError
        from core.observability.metrics import get_metrics
        bill = ready_bill(service, make_document())
        catalog.fail_skus.add("GADGET-7")

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(service.post(bill.id, actor="alice"))

        assert exc_info.value.line_numbers == [2]
        widget = catalog.get("WIDGET-1")
        assert widget.on_hand == Decimal("10")
        assert widget.cost == Decimal("2.00")

        stored = service.get_bill(bill.id)
        assert stored.status.value == "REVIEW"
        assert stored.posting_seq == 0
        assert audit_backend.query(event_type="POSTING_FAILED", bill_id=bill.id)
        assert get_metrics().get_summary()["bills"]["posting_failures"] == {"validation_error": 1}

    def test_product_removed_from_catalog(self, service, catalog, make_document):
        from core.errors import ValidationError
        bill = ready_bill(service, make_document())
        catalog.remove("GADGET-7")

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(service.post(bill.id, actor="alice"))
        assert exc_info.value.line_numbers == [2]
        assert catalog.get("WIDGET-1").on_hand == Decimal("10")

    def test_failed_post_can_be_retried(self, service, catalog, make_document):
        from core.errors import ValidationError
        bill = ready_bill(service, make_document())
        catalog.fail_skus.add("GADGET-7")
        with pytest.raises(ValidationError):
            asyncio.run(service.post(bill.id, actor="alice"))

        catalog.fail_skus.clear()
        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert result.posting_seq == 1
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")

    def test_compensating_transaction(self, db_path, settings, make_document):
        """Catalogs without native transactions reverse applied receipts."""
        from catalog.base import CatalogService
        from catalog.memory import InMemoryCatalog
        from core.errors import ValidationError

        class CompensatingCatalog(InMemoryCatalog):
            def transaction(self):
                return CatalogService.transaction(self)

        catalog = CompensatingCatalog(make_products())
        service = build_service(db_path, settings, catalog)
        bill = ready_bill(service, make_document())
        catalog.fail_skus.add("GADGET-7")

        with pytest.raises(ValidationError):
            asyncio.run(service.post(bill.id, actor="alice"))

        widget = catalog.get("WIDGET-1")
        assert widget.on_hand == Decimal("10")
        assert widget.cost == Decimal("2.00")
        assert catalog.receiving_calls[-1].reference == f"reversal:bill:{bill.id}:1"

    def test_catalog_commit_failure_restores_bill(self, db_path, settings, make_document):
        """A catalog that fails to commit after the bill was saved leaves the bill in REVIEW."""
        from contextlib import asynccontextmanager
        from catalog.memory import InMemoryCatalog
        from core.errors import CollaboratorError

        class CommitFailingCatalog(InMemoryCatalog):
            fail_commit = True

            @asynccontextmanager
            async def transaction(self):
                async with InMemoryCatalog.transaction(self) as session:
                    yield session
                    if self.fail_commit:
                        raise CollaboratorError("Catalog commit failed: disk I/O error")

        catalog = CommitFailingCatalog(make_products())
        service = build_service(db_path, settings, catalog)
        bill = ready_bill(service, make_document())

        with pytest.raises(CollaboratorError):
            asyncio.run(service.post(bill.id, actor="alice"))

        stored = service.get_bill(bill.id)
        assert stored.status.value == "REVIEW"
        assert stored.posting_seq == 0
        assert stored.posted_at is None
        assert service.repository.last_posting(bill.id) == []
        assert catalog.get("WIDGET-1").on_hand == Decimal("10")

        catalog.fail_commit = False
        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert result.posting_seq == 1
        assert [r.qty_delta for r in result.receipts] == [Decimal("2"), Decimal("3")]
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")
        assert service.get_bill(bill.id).status.value == "POSTED"


class TestDoublePosting:
    """Test that a bill posts once."""

    def test_second_post_rejected(self, service, catalog, make_document):
        from core.errors import AlreadyPostedError
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice"))

        with pytest.raises(AlreadyPostedError):
            asyncio.run(service.post(bill.id, actor="alice"))
        assert len(catalog.receiving_calls) == 2

    def test_concurrent_posts_mutate_once(self, service, catalog, make_document):
        from core.errors import AlreadyPostedError
        bill = ready_bill(service, make_document())

        async def race():
            return await asyncio.gather(
                service.post(bill.id, actor="alice"),
                service.post(bill.id, actor="bob"),
                return_exceptions=True,
            )

        outcomes = asyncio.run(race())

        assert sum(1 for o in outcomes if isinstance(o, AlreadyPostedError)) == 1
        assert len(catalog.receiving_calls) == 2
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")

    def test_bill_locks_released_after_use(self, service, make_document):
        bill = ready_bill(service, make_document())

        async def race():
            await asyncio.gather(
                service.post(bill.id, actor="alice"),
                service.post(bill.id, actor="bob"),
                return_exceptions=True,
            )
            return dict(service._locks)

        assert asyncio.run(race()) == {}
        assert service._lock_users == {}

    def test_void_bill_cannot_post(self, service, make_document):
        from core.errors import InvalidStateError
        bill = ready_bill(service, make_document())
        asyncio.run(service.void(bill.id, actor="alice"))
        with pytest.raises(InvalidStateError):
            asyncio.run(service.post(bill.id, actor="alice"))


class TestRepost:
    """Test net-delta re-posting after reopen."""

    def _post_and_reopen(self, service, make_document):
        bill = ready_bill(service, make_document())
        asyncio.run(service.post(bill.id, actor="alice"))
        asyncio.run(service.reopen(bill.id, actor="alice", reason="correction"))
        return service.get_bill(bill.id)

    def test_reopen_leaves_inventory(self, service, catalog, make_document):
        self._post_and_reopen(service, make_document)
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")
        assert len(catalog.receiving_calls) == 2

    def test_unchanged_repost_applies_nothing(self, service, catalog, make_document):
        bill = self._post_and_reopen(service, make_document)

        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert result.posting_seq == 2
        assert result.receipts == []
        assert len(catalog.receiving_calls) == 2
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")

    def test_increased_quantity_receives_difference(self, service, catalog, make_document):
        bill = self._post_and_reopen(service, make_document)
        asyncio.run(service.update_match(bill.id, bill.lines[0].id, "WIDGET-1", actor="alice", qty=Decimal("5")))

        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert [(r.sku, r.qty_delta, r.unit_price) for r in result.receipts] == [
            ("WIDGET-1", Decimal("3"), Decimal("2.50")),
        ]
        assert catalog.get("WIDGET-1").on_hand == Decimal("15")
        assert catalog.receiving_calls[-1].reference == f"bill:{bill.id}:2"

    def test_decreased_quantity_keeps_cost(self, service, catalog, make_document):
        bill = self._post_and_reopen(service, make_document)
        cost_before = catalog.get("WIDGET-1").cost
        asyncio.run(service.update_match(bill.id, bill.lines[0].id, "WIDGET-1", actor="alice", qty=Decimal("1")))

        asyncio.run(service.post(bill.id, actor="alice"))

        widget = catalog.get("WIDGET-1")
        assert widget.on_hand == Decimal("11")
        assert widget.cost == cost_before

    def test_rematched_line_moves_stock(self, service, catalog, make_document):
        bill = self._post_and_reopen(service, make_document)
        asyncio.run(service.update_match(bill.id, bill.lines[1].id, "BOLT-M6", actor="alice"))

        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert [(r.sku, r.qty_delta) for r in result.receipts] == [
            ("BOLT-M6", Decimal("3")),
            ("GADGET-7", Decimal("-3")),
        ]
        assert catalog.get("GADGET-7").on_hand == Decimal("0")
        assert catalog.get("BOLT-M6").on_hand == Decimal("503")


class TestCostPolicy:
    """Test cost computation."""

    def test_average(self):
        from vendor_bills.posting import CostPolicy
        cost = CostPolicy.AVERAGE_COST.new_cost(Decimal("2.00"), Decimal("10"), Decimal("2"), Decimal("2.50"))
        assert cost == Decimal("2.0833")

    def test_average_with_no_stock_uses_price(self):
        from vendor_bills.posting import CostPolicy
        policy = CostPolicy.AVERAGE_COST
        assert policy.new_cost(Decimal("5"), Decimal("0"), Decimal("3"), Decimal("4")) == Decimal("4.0000")
        assert policy.new_cost(Decimal("5"), Decimal("-10"), Decimal("3"), Decimal("4")) == Decimal("4")

    def test_negative_quantity_never_changes_cost(self):
        from vendor_bills.posting import CostPolicy
        for policy in CostPolicy:
            assert policy.new_cost(Decimal("2"), Decimal("10"), Decimal("-1"), Decimal("9")) == Decimal("2")

    def test_parse(self):
        from core.errors import ValidationError
        from vendor_bills.posting import CostPolicy
        assert CostPolicy.parse("last_cost") == CostPolicy.LAST_COST
        with pytest.raises(ValidationError):
            CostPolicy.parse("fifo")


class TestPlanReceipts:
    """Test receipt planning directly."""

    def test_duplicate_sku_lines_net_together(self, service, make_document):
        from vendor_bills.db import PostingSnapshotLine
        from vendor_bills.posting import plan_receipts
        lines = [
            {"sku": "widget-1", "description": "Blue widget", "qty": "2", "unit": "ea",
             "unit_price": "2.00", "ext_price": "4.00"},
            {"sku": "widget-1", "description": "Blue widget", "qty": "2", "unit": "ea",
             "unit_price": "3.00", "ext_price": "6.00"},
        ]
        bill = ready_bill(service, make_document(lines=lines))
        previous = [PostingSnapshotLine(posting_seq=1, line_no=1, sku="WIDGET-1", qty=Decimal("1"),
                                        unit_price=Decimal("2.00"))]

        receipts = plan_receipts(bill, previous)

        assert len(receipts) == 1
        assert receipts[0].line_numbers == [1, 2]
        assert receipts[0].qty_delta == Decimal("3")
        assert receipts[0].unit_price == Decimal("2.5000")


class TestCollaboratorFailures:
    """Test catalog timeouts and version conflicts."""

    def test_timeout_is_retryable(self, service, catalog, make_document):
        from core.errors import CollaboratorError
        bill = ready_bill(service, make_document())
        catalog.delay_seconds = 1.0

        with pytest.raises(CollaboratorError) as exc_info:
            asyncio.run(service.post(bill.id, actor="alice"))

        assert exc_info.value.retryable
        assert "timed out" in exc_info.value.message
        assert service.get_bill(bill.id).status.value == "REVIEW"

    def test_stale_save_conflicts(self, service, make_document):
        from core.errors import ConflictError
        bill = asyncio.run(service.ingest(make_document(), VENDOR_ID)).bill
        first = service.repository.get(bill.id)
        second = service.repository.get(bill.id)

        first.update_match(first.lines[0].id, "WIDGET-1")
        service.repository.save(first)
        second.update_match(second.lines[0].id, "BOLT-M6")

        with pytest.raises(ConflictError) as exc_info:
            service.repository.save(second)
        assert exc_info.value.retryable
        assert service.get_bill(bill.id).lines[0].matched_sku == "WIDGET-1"

    def test_commit_conflict_rolls_back_and_retries(self, db_path, settings, catalog, make_document):
        from core.errors import ConflictError
        from vendor_bills.db import BillRepository

        class FlakyRepository(BillRepository):
            conflicts = 1

            def commit_posting(self, bill, expected_version, snapshot):
                if self.conflicts:
                    self.conflicts -= 1
                    raise ConflictError(f"Bill {bill.id} was modified concurrently")
                return super().commit_posting(bill, expected_version, snapshot)

        service = build_service(db_path, settings, catalog, repository=FlakyRepository(db_path))
        bill = ready_bill(service, make_document())

        result = asyncio.run(service.post(bill.id, actor="alice"))

        assert result.posting_seq == 1
        assert len(catalog.receiving_calls) == 4
        assert catalog.get("WIDGET-1").on_hand == Decimal("12")
        assert service.get_bill(bill.id).status.value == "POSTED"


class TestSQLiteCatalog:
    """Test posting against the SQLite catalog."""

    @pytest.fixture
    def sqlite_catalog(self, tmp_path):
        from catalog.sqlite_catalog import SQLiteCatalog
        catalog = SQLiteCatalog(tmp_path / "catalog.db")
        for product in make_products():
            asyncio.run(catalog.create_product(product))
        return catalog

    def _on_hand(self, catalog, sku):
        return asyncio.run(catalog.search_by_sku_or_barcode(sku)).on_hand

    def test_posting_writes_journal(self, db_path, settings, sqlite_catalog, make_document):
        service = build_service(db_path, settings, sqlite_catalog)
        bill = ready_bill(service, make_document())

        asyncio.run(service.post(bill.id, actor="alice"))

        assert self._on_hand(sqlite_catalog, "WIDGET-1") == Decimal("12")
        conn = sqlite3.connect(str(sqlite_catalog.db_path))
        try:
            rows = conn.execute("SELECT sku, qty_delta, reference FROM catalog_receiving ORDER BY id").fetchall()
        finally:
            conn.close()
        assert rows == [
            ("WIDGET-1", "2", f"bill:{bill.id}:1"),
            ("GADGET-7", "3", f"bill:{bill.id}:1"),
        ]

    def test_failure_rolls_back(self, db_path, settings, sqlite_catalog, make_document):
        from core.errors import ValidationError
        service = build_service(db_path, settings, sqlite_catalog)
        bill = ready_bill(service, make_document())

        conn = sqlite3.connect(str(sqlite_catalog.db_path))
        try:
            conn.execute("DELETE FROM catalog_products WHERE sku = 'GADGET-7'")
            conn.commit()
        finally:
            conn.close()

        with pytest.raises(ValidationError) as exc_info:
            asyncio.run(service.post(bill.id, actor="alice"))

        assert exc_info.value.line_numbers == [2]
        assert self._on_hand(sqlite_catalog, "WIDGET-1") == Decimal("10")
        conn = sqlite3.connect(str(sqlite_catalog.db_path))
        try:
            assert conn.execute("SELECT COUNT(*) FROM catalog_receiving").fetchone()[0] == 0
        finally:
            conn.close()
