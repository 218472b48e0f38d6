"""Vendor Bills - bill aggregate, ingestion, posting and the reconciliation facade.

Usage:
    from vendor_bills import ReconciliationService

    service = ReconciliationService.from_settings()
    result = await service.ingest(document, vendor_id="V-1")
    await service.accept_all_high_confidence(result.bill.id, actor="alice")
    posting = await service.post(result.bill.id, actor="alice")
"""

from vendor_bills.models import (
    ALLOWED_TRANSITIONS,
    BillStatus,
    ParsedDocument,
    ParsedHeader,
    ParsedLine,
    VendorBill,
    VendorBillLine,
)
from vendor_bills.templates import TemplateConfig, validate_template
from vendor_bills.db import BillRepository, PostingSnapshotLine, init_bills_db
from vendor_bills.ingest import BillIngestService, IngestResult
from vendor_bills.posting import CostPolicy, PostingResult, PostingService, ReceivingRecord
from vendor_bills.service import ReconciliationService

__all__ = [
    # Models
    "ALLOWED_TRANSITIONS",
    "BillStatus",
    "ParsedDocument",
    "ParsedHeader",
    "ParsedLine",
    "VendorBill",
    "VendorBillLine",
    "TemplateConfig",
    "validate_template",
    # Persistence
    "BillRepository",
    "PostingSnapshotLine",
    "init_bills_db",
    # Services
    "BillIngestService",
    "IngestResult",
    "CostPolicy",
    "PostingResult",
    "PostingService",
    "ReceivingRecord",
    "ReconciliationService",
]
