"""Shared pytest fixtures: catalog, service and parsed-document factories."""

import sys
from decimal import Decimal
from pathlib import Path

import pytest

# Add repo root to path
sys.path.insert(0, str(Path(__file__).resolve().parent))

from catalog.base import CatalogProduct
from catalog.memory import InMemoryCatalog
from core.audit import AuditLogger, InMemoryAuditBackend
from core.config import Settings
from core.observability.metrics import MetricsCollector
from sku_matcher.alias_store import SQLiteAliasStore
from vendor_bills.db import BillRepository
from vendor_bills.service import ReconciliationService


VENDOR_ID = "V-ACME"


def make_products():
    return [
        CatalogProduct(
            sku="WIDGET-1",
            name="Blue Widget",
            barcodes=["0012345678905"],
            cost=Decimal("2.00"),
            on_hand=Decimal("10"),
        ),
        CatalogProduct(
            sku="GADGET-7",
            name="Steel Gadget Large",
            vendor_refs=["AC-GAD-7"],
            cost=Decimal("5.00"),
            on_hand=Decimal("0"),
        ),
        CatalogProduct(
            sku="BOLT-M6",
            name="Hex Bolt M6 Zinc",
            cost=Decimal("0.10"),
            on_hand=Decimal("500"),
        ),
    ]


@pytest.fixture(autouse=True)
def reset_metrics():
    MetricsCollector.instance().reset()
    yield


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "vendor_bills.db"


@pytest.fixture
def settings(db_path):
    return Settings(db_path=db_path, catalog_timeout_seconds=0.5)


@pytest.fixture
def catalog():
    return InMemoryCatalog(make_products())


@pytest.fixture
def audit_backend():
    return InMemoryAuditBackend()


@pytest.fixture
def service(db_path, settings, catalog, audit_backend):
    audit = AuditLogger()
    audit.add_backend(audit_backend)
    return ReconciliationService(
        repository=BillRepository(db_path),
        alias_store=SQLiteAliasStore(db_path),
        catalog=catalog,
        audit=audit,
        settings=settings,
    )


@pytest.fixture
def make_document():
    """Factory for parsed-document payloads."""
    def _make(invoice_no="INV-1001", lines=None, invoice_date="2024-03-01", **header):
        if lines is None:
            lines = [
                {"sku": "widget-1", "description": "Blue widget", "qty": "2", "unit": "each",
                 "unit_price": "2.50", "ext_price": "5.00"},
                {"sku": "ac-gad-7", "description": "Steel gadget large", "qty": "3", "unit": "ea",
                 "unit_price": "4.00", "ext_price": "12.00"},
            ]
        return {
            "header": {"invoice_no": invoice_no, "invoice_date": invoice_date, **header},
            "lines": lines,
            "ocr_confidence": 0.97,
        }
    return _make
