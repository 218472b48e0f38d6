"""Catalog - product/inventory collaborator consumed by the engine.

Usage:
    from catalog import InMemoryCatalog, CatalogProduct

    catalog = InMemoryCatalog([CatalogProduct(sku="WIDGET-1", name="Blue Widget")])
    product = await catalog.search_by_sku_or_barcode("widget-1")
"""

from catalog.base import (
    CatalogProduct,
    CatalogService,
    CatalogSkuNotFound,
    bounded,
)
from catalog.memory import InMemoryCatalog
from catalog.sqlite_catalog import SQLiteCatalog, init_catalog_db

__all__ = [
    "CatalogProduct",
    "CatalogService",
    "CatalogSkuNotFound",
    "bounded",
    "InMemoryCatalog",
    "SQLiteCatalog",
    "init_catalog_db",
]
