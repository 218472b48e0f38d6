"""In-memory catalog.

Snapshot-based transactional catalog used by tests and local runs. It can
simulate unavailability, latency and per-SKU failures.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from catalog.base import CatalogProduct, CatalogService, CatalogSkuNotFound
from sku_matcher.normalize import normalize_sku, text_similarity


@dataclass
class ReceivingCall:
    """One observed apply_receiving call."""
    sku: str
    qty_delta: Decimal
    new_cost: Decimal
    reference: Optional[str]
    at: datetime


class InMemoryCatalog(CatalogService):
    """Dictionary-backed catalog keyed by SKU."""

    def __init__(self, products: Iterable[CatalogProduct] = ()):
        self._products: Dict[str, CatalogProduct] = {p.sku: p for p in products}
        self._tx_lock = asyncio.Lock()

        # Observation and fault injection
        self.receiving_calls: List[ReceivingCall] = []
        self.fail_skus: Set[str] = set()
        self.unavailable = False
        self.delay_seconds = 0.0

    async def _io(self) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.unavailable:
            raise ConnectionError("catalog unavailable")

    def get(self, sku: str) -> Optional[CatalogProduct]:
        """Synchronous accessor for assertions."""
        return self._products.get(sku)

    def add(self, product: CatalogProduct) -> None:
        self._products[product.sku] = product

    def remove(self, sku: str) -> None:
        self._products.pop(sku, None)

    async def search_by_text(self, query, limit=10):
        await self._io()
        scored = [
            (text_similarity(query, p.name), p.sku, p)
            for p in self._products.values()
        ]
        scored = [s for s in scored if s[0] > 0]
        scored.sort(key=lambda s: (-s[0], s[1]))
        return [p for _, _, p in scored[:limit]]

    async def search_by_sku_or_barcode(self, code):
        await self._io()
        if not code:
            return None
        key = normalize_sku(code)
        for product in sorted(self._products.values(), key=lambda p: p.sku):
            if normalize_sku(product.sku) == key:
                return product
        for product in sorted(self._products.values(), key=lambda p: p.sku):
            refs = list(product.barcodes) + list(product.vendor_refs)
            if any(normalize_sku(ref) == key for ref in refs):
                return product
        return None

    async def apply_receiving(self, sku, qty_delta, new_cost, reference=None):
        await self._io()
        self.receiving_calls.append(
            ReceivingCall(sku, Decimal(qty_delta), Decimal(new_cost), reference, datetime.utcnow())
        )
        if sku in self.fail_skus:
            raise CatalogSkuNotFound(sku)
        product = self._products.get(sku)
        if product is None:
            raise CatalogSkuNotFound(sku)
        updated = product.model_copy(update={
            "on_hand": product.on_hand + Decimal(qty_delta),
            "cost": Decimal(new_cost),
        })
        self._products[sku] = updated
        return updated

    async def create_product(self, product):
        await self._io()
        if product.sku in self._products:
            return self._products[product.sku]
        self._products[product.sku] = product
        return product

    @asynccontextmanager
    async def transaction(self):
        """Serialize batches and restore the snapshot on failure."""
        async with self._tx_lock:
            snapshot = dict(self._products)
            try:
                yield self
            except BaseException:
                self._products = snapshot
                raise
