"""Abstract Catalog Interface.

This module defines the interface the reconciliation engine consumes from the
product/inventory catalog. It is intentionally storage-agnostic.

The engine depends on exactly three operations:
1. search_by_text: fuzzy candidate retrieval
2. search_by_sku_or_barcode: exact lookup by SKU, barcode or vendor reference
3. apply_receiving: quantity delta plus new unit cost for one SKU

Posting additionally needs all receipts of a bill to be applied together or
not at all; transaction() provides that. The default implementation
compensates already-applied receipts when the block fails. Implementations
with a native transaction override it.
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator, Awaitable, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from core.errors import CollaboratorError
from core.observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CatalogSkuNotFound(Exception):
    """The catalog has no product for a SKU."""
    def __init__(self, sku: str):
        super().__init__(f"SKU {sku} not found in catalog")
        self.sku = sku


class CatalogProduct(BaseModel):
    """Normalized product record returned by the catalog."""
    sku: str = Field(..., description="Internal SKU")
    name: str = Field(..., description="Display name")
    barcodes: List[str] = Field(default_factory=list, description="UPC/EAN codes")
    vendor_refs: List[str] = Field(default_factory=list, description="Vendor catalog references / MPNs")
    cost: Decimal = Field(default=Decimal("0"), description="Current unit cost")
    on_hand: Decimal = Field(default=Decimal("0"), description="Quantity on hand")
    unit: str = Field(default="EA", description="Stock unit")

    class Config:
        frozen = True


class CatalogService(ABC):
    """Read/write catalog collaborator."""

    @abstractmethod
    async def search_by_text(self, query: str, limit: int = 10) -> List[CatalogProduct]:
        """Candidate products whose name resembles the query."""
        pass

    @abstractmethod
    async def search_by_sku_or_barcode(self, code: str) -> Optional[CatalogProduct]:
        """Exact lookup by SKU, barcode or vendor reference."""
        pass

    @abstractmethod
    async def apply_receiving(
        self,
        sku: str,
        qty_delta: Decimal,
        new_cost: Decimal,
        reference: Optional[str] = None,
    ) -> CatalogProduct:
        """Add qty_delta to on-hand and set the unit cost.

        Raises:
            CatalogSkuNotFound: If the SKU does not exist
        """
        pass

    async def create_product(self, product: CatalogProduct) -> CatalogProduct:
        """Create a product. Optional capability."""
        raise NotImplementedError(f"{type(self).__name__} does not support product creation")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["CatalogService"]:
        """All-or-nothing scope for a batch of receipts.

        Yields a session exposing the same operations. If the block raises,
        every receipt applied through the session is reversed in reverse
        order, restoring the previous cost.
        """
        session = CompensatingSession(self)
        try:
            yield session
        except BaseException:
            await session.compensate()
            raise


class CompensatingSession(CatalogService):
    """Wraps a catalog and records receipts so they can be undone."""

    def __init__(self, catalog: CatalogService):
        self._catalog = catalog
        self._applied: List[Tuple[str, Decimal, Decimal, Optional[str]]] = []

    async def search_by_text(self, query, limit=10):
        return await self._catalog.search_by_text(query, limit)

    async def search_by_sku_or_barcode(self, code):
        return await self._catalog.search_by_sku_or_barcode(code)

    async def apply_receiving(self, sku, qty_delta, new_cost, reference=None):
        before = await self._catalog.search_by_sku_or_barcode(sku)
        if before is None:
            raise CatalogSkuNotFound(sku)
        result = await self._catalog.apply_receiving(sku, qty_delta, new_cost, reference)
        self._applied.append((sku, qty_delta, before.cost, reference))
        return result

    async def compensate(self) -> None:
        for sku, qty_delta, previous_cost, reference in reversed(self._applied):
            try:
                await self._catalog.apply_receiving(sku, -qty_delta, previous_cost, f"reversal:{reference}")
            except Exception as e:
                logger.error(
                    f"Compensation failed for {sku}: {e}",
                    extra_fields={"sku": sku, "qty_delta": str(qty_delta)},
                )
                raise
        self._applied.clear()


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await a catalog call with a timeout.

    Timeouts and connection failures become a retryable CollaboratorError.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise CollaboratorError(f"Catalog {operation} timed out after {timeout}s") from e
    except (ConnectionError, OSError) as e:
        raise CollaboratorError(f"Catalog {operation} unavailable: {e}") from e
