"""Vendor bill endpoints.

Ingestion, line matching, alias learning and the bill lifecycle.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, Field

from api.dependencies import get_service
from catalog.base import CatalogProduct
from core.models import AuditEvent
from sku_matcher.models import MatchSuggestions, UnitConversion, VendorSkuAlias
from vendor_bills.models import BillStatus, VendorBill
from vendor_bills.posting import CostPolicy, PostingResult
from vendor_bills.service import ReconciliationService


router = APIRouter()


# =============================================================================
# Request / Response Models
# =============================================================================

class IngestRequest(BaseModel):
    """Request to ingest a parsed document."""
    vendor_id: str = Field(..., description="Vendor the bill came from")
    tenant_id: str = Field("default", description="Tenant scope")
    store_id: Optional[str] = Field(None, description="Store scope")
    actor: str = Field("system", description="Who submitted the document")
    document: Dict[str, Any] = Field(..., description="Parsed document (header, lines, ocr_confidence, template)")


class IngestResponse(BaseModel):
    """Ingestion response."""
    created: bool
    bill: VendorBill


class UpdateMatchRequest(BaseModel):
    """Request to manually match a line."""
    internal_sku: str = Field(..., description="Internal catalog SKU")
    actor: str = Field(..., description="Who made the change")
    qty: Optional[Decimal] = Field(None, description="Corrected quantity")
    unit: Optional[str] = Field(None, description="Corrected unit")
    unit_price: Optional[Decimal] = Field(None, description="Corrected unit price")


class CreateAliasRequest(BaseModel):
    """Request to learn an alias from a line."""
    actor: str
    priority: Optional[int] = None
    unit_conversion: Optional[UnitConversion] = None
    apply_to_vendor: bool = Field(False, description="Also match other unresolved lines with the same vendor SKU")


class CreateProductRequest(BaseModel):
    """Request to create a catalog product from a line."""
    actor: str
    product: CatalogProduct


class CreateProductResponse(BaseModel):
    """Product creation response."""
    bill: VendorBill
    product: CatalogProduct
    alias: Optional[VendorSkuAlias] = None


class ActorRequest(BaseModel):
    """Request carrying only the acting user."""
    actor: str


class PostRequest(BaseModel):
    """Request to post a bill."""
    actor: str
    cost_policy: Optional[CostPolicy] = None


class ReasonRequest(BaseModel):
    """Request for reopen / void."""
    actor: str
    reason: Optional[str] = None


class AcceptResponse(BaseModel):
    """Bulk accept response."""
    changed: int


def suggestions_payload(suggestions: MatchSuggestions) -> Dict[str, Any]:
    """Suggestions with each candidate's confidence band."""
    return {
        "candidates": [
            {**c.model_dump(mode="json"), "band": c.band.value}
            for c in suggestions.candidates
        ],
        "warnings": suggestions.warnings,
        "degraded": suggestions.degraded,
        "band": suggestions.band.value if suggestions.band else None,
        "resolution_time_ms": suggestions.resolution_time_ms,
    }


# =============================================================================
# Bills
# =============================================================================

@router.post("", response_model=IngestResponse, status_code=201)
async def ingest_bill(
    request: IngestRequest,
    response: Response,
    service: ReconciliationService = Depends(get_service),
) -> IngestResponse:
    """Ingest a parsed document. A repeat returns the existing bill with 200."""
    result = await service.ingest(
        request.document,
        request.vendor_id,
        tenant_id=request.tenant_id,
        store_id=request.store_id,
        actor=request.actor,
    )
    if not result.created:
        response.status_code = 200
    return IngestResponse(created=result.created, bill=result.bill)


@router.get("", response_model=List[VendorBill])
async def list_bills(
    tenant_id: str = "default",
    status: Optional[BillStatus] = None,
    vendor_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    service: ReconciliationService = Depends(get_service),
) -> List[VendorBill]:
    """List bills, newest first."""
    return service.list_bills(tenant_id=tenant_id, status=status, vendor_id=vendor_id, limit=limit)


@router.get("/{bill_id}", response_model=VendorBill)
async def get_bill(bill_id: str, service: ReconciliationService = Depends(get_service)) -> VendorBill:
    """Get a bill with its lines."""
    return service.get_bill(bill_id)


@router.get("/{bill_id}/history", response_model=List[AuditEvent])
async def bill_history(bill_id: str, service: ReconciliationService = Depends(get_service)) -> List[AuditEvent]:
    """Audit trail for a bill, oldest first."""
    return service.bill_history(bill_id)


# =============================================================================
# Lines
# =============================================================================

@router.get("/{bill_id}/lines/{line_id}/suggestions")
async def line_suggestions(
    bill_id: str,
    line_id: str,
    limit: Optional[int] = Query(None, ge=1, le=50),
    service: ReconciliationService = Depends(get_service),
) -> Dict[str, Any]:
    """Ranked match candidates for a line."""
    suggestions = await service.suggest_for_line(bill_id, line_id, limit=limit)
    return suggestions_payload(suggestions)


@router.put("/{bill_id}/lines/{line_id}/match", response_model=VendorBill)
async def update_line_match(
    bill_id: str,
    line_id: str,
    request: UpdateMatchRequest,
    service: ReconciliationService = Depends(get_service),
) -> VendorBill:
    """Manually match a line."""
    return await service.update_match(
        bill_id,
        line_id,
        request.internal_sku,
        request.actor,
        qty=request.qty,
        unit=request.unit,
        unit_price=request.unit_price,
    )


@router.post("/{bill_id}/lines/{line_id}/alias", response_model=VendorSkuAlias, status_code=201)
async def create_alias_from_line(
    bill_id: str,
    line_id: str,
    request: CreateAliasRequest,
    service: ReconciliationService = Depends(get_service),
) -> VendorSkuAlias:
    """Learn an alias from a confirmed line match."""
    return await service.create_alias_from_line(
        bill_id,
        line_id,
        request.actor,
        priority=request.priority,
        unit_conversion=request.unit_conversion,
        apply_to_vendor=request.apply_to_vendor,
    )


@router.post("/{bill_id}/lines/{line_id}/product", response_model=CreateProductResponse, status_code=201)
async def create_product_from_line(
    bill_id: str,
    line_id: str,
    request: CreateProductRequest,
    service: ReconciliationService = Depends(get_service),
) -> CreateProductResponse:
    """Create a catalog product for a line and match the line to it."""
    bill, product, alias = await service.create_product_from_line(
        bill_id, line_id, request.actor, request.product,
    )
    return CreateProductResponse(bill=bill, product=product, alias=alias)


# =============================================================================
# Lifecycle
# =============================================================================

@router.post("/{bill_id}/accept-high-confidence", response_model=AcceptResponse)
async def accept_high_confidence(
    bill_id: str,
    request: ActorRequest,
    service: ReconciliationService = Depends(get_service),
) -> AcceptResponse:
    """Commit every HIGH-confidence suggestion."""
    changed = await service.accept_all_high_confidence(bill_id, request.actor)
    return AcceptResponse(changed=changed)


@router.post("/{bill_id}/post", response_model=PostingResult)
async def post_bill(
    bill_id: str,
    request: PostRequest,
    service: ReconciliationService = Depends(get_service),
) -> PostingResult:
    """Post a fully matched bill to the catalog."""
    return await service.post(bill_id, request.actor, cost_policy=request.cost_policy)


@router.post("/{bill_id}/reopen", response_model=VendorBill)
async def reopen_bill(
    bill_id: str,
    request: ReasonRequest,
    service: ReconciliationService = Depends(get_service),
) -> VendorBill:
    """Move a POSTED bill back to REVIEW."""
    return await service.reopen(bill_id, request.actor, reason=request.reason)


@router.post("/{bill_id}/void", response_model=VendorBill)
async def void_bill(
    bill_id: str,
    request: ReasonRequest,
    service: ReconciliationService = Depends(get_service),
) -> VendorBill:
    """Void a DRAFT or REVIEW bill."""
    return await service.void(bill_id, request.actor, reason=request.reason)
