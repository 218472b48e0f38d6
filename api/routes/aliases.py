"""Alias management endpoints."""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.dependencies import get_service
from sku_matcher.models import UnitConversion, VendorSkuAlias
from vendor_bills.service import ReconciliationService


router = APIRouter()


class AliasRequest(BaseModel):
    """Request to create/update an alias."""
    vendor_id: str = Field(..., description="Vendor identifier")
    vendor_sku: str = Field(..., description="Vendor SKU (normalized on write)")
    internal_sku: str = Field(..., description="Internal catalog SKU")
    actor: str = Field(..., description="Who made the change")
    tenant_id: str = Field("default", description="Tenant scope")
    priority: Optional[int] = Field(None, description="Tie-break priority (higher wins)")
    unit_conversion: Optional[UnitConversion] = None


@router.get("", response_model=List[VendorSkuAlias])
async def list_aliases(
    vendor_id: str = Query(..., description="Vendor identifier"),
    tenant_id: str = "default",
    service: ReconciliationService = Depends(get_service),
) -> List[VendorSkuAlias]:
    """List a vendor's aliases, best first per vendor SKU."""
    return service.list_aliases(vendor_id, tenant_id=tenant_id)


@router.put("", response_model=VendorSkuAlias)
async def upsert_alias(
    request: AliasRequest,
    service: ReconciliationService = Depends(get_service),
) -> VendorSkuAlias:
    """Create or update an alias. A different internal SKU creates a competing alias."""
    return service.upsert_alias(
        request.vendor_id,
        request.vendor_sku,
        request.internal_sku,
        request.actor,
        unit_conversion=request.unit_conversion,
        priority=request.priority,
        tenant_id=request.tenant_id,
    )
