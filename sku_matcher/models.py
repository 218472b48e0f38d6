"""SKU Matcher Data Models.

This module defines the Pydantic models for line matching:
- ConfidenceBand: The single definition of HIGH/MEDIUM/LOW thresholds
- UnitConversion / VendorSkuAlias: Learned vendor SKU mappings
- NormalizedLine: Canonical form of a raw bill line
- MatchCandidate / MatchSuggestions: Ranked suggestions for a line
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ConfidenceBand(str, Enum):
    """Confidence bands used everywhere a threshold matters."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @classmethod
    def for_score(cls, confidence: float) -> "ConfidenceBand":
        if confidence >= HIGH_CONFIDENCE:
            return cls.HIGH
        if confidence >= MEDIUM_CONFIDENCE:
            return cls.MEDIUM
        return cls.LOW


HIGH_CONFIDENCE = 0.95
MEDIUM_CONFIDENCE = 0.70


class MatchReason(str, Enum):
    """Where a match came from."""
    ALIAS = "alias"
    EXACT = "exact"
    FUZZY = "fuzzy"
    HISTORY = "history"
    MANUAL = "manual"


# Tier confidences. Fuzzy scores are scaled into [0, FUZZY_SCALE], always below 0.90.
ALIAS_CONFIDENCE = 1.0
AMBIGUOUS_ALIAS_CONFIDENCE = 0.90
SECONDARY_ALIAS_CONFIDENCE = 0.85
EXACT_CONFIDENCE = 0.95
HISTORY_CONFIDENCE = 0.75
FUZZY_SCALE = 0.89


class UnitConversion(BaseModel):
    """Unit conversion attached to an alias.

    A vendor selling "1 CASE" that is stocked as 12 EA is recorded as
    multiplier=12, from_unit=CASE, to_unit=EA.
    """
    multiplier: Decimal = Field(..., gt=0, description="Quantity multiplier from vendor unit to stock unit")
    from_unit: str = Field(..., description="Vendor unit")
    to_unit: str = Field(..., description="Stock unit")


class VendorSkuAlias(BaseModel):
    """Mapping from a vendor's normalized SKU to an internal catalog SKU.

    Attributes:
        id: Database row ID
        tenant_id: Tenant scope
        vendor_id: Vendor this alias belongs to
        vendor_sku_norm: Normalized vendor SKU (used for lookup)
        internal_sku: Internal catalog SKU
        unit_conversion: Optional conversion applied when the alias resolves a line
        priority: Higher wins when several aliases exist for the same pair
        usage_count: Number of automatic resolutions
        last_seen_at: Last time the alias resolved a line
        created_by: Who created this alias
        created_at: When this alias was created
    """
    id: Optional[int] = None
    tenant_id: str = Field(default="default", description="Tenant scope")
    vendor_id: str = Field(..., description="Vendor identifier")
    vendor_sku_norm: str = Field(..., description="Normalized vendor SKU")
    internal_sku: str = Field(..., description="Internal catalog SKU")
    unit_conversion: Optional[UnitConversion] = None
    priority: int = Field(default=0, description="Tie-break priority (higher wins)")
    usage_count: int = Field(default=0)
    last_seen_at: Optional[datetime] = None
    created_by: str = Field(default="system", description="Who created this alias")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class NormalizedLine(BaseModel):
    """Canonical, comparable form of one raw bill line."""
    vendor_sku: str = Field(default="", description="Normalized vendor SKU")
    description: str = Field(default="", description="Normalized description")
    quantity: Decimal = Field(default=Decimal("0"))
    unit: str = Field(default="EA")
    flags: List[str] = Field(default_factory=list, description="Normalization failures")

    class Config:
        frozen = True


class MatchCandidate(BaseModel):
    """A ranked suggestion for a bill line. Never persisted."""
    internal_sku: str = Field(..., description="Internal catalog SKU")
    display_name: str = Field(default="", description="Catalog product name")
    confidence: float = Field(..., ge=0.0, le=1.0)
    reason: MatchReason
    explanation: str = Field(default="", description="Human-readable reason")

    # Alias context (tie-break inputs)
    alias_id: Optional[int] = None
    priority: int = 0
    last_seen_at: Optional[datetime] = None

    # Catalog context
    cost: Optional[Decimal] = None
    on_hand: Optional[Decimal] = None

    @property
    def band(self) -> ConfidenceBand:
        return ConfidenceBand.for_score(self.confidence)

    class Config:
        json_encoders = {
            Decimal: lambda v: float(v)
        }


class MatchSuggestions(BaseModel):
    """Result of a suggest() call.

    degraded is set when a collaborator failed and the candidates may be
    incomplete; warnings explain why.
    """
    candidates: List[MatchCandidate] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    degraded: bool = False
    resolution_time_ms: Optional[int] = None

    @property
    def best(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None

    @property
    def band(self) -> Optional[ConfidenceBand]:
        return self.best.band if self.best else None
