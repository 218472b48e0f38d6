"""SKU Matcher - Vendor bill line matching against the internal catalog.

This package provides line matching based on:
- Learned vendor SKU aliases (fast path)
- Exact catalog SKU / barcode / vendor reference lookup
- Fuzzy description similarity against product names
- Earlier manual matches from the same vendor (when a history source is given)

Key Features:
- Deterministic normalization of raw OCR line fields
- Per-vendor alias table with priorities and usage statistics
- Confidence bands shared by every caller (HIGH >= 0.95, MEDIUM >= 0.70)

Usage:
    from sku_matcher import SkuMatcher, SQLiteAliasStore, normalize_line

    matcher = SkuMatcher(SQLiteAliasStore(db_path))
    line = normalize_line("abc-123", "Blue widget", "2", "each")
    suggestions = await matcher.suggest(line, vendor_id="V-1", catalog=catalog)

    for candidate in suggestions.candidates:
        print(f"{candidate.internal_sku}: {candidate.confidence} ({candidate.reason.value})")
"""

from sku_matcher.models import (
    HIGH_CONFIDENCE,
    MEDIUM_CONFIDENCE,
    ConfidenceBand,
    MatchCandidate,
    MatchReason,
    MatchSuggestions,
    NormalizedLine,
    UnitConversion,
    VendorSkuAlias,
)
from sku_matcher.normalize import (
    normalize_description,
    normalize_line,
    normalize_sku,
    normalize_unit,
    parse_money,
    parse_quantity,
)
from sku_matcher.units import UnitConverter
from sku_matcher.alias_store import AliasStore, InMemoryAliasStore, SQLiteAliasStore
from sku_matcher.matcher import MatchHistory, SkuMatcher

__all__ = [
    # Models
    "HIGH_CONFIDENCE",
    "MEDIUM_CONFIDENCE",
    "ConfidenceBand",
    "MatchCandidate",
    "MatchReason",
    "MatchSuggestions",
    "NormalizedLine",
    "UnitConversion",
    "VendorSkuAlias",
    # Normalization
    "normalize_description",
    "normalize_line",
    "normalize_sku",
    "normalize_unit",
    "parse_money",
    "parse_quantity",
    "UnitConverter",
    # Alias store
    "AliasStore",
    "InMemoryAliasStore",
    "SQLiteAliasStore",
    # Matcher
    "MatchHistory",
    "SkuMatcher",
]
