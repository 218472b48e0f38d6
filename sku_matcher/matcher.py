"""SKU Matching Algorithm.

This module implements the line matching algorithm that:
1. Checks the alias store for a learned vendor SKU mapping (fast path)
2. Looks the vendor SKU up in the catalog by SKU, barcode or vendor reference
3. Falls back to fuzzy description matching against catalog product names
4. Proposes the SKU earlier bills from the same vendor were manually matched to

All tiers are collected so operators can see alternatives, then ranked:
alias (1.0) >= exact (0.95) >= fuzzy (< 0.90), with history at 0.75.
The ordering is fully deterministic for equal confidences.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from catalog.base import CatalogService, bounded
from core.errors import CollaboratorError
from core.observability.logging import get_logger
from core.observability.metrics import get_metrics
from sku_matcher.alias_store import AliasStore
from sku_matcher.models import (
    ALIAS_CONFIDENCE,
    AMBIGUOUS_ALIAS_CONFIDENCE,
    EXACT_CONFIDENCE,
    FUZZY_SCALE,
    HISTORY_CONFIDENCE,
    SECONDARY_ALIAS_CONFIDENCE,
    MatchCandidate,
    MatchReason,
    MatchSuggestions,
    NormalizedLine,
)
from sku_matcher.normalize import text_similarity

logger = get_logger(__name__)


class MatchHistory(ABC):
    """Past manual matches, per vendor and normalized vendor SKU."""

    @abstractmethod
    def confirmed_matches(
        self,
        vendor_id: str,
        vendor_sku_norm: str,
        tenant_id: str = "default",
        limit: int = 3,
    ) -> List[Tuple[str, datetime]]:
        """(internal SKU, last matched at) pairs, most recent first."""
        pass


def candidate_sort_key(candidate: MatchCandidate):
    """Confidence, then alias priority, then recency, then internal SKU."""
    return (
        -candidate.confidence,
        -candidate.priority,
        candidate.last_seen_at is None,
        -(candidate.last_seen_at.timestamp() if candidate.last_seen_at else 0.0),
        candidate.internal_sku,
    )


def fuzzy_confidence(similarity: float) -> float:
    """Scale a [0, 1] similarity into the fuzzy confidence range [0, 0.90)."""
    similarity = min(1.0, max(0.0, similarity))
    return round(similarity * FUZZY_SCALE, 4)


class SkuMatcher:
    """Suggests internal SKUs for normalized bill lines.

    Example:
        matcher = SkuMatcher(alias_store)
        suggestions = await matcher.suggest(line, vendor_id="V-1", catalog=catalog)

        if suggestions.best and suggestions.best.reason == MatchReason.ALIAS:
            print(f"Learned match: {suggestions.best.internal_sku}")
    """

    def __init__(
        self,
        alias_store: AliasStore,
        history: Optional[MatchHistory] = None,
        catalog_timeout: float = 5.0,
        default_limit: int = 5,
        min_fuzzy_similarity: float = 0.30,
    ):
        """Initialize the matcher.

        Args:
            alias_store: Source of learned vendor SKU mappings
            history: Source of earlier manual matches (optional)
            catalog_timeout: Bound on each catalog call, in seconds
            default_limit: Candidates returned when no limit is given
            min_fuzzy_similarity: Similarity below which fuzzy hits are dropped
        """
        self.alias_store = alias_store
        self.history = history
        self.catalog_timeout = catalog_timeout
        self.default_limit = default_limit
        self.min_fuzzy_similarity = min_fuzzy_similarity

    async def suggest(
        self,
        line: NormalizedLine,
        vendor_id: str,
        catalog: CatalogService,
        limit: Optional[int] = None,
        tenant_id: str = "default",
    ) -> MatchSuggestions:
        """Rank match candidates for a line, highest confidence first.

        Read-only. A catalog failure degrades to an empty candidate list
        with a warning instead of raising.
        """
        start_time = time.time()
        limit = limit or self.default_limit
        warnings: List[str] = []

        try:
            candidates = await self._alias_candidates(line, vendor_id, catalog, tenant_id, warnings)
            candidates += await self._exact_candidates(line, catalog)
            candidates += await self._fuzzy_candidates(line, catalog, limit)
            candidates += await self._history_candidates(line, vendor_id, catalog, tenant_id)
        except CollaboratorError as e:
            logger.warning(
                f"Suggestions degraded: {e.message}",
                extra_fields={"vendor_sku": line.vendor_sku},
            )
            elapsed = int((time.time() - start_time) * 1000)
            get_metrics().record_suggestion(degraded=True, duration_ms=elapsed)
            return MatchSuggestions(
                candidates=[],
                warnings=warnings + [f"Catalog unavailable, no suggestions: {e.message}"],
                degraded=True,
                resolution_time_ms=elapsed,
            )

        best: Dict[str, MatchCandidate] = {}
        for candidate in sorted(candidates, key=candidate_sort_key):
            best.setdefault(candidate.internal_sku, candidate)
        ranked = sorted(best.values(), key=candidate_sort_key)[:limit]

        elapsed = int((time.time() - start_time) * 1000)
        get_metrics().record_suggestion(degraded=False, duration_ms=elapsed)
        return MatchSuggestions(candidates=ranked, warnings=warnings, resolution_time_ms=elapsed)

    async def _alias_candidates(
        self,
        line: NormalizedLine,
        vendor_id: str,
        catalog: CatalogService,
        tenant_id: str,
        warnings: List[str],
    ) -> List[MatchCandidate]:
        if not line.vendor_sku:
            return []

        aliases = self.alias_store.lookup(vendor_id, line.vendor_sku, tenant_id=tenant_id)
        live = []
        for alias in aliases:
            product = await bounded(
                catalog.search_by_sku_or_barcode(alias.internal_sku),
                self.catalog_timeout,
                "search_by_sku_or_barcode",
            )
            if product is None or product.sku != alias.internal_sku:
                warnings.append(f"Alias {alias.id} points at {alias.internal_sku}, which is not in the catalog")
                continue
            live.append((alias, product))

        if not live:
            return []

        top_priority = live[0][0].priority
        ambiguous = sum(1 for alias, _ in live if alias.priority == top_priority) > 1
        if ambiguous:
            warnings.append(
                f"{line.vendor_sku} has several aliases at priority {top_priority}; review required"
            )

        candidates = []
        for index, (alias, product) in enumerate(live):
            if index == 0:
                confidence = AMBIGUOUS_ALIAS_CONFIDENCE if ambiguous else ALIAS_CONFIDENCE
                explanation = f"Alias for vendor SKU '{line.vendor_sku}' (priority {alias.priority})"
            else:
                confidence = SECONDARY_ALIAS_CONFIDENCE
                explanation = f"Lower-ranked alias for '{line.vendor_sku}' (priority {alias.priority})"
            candidates.append(MatchCandidate(
                internal_sku=alias.internal_sku,
                display_name=product.name,
                confidence=confidence,
                reason=MatchReason.ALIAS,
                explanation=explanation,
                alias_id=alias.id,
                priority=alias.priority,
                last_seen_at=alias.last_seen_at,
                cost=product.cost,
                on_hand=product.on_hand,
            ))
        return candidates

    async def _exact_candidates(self, line: NormalizedLine, catalog: CatalogService) -> List[MatchCandidate]:
        if not line.vendor_sku:
            return []

        product = await bounded(
            catalog.search_by_sku_or_barcode(line.vendor_sku),
            self.catalog_timeout,
            "search_by_sku_or_barcode",
        )
        if product is None:
            return []
        return [MatchCandidate(
            internal_sku=product.sku,
            display_name=product.name,
            confidence=EXACT_CONFIDENCE,
            reason=MatchReason.EXACT,
            explanation=f"Vendor SKU '{line.vendor_sku}' matches catalog SKU/barcode",
            cost=product.cost,
            on_hand=product.on_hand,
        )]

    async def _fuzzy_candidates(
        self,
        line: NormalizedLine,
        catalog: CatalogService,
        limit: int,
    ) -> List[MatchCandidate]:
        if not line.description:
            return []

        products = await bounded(
            catalog.search_by_text(line.description, limit * 2),
            self.catalog_timeout,
            "search_by_text",
        )
        candidates = []
        for product in products:
            similarity = text_similarity(line.description, product.name)
            if similarity < self.min_fuzzy_similarity:
                continue
            candidates.append(MatchCandidate(
                internal_sku=product.sku,
                display_name=product.name,
                confidence=fuzzy_confidence(similarity),
                reason=MatchReason.FUZZY,
                explanation=f"Description similar to '{product.name}' ({similarity:.0%})",
                cost=product.cost,
                on_hand=product.on_hand,
            ))
        return candidates

    async def _history_candidates(
        self,
        line: NormalizedLine,
        vendor_id: str,
        catalog: CatalogService,
        tenant_id: str,
    ) -> List[MatchCandidate]:
        if self.history is None or not line.vendor_sku:
            return []

        candidates = []
        for internal_sku, matched_at in self.history.confirmed_matches(vendor_id, line.vendor_sku, tenant_id=tenant_id):
            product = await bounded(
                catalog.search_by_sku_or_barcode(internal_sku),
                self.catalog_timeout,
                "search_by_sku_or_barcode",
            )
            if product is None or product.sku != internal_sku:
                continue
            candidates.append(MatchCandidate(
                internal_sku=internal_sku,
                display_name=product.name,
                confidence=HISTORY_CONFIDENCE,
                reason=MatchReason.HISTORY,
                explanation=f"Matched manually on an earlier bill from this vendor ({matched_at:%Y-%m-%d})",
                last_seen_at=matched_at,
                cost=product.cost,
                on_hand=product.on_hand,
            ))
        return candidates

    def explain(self, line: NormalizedLine, suggestions: MatchSuggestions) -> str:
        """Generate a human-readable explanation of the suggestions.

        Args:
            line: The line that was matched
            suggestions: The suggest() result

        Returns:
            Formatted explanation string
        """
        lines = ["=" * 60, "SKU Match Explanation", "=" * 60]
        lines.append(f"Vendor SKU: '{line.vendor_sku}'")
        lines.append(f"Description: '{line.description}'")
        lines.append(f"Quantity: {line.quantity} {line.unit}")
        if line.flags:
            lines.append(f"Normalization flags: {', '.join(line.flags)}")
        lines.append("")

        if suggestions.degraded:
            lines.append("DEGRADED: catalog unavailable")
        if not suggestions.candidates:
            lines.append("No match: create a new product or match manually")

        for i, c in enumerate(suggestions.candidates):
            lines.append(f"  {i+1}. {c.internal_sku} {c.display_name}")
            lines.append(f"     {c.reason.value} {c.confidence:.2f} [{c.band.value}]")
            lines.append(f"     {c.explanation}")

        for warning in suggestions.warnings:
            lines.append(f"  ! {warning}")

        lines.append("")
        lines.append(f"Resolved in {suggestions.resolution_time_ms}ms")
        lines.append("=" * 60)
        return "\n".join(lines)
