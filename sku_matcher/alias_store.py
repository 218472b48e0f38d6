"""Alias Store abstraction.

The only way the matcher and the bill services read or write learned
vendor SKU mappings. Two implementations are provided: SQLite for the
service and in-memory for tests.
"""

import itertools
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional

from core.errors import NotFoundError, ValidationError
from core.observability.logging import get_logger
from sku_matcher import db
from sku_matcher.models import UnitConversion, VendorSkuAlias
from sku_matcher.normalize import normalize_sku
from sku_matcher.units import UnitConverter

logger = get_logger(__name__)


def sort_aliases(aliases: List[VendorSkuAlias]) -> List[VendorSkuAlias]:
    """Order aliases best first: priority, then recency, then internal SKU."""
    return sorted(
        aliases,
        key=lambda a: (
            -a.priority,
            a.last_seen_at is None,
            -(a.last_seen_at.timestamp() if a.last_seen_at else 0.0),
            a.internal_sku,
        ),
    )


class AliasStore(ABC):
    """Persistent mapping of (vendor, normalized SKU) to internal SKUs."""

    @abstractmethod
    def lookup(
        self,
        vendor_id: str,
        vendor_sku_norm: str,
        tenant_id: str = "default",
    ) -> List[VendorSkuAlias]:
        """Aliases for the pair, highest priority and most recent first.

        Returns an empty list when none exist. Never mutates state.
        """

    @abstractmethod
    def _upsert(
        self,
        tenant_id: str,
        vendor_id: str,
        vendor_sku_norm: str,
        internal_sku: str,
        unit_conversion: Optional[UnitConversion],
        priority: Optional[int],
        created_by: str,
    ) -> VendorSkuAlias:
        pass

    @abstractmethod
    def _record_usage(self, alias_id: int) -> bool:
        pass

    @abstractmethod
    def get(self, alias_id: int) -> Optional[VendorSkuAlias]:
        pass

    @abstractmethod
    def list_for_vendor(self, vendor_id: str, tenant_id: str = "default") -> List[VendorSkuAlias]:
        pass

    def upsert(
        self,
        vendor_id: str,
        vendor_sku: str,
        internal_sku: str,
        unit_conversion: Optional[UnitConversion] = None,
        priority: Optional[int] = None,
        tenant_id: str = "default",
        created_by: str = "system",
    ) -> VendorSkuAlias:
        """Create or update an alias.

        The vendor SKU is normalized before storage. A different internal
        SKU for an existing pair creates a competing alias ranked above the
        existing ones instead of overwriting them.

        Raises:
            ValidationError: If vendor_id, vendor SKU or internal SKU is empty,
                or the unit conversion contradicts a known unit factor
        """
        vendor_id = (vendor_id or "").strip()
        vendor_sku_norm = normalize_sku(vendor_sku)
        internal_sku = (internal_sku or "").strip()

        missing = [
            name for name, value in (
                ("vendor_id", vendor_id),
                ("vendor_sku", vendor_sku_norm),
                ("internal_sku", internal_sku),
            ) if not value
        ]
        if missing:
            raise ValidationError(f"Alias fields must not be empty: {', '.join(missing)}")
        if unit_conversion is not None:
            unit_conversion = UnitConverter().validate(unit_conversion)

        alias = self._upsert(
            tenant_id, vendor_id, vendor_sku_norm, internal_sku,
            unit_conversion, priority, created_by,
        )
        logger.info(
            f"Alias upserted: {vendor_id}/{vendor_sku_norm} -> {internal_sku}",
            extra_fields={"alias_id": alias.id, "priority": alias.priority},
        )
        return alias

    def record_usage(self, alias_id: int) -> None:
        """Increment usage for an automatic resolution.

        Fire-and-forget: failures are logged, never raised.
        """
        try:
            if not self._record_usage(alias_id):
                logger.warning(f"Usage not recorded: alias {alias_id} not found")
        except Exception as e:
            logger.warning(f"Usage not recorded for alias {alias_id}: {e}")

    def require(self, alias_id: int) -> VendorSkuAlias:
        alias = self.get(alias_id)
        if alias is None:
            raise NotFoundError(f"Alias {alias_id} not found")
        return alias


class SQLiteAliasStore(AliasStore):
    """Alias store backed by the vendor_sku_alias table."""

    def __init__(self, db_path: Path = db.DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self._write_lock = Lock()
        db.init_alias_db(self.db_path)

    def lookup(self, vendor_id, vendor_sku_norm, tenant_id="default"):
        if not vendor_id or not vendor_sku_norm:
            return []
        return db.lookup_aliases(tenant_id, vendor_id, vendor_sku_norm, db_path=self.db_path)

    def _upsert(self, tenant_id, vendor_id, vendor_sku_norm, internal_sku,
                unit_conversion, priority, created_by):
        with self._write_lock:
            return db.upsert_alias(
                tenant_id=tenant_id,
                vendor_id=vendor_id,
                vendor_sku_norm=vendor_sku_norm,
                internal_sku=internal_sku,
                unit_conversion=unit_conversion,
                priority=priority,
                created_by=created_by,
                db_path=self.db_path,
            )

    def _record_usage(self, alias_id):
        return db.record_alias_usage(alias_id, db_path=self.db_path)

    def get(self, alias_id):
        return db.get_alias(alias_id, db_path=self.db_path)

    def list_for_vendor(self, vendor_id, tenant_id="default"):
        return db.list_aliases_for_vendor(tenant_id, vendor_id, db_path=self.db_path)


class InMemoryAliasStore(AliasStore):
    """In-memory alias store for testing."""

    def __init__(self):
        self._aliases: Dict[int, VendorSkuAlias] = {}
        self._ids = itertools.count(1)
        self._lock = Lock()
        self.fail_usage = False

    def lookup(self, vendor_id, vendor_sku_norm, tenant_id="default"):
        with self._lock:
            hits = [
                a.model_copy() for a in self._aliases.values()
                if a.tenant_id == tenant_id
                and a.vendor_id == vendor_id
                and a.vendor_sku_norm == vendor_sku_norm
            ]
        return sort_aliases(hits)

    def _upsert(self, tenant_id, vendor_id, vendor_sku_norm, internal_sku,
                unit_conversion, priority, created_by):
        with self._lock:
            pair = [
                a for a in self._aliases.values()
                if a.tenant_id == tenant_id
                and a.vendor_id == vendor_id
                and a.vendor_sku_norm == vendor_sku_norm
            ]
            same = next((a for a in pair if a.internal_sku == internal_sku), None)
            if same is not None:
                if priority is not None:
                    same.priority = priority
                if unit_conversion is not None:
                    same.unit_conversion = unit_conversion
                return same.model_copy()

            competitors = [a.priority for a in pair]
            if competitors:
                floor = max(competitors) + 1
                new_priority = floor if priority is None else max(priority, floor)
            else:
                new_priority = priority or 0

            alias = VendorSkuAlias(
                id=next(self._ids),
                tenant_id=tenant_id,
                vendor_id=vendor_id,
                vendor_sku_norm=vendor_sku_norm,
                internal_sku=internal_sku,
                unit_conversion=unit_conversion,
                priority=new_priority,
                created_by=created_by,
                created_at=datetime.utcnow(),
            )
            self._aliases[alias.id] = alias
            return alias.model_copy()

    def _record_usage(self, alias_id):
        if self.fail_usage:
            raise RuntimeError("usage tracking unavailable")
        with self._lock:
            alias = self._aliases.get(alias_id)
            if alias is None:
                return False
            alias.usage_count += 1
            alias.last_seen_at = datetime.utcnow()
            return True

    def get(self, alias_id):
        with self._lock:
            alias = self._aliases.get(alias_id)
            return alias.model_copy() if alias else None

    def list_for_vendor(self, vendor_id, tenant_id="default"):
        with self._lock:
            hits = [
                a.model_copy() for a in self._aliases.values()
                if a.tenant_id == tenant_id and a.vendor_id == vendor_id
            ]
        return sorted(sort_aliases(hits), key=lambda a: a.vendor_sku_norm)
