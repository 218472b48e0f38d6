"""
Alias Store Test

Validates both alias store implementations:
1. Lookup ordering (priority, then recency, then internal SKU)
2. Upsert of the same pair updates; a different target competes
3. Empty fields and contradictory unit conversions are rejected
4. Usage tracking is fire-and-forget
"""

import tempfile
from decimal import Decimal
from pathlib import Path

import pytest


@pytest.fixture(params=["sqlite", "memory"])
def store(request, tmp_path):
    from sku_matcher.alias_store import InMemoryAliasStore, SQLiteAliasStore
    if request.param == "sqlite":
        return SQLiteAliasStore(tmp_path / "aliases.db")
    return InMemoryAliasStore()


class TestAliasUpsert:
    """Test alias creation and update."""

    def test_create_normalizes_vendor_sku(self, store):
        alias = store.upsert("V-1", " abc--123 ", "WIDGET-1", priority=5, created_by="alice")
        assert alias.id is not None
        assert alias.vendor_sku_norm == "ABC-123"
        assert alias.priority == 5
        assert alias.created_by == "alice"

    def test_lookup_empty_is_not_an_error(self, store):
        assert store.lookup("V-1", "NOPE") == []

    def test_same_pair_same_target_updates(self, store):
        from sku_matcher.models import UnitConversion
        first = store.upsert("V-1", "ABC-123", "WIDGET-1", priority=1)
        conversion = UnitConversion(multiplier=Decimal("12"), from_unit="CASE", to_unit="EA")
        second = store.upsert("V-1", "abc-123", "WIDGET-1", priority=4, unit_conversion=conversion)

        assert second.id == first.id
        aliases = store.lookup("V-1", "ABC-123")
        assert len(aliases) == 1
        assert aliases[0].priority == 4
        assert aliases[0].unit_conversion.multiplier == Decimal("12")

    def test_same_target_without_priority_keeps_priority(self, store):
        store.upsert("V-1", "ABC-123", "WIDGET-1", priority=3)
        again = store.upsert("V-1", "ABC-123", "WIDGET-1")
        assert again.priority == 3

    def test_different_target_competes_above(self, store):
        store.upsert("V-1", "ABC-123", "WIDGET-1", priority=5)
        competitor = store.upsert("V-1", "ABC-123", "WIDGET-2")

        assert competitor.priority == 6
        aliases = store.lookup("V-1", "ABC-123")
        assert [a.internal_sku for a in aliases] == ["WIDGET-2", "WIDGET-1"]

    def test_competing_alias_never_overwrites(self, store):
        store.upsert("V-1", "ABC-123", "WIDGET-1", priority=5)
        store.upsert("V-1", "ABC-123", "WIDGET-2", priority=1)
        skus = {a.internal_sku for a in store.lookup("V-1", "ABC-123")}
        assert skus == {"WIDGET-1", "WIDGET-2"}

    def test_scoped_by_vendor_and_tenant(self, store):
        store.upsert("V-1", "ABC-123", "WIDGET-1")
        store.upsert("V-2", "ABC-123", "WIDGET-9")
        store.upsert("V-1", "ABC-123", "OTHER-1", tenant_id="t2")

        assert [a.internal_sku for a in store.lookup("V-1", "ABC-123")] == ["WIDGET-1"]
        assert [a.internal_sku for a in store.lookup("V-2", "ABC-123")] == ["WIDGET-9"]
        assert [a.internal_sku for a in store.lookup("V-1", "ABC-123", tenant_id="t2")] == ["OTHER-1"]

    @pytest.mark.parametrize("vendor_id,vendor_sku,internal_sku", [
        ("", "ABC", "W-1"),
        ("V-1", "", "W-1"),
        ("V-1", "---", "W-1"),
        ("V-1", "ABC", "  "),
    ])
    def test_empty_fields_rejected(self, store, vendor_id, vendor_sku, internal_sku):
        from core.errors import ValidationError
        with pytest.raises(ValidationError):
            store.upsert(vendor_id, vendor_sku, internal_sku)

    def test_conversion_units_normalized(self, store):
        from sku_matcher.models import UnitConversion
        conversion = UnitConversion(multiplier=Decimal("24"), from_unit="cs", to_unit="each")
        alias = store.upsert("V-1", "ABC-123", "WIDGET-1", unit_conversion=conversion)

        stored = store.lookup("V-1", "ABC-123")[0].unit_conversion
        assert alias.unit_conversion.from_unit == "CASE"
        assert stored.from_unit == "CASE"
        assert stored.to_unit == "EA"

    def test_conversion_contradicting_known_factor_rejected(self, store):
        from core.errors import ValidationError
        from sku_matcher.models import UnitConversion
        conversion = UnitConversion(multiplier=Decimal("2"), from_unit="LB", to_unit="KG")
        with pytest.raises(ValidationError):
            store.upsert("V-1", "ABC-123", "WIDGET-1", unit_conversion=conversion)
        assert store.lookup("V-1", "ABC-123") == []


class TestAliasOrdering:
    """Test deterministic tie-breaking."""

    def test_equal_priority_breaks_on_recency_then_sku(self, store):
        a = store.upsert("V-1", "ABC-123", "WIDGET-B", priority=5)
        b = store.upsert("V-1", "ABC-123", "WIDGET-A")
        # Bring WIDGET-B back level with WIDGET-A
        store.upsert("V-1", "ABC-123", "WIDGET-B", priority=b.priority)

        # Neither used: lexicographic
        assert [x.internal_sku for x in store.lookup("V-1", "ABC-123")] == ["WIDGET-A", "WIDGET-B"]

        # Recently used wins
        store.record_usage(a.id)
        assert [x.internal_sku for x in store.lookup("V-1", "ABC-123")] == ["WIDGET-B", "WIDGET-A"]

    def test_list_for_vendor(self, store):
        store.upsert("V-1", "ZZZ", "W-3")
        store.upsert("V-1", "AAA", "W-1")
        store.upsert("V-2", "AAA", "W-2")
        aliases = store.list_for_vendor("V-1")
        assert [a.vendor_sku_norm for a in aliases] == ["AAA", "ZZZ"]


class TestUsageTracking:
    """Test usage recording semantics."""

    def test_usage_increments(self, store):
        alias = store.upsert("V-1", "ABC-123", "WIDGET-1")
        store.record_usage(alias.id)
        store.record_usage(alias.id)
        stored = store.get(alias.id)
        assert stored.usage_count == 2
        assert stored.last_seen_at is not None

    def test_unknown_alias_usage_does_not_raise(self, store):
        store.record_usage(99999)

    def test_usage_failure_is_swallowed(self):
        from sku_matcher.alias_store import InMemoryAliasStore
        store = InMemoryAliasStore()
        alias = store.upsert("V-1", "ABC-123", "WIDGET-1")
        store.fail_usage = True
        store.record_usage(alias.id)
        assert store.get(alias.id).usage_count == 0

    def test_require_unknown_alias(self, store):
        from core.errors import NotFoundError
        with pytest.raises(NotFoundError):
            store.require(12345)


class TestSQLitePersistence:
    """Test SQLite-specific behavior."""

    def test_aliases_survive_new_store_instance(self):
        from sku_matcher.alias_store import SQLiteAliasStore
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "aliases.db"
            SQLiteAliasStore(path).upsert("V-1", "ABC-123", "WIDGET-1", priority=2)

            aliases = SQLiteAliasStore(path).lookup("V-1", "ABC-123")
            assert len(aliases) == 1
            assert aliases[0].internal_sku == "WIDGET-1"
            assert aliases[0].priority == 2

    def test_concurrent_upserts_keep_every_alias(self, tmp_path):
        from concurrent.futures import ThreadPoolExecutor
        from sku_matcher.alias_store import SQLiteAliasStore
        store = SQLiteAliasStore(tmp_path / "aliases.db")

        def write(i):
            return store.upsert("V-1", "ABC-123", f"WIDGET-{i % 4}")

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, range(40)))

        skus = sorted(a.internal_sku for a in store.lookup("V-1", "ABC-123"))
        assert skus == ["WIDGET-0", "WIDGET-1", "WIDGET-2", "WIDGET-3"]
