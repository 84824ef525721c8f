"""Unit tests for name_allocator module."""

import pytest

from hvfleet.name_allocator import allocate, highest_suffix, tenant_vm_names


class TestHighestSuffix:
    def test_no_matching_names(self):
        assert highest_suffix("contoso", set()) == 0
        assert highest_suffix("contoso", {"fabrikam_4", "build-agent"}) == 0

    def test_picks_numeric_maximum_not_lexical(self):
        names = {"contoso_2", "contoso_10", "contoso_9"}
        assert highest_suffix("contoso", names) == 10

    def test_ignores_near_misses(self):
        names = {"contoso_3", "contoso_x", "contoso_", "contoso_4_old", "xcontoso_50", "contoso50"}
        assert highest_suffix("contoso", names) == 3

    def test_tenant_name_is_matched_literally(self):
        # A regex metacharacter in the tenant name must not widen the match
        names = {"a.b_7", "axb_9"}
        assert highest_suffix("a.b", names) == 7


class TestAllocate:
    def test_first_allocation_starts_at_one(self):
        assert allocate("contoso", 1, set()) == ["contoso_1"]

    def test_continues_after_highest_existing(self):
        assert allocate("contoso", 1, {"contoso_1", "contoso_5"}) == ["contoso_6"]

    def test_block_is_contiguous_and_disjoint(self):
        existing = {"contoso_1", "contoso_3", "fabrikam_8"}
        names = allocate("contoso", 4, existing)

        assert names == ["contoso_4", "contoso_5", "contoso_6", "contoso_7"]
        assert not set(names) & existing

    def test_gaps_are_never_reused(self):
        # contoso_2 was deleted; suffixes keep increasing
        assert allocate("contoso", 2, {"contoso_1", "contoso_3"}) == ["contoso_4", "contoso_5"]

    def test_other_tenants_do_not_affect_allocation(self):
        assert allocate("fabrikam", 2, {"contoso_40"}) == ["fabrikam_1", "fabrikam_2"]

    def test_accepts_any_iterable(self):
        assert allocate("contoso", 1, ["contoso_2", "contoso_2"]) == ["contoso_3"]

    @pytest.mark.parametrize("count", [0, -1, 1000])
    def test_rejects_out_of_range_count(self, count):
        with pytest.raises(ValueError, match="count"):
            allocate("contoso", count, set())

    def test_rejects_empty_tenant(self):
        with pytest.raises(ValueError, match="tenant_name"):
            allocate("", 1, set())


class TestTenantVmNames:
    def test_sorted_by_suffix(self):
        names = {"contoso_10", "contoso_2", "fabrikam_1", "contoso_1"}
        assert tenant_vm_names("contoso", names) == ["contoso_1", "contoso_2", "contoso_10"]
