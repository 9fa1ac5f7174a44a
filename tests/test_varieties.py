import pytest

from nurserybook.model.varieties import (
    DEFAULT_POOL, VarietyDescriptor, VarietyPool,
)


def _ids(varieties):
    return [v.id for v in varieties]


class TestAssign:
    def test_six_varieties_three_centers(self) -> None:
        pool = DEFAULT_POOL
        assert pool.assign(0, 3) == pool.varieties[0:2]
        assert pool.assign(1, 3) == pool.varieties[2:4]
        assert pool.assign(2, 3) == pool.varieties[4:6]

    def test_cycles_past_cycle_length(self) -> None:
        pool = DEFAULT_POOL
        assert pool.cycle_length == 3
        assert pool.assign(3, 4) == pool.assign(0, 4)
        assert pool.assign(4, 5) == pool.varieties[2:4]
        assert pool.assign(7, 8) == pool.varieties[2:4]

    def test_total_centers_does_not_move_slice(self) -> None:
        pool = DEFAULT_POOL
        assert pool.assign(1, 2) == pool.assign(1, 40)

    def test_size_and_determinism(self) -> None:
        pool = DEFAULT_POOL
        for total in range(1, 9):
            for index in range(0, 12):
                first = pool.assign(index, total)
                assert len(first) == min(2, len(pool))
                assert pool.assign(index, total) == first

    def test_odd_pool_last_pair_is_short(self) -> None:
        pool = VarietyPool(DEFAULT_POOL.varieties[:5])
        assert pool.cycle_length == 3
        assert _ids(pool.assign(2, 3)) == ["gt-1"]
        assert _ids(pool.assign(3, 4)) == ["rrii-105", "rrii-430"]

    def test_pool_smaller_than_pair(self) -> None:
        pool = VarietyPool([VarietyDescriptor(id="only", name="Only")])
        for index in range(4):
            assert _ids(pool.assign(index, 4)) == ["only"]

    def test_empty_pool(self) -> None:
        assert VarietyPool([]).assign(0, 1) == ()

    def test_rejects_bad_arguments(self) -> None:
        with pytest.raises(ValueError):
            DEFAULT_POOL.assign(-1, 3)
        with pytest.raises(ValueError):
            DEFAULT_POOL.assign(0, 0)


class TestLookup:
    def test_known_by_id_or_name_any_case(self) -> None:
        pool = DEFAULT_POOL
        assert pool.is_known("RRII 105")
        assert pool.is_known("rrii 105")
        assert pool.is_known("RRII-105")
        assert pool.is_known("  gt-1 ")
        assert not pool.is_known("RRII 999")
        assert not pool.is_known("")
        assert not pool.is_known(None)

    def test_available_for_center(self) -> None:
        pool = DEFAULT_POOL
        assert pool.is_available_for_center("RRII 414", 1, 3)
        assert pool.is_available_for_center("rrii-203", 1, 3)
        assert not pool.is_available_for_center("RRII 105", 1, 3)

    def test_canonical_collapses_name_and_id(self) -> None:
        pool = DEFAULT_POOL
        assert pool.canonical("RRII 105") == pool.canonical("rrii-105")
        assert pool.canonical(" Local Clone ") == "local clone"

    def test_catalog_is_immutable(self) -> None:
        v = DEFAULT_POOL.varieties[0]
        with pytest.raises(AttributeError):
            v.name = "changed"
        assert isinstance(DEFAULT_POOL.varieties, tuple)
