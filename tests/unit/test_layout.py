"""
Tests for the 15-slot formation layout.

Covers:
- Heap ordering and levels
- Parent/children navigation
- Breadth-first subtree walks
- Relative keys used when a subtree is lifted into a new formation
"""

import pytest

from triangle.layout import (
    APEX_KEY,
    FORMATION_SIZE,
    POSITION_KEYS,
    children_of,
    index_of,
    is_ancestor,
    level_of,
    parent_of,
    relative_key,
    subtree_keys,
)


class TestShape:
    """Fixed shape of a formation."""

    def test_fifteen_positions(self):
        assert FORMATION_SIZE == 15
        assert len(set(POSITION_KEYS)) == 15
        assert POSITION_KEYS[0] == APEX_KEY

    def test_levels(self):
        assert level_of("A") == 0
        assert [level_of(k) for k in ("B", "C")] == [1, 1]
        assert [level_of(k) for k in ("B1", "B2", "C1", "C2")] == [2, 2, 2, 2]
        assert all(level_of(k) == 3 for k in POSITION_KEYS[7:])

    def test_level_counts(self):
        counts = [sum(1 for k in POSITION_KEYS if level_of(k) == lvl) for lvl in range(4)]
        assert counts == [1, 2, 4, 8]

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            index_of("D")


class TestNavigation:
    """Parent/child links."""

    def test_children(self):
        assert children_of("A") == ["B", "C"]
        assert children_of("B") == ["B1", "B2"]
        assert children_of("C2") == ["C2a", "C2b"]
        assert children_of("B1a") == []

    def test_parent(self):
        assert parent_of("A") is None
        assert parent_of("C") == "A"
        assert parent_of("B2b") == "B2"

    def test_is_ancestor(self):
        assert is_ancestor("A", "C1b")
        assert is_ancestor("B", "B2a")
        assert not is_ancestor("B", "C1")
        assert not is_ancestor("B1", "B1")


class TestSubtree:
    """Breadth-first, leftmost-first ordering."""

    def test_whole_tree_is_heap_order(self):
        assert subtree_keys("A") == POSITION_KEYS

    def test_subtree_of_b(self):
        assert subtree_keys("B") == ["B", "B1", "B2", "B1a", "B1b", "B2a", "B2b"]

    def test_exclude_root(self):
        assert subtree_keys("C1", include_root=False) == ["C1a", "C1b"]

    def test_leaf_subtree(self):
        assert subtree_keys("C2b", include_root=False) == []


class TestRelativeKey:
    """Where members land when a subtree root becomes a new apex."""

    @pytest.mark.parametrize(
        "root,key,expected",
        [
            ("B", "B", "A"),
            ("B", "B1", "B"),
            ("B", "B2", "C"),
            ("B", "B1a", "B1"),
            ("B", "B2b", "C2"),
            ("C", "C", "A"),
            ("C", "C2", "C"),
            ("C", "C1b", "B2"),
        ],
    )
    def test_mapping(self, root, key, expected):
        assert relative_key(root, key) == expected

    def test_levels_shift_up_by_one(self):
        for key in subtree_keys("C"):
            assert level_of(relative_key("C", key)) == level_of(key) - 1

    def test_key_outside_subtree(self):
        with pytest.raises(ValueError):
            relative_key("B", "C1")
        with pytest.raises(ValueError):
            relative_key("B1", "A")
