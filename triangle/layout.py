# triangle/layout.py
from typing import List, Optional

# Heap order: index i has children 2i+1 and 2i+2.
POSITION_KEYS = [
    "A",
    "B", "C",
    "B1", "B2", "C1", "C2",
    "B1a", "B1b", "B2a", "B2b", "C1a", "C1b", "C2a", "C2b",
]

FORMATION_SIZE = len(POSITION_KEYS)
APEX_KEY = "A"
MAX_LEVEL = 3

_INDEX = {key: i for i, key in enumerate(POSITION_KEYS)}


def index_of(key: str) -> int:
    try:
        return _INDEX[key]
    except KeyError:
        raise ValueError(f"Unknown position key: {key!r}")


def key_at(index: int) -> str:
    return POSITION_KEYS[index]


def level_of(key: str) -> int:
    """Depth of a position: A is 0, the eight leaves are 3."""
    return (index_of(key) + 1).bit_length() - 1


def parent_of(key: str) -> Optional[str]:
    i = index_of(key)
    if i == 0:
        return None
    return POSITION_KEYS[(i - 1) // 2]


def children_of(key: str) -> List[str]:
    i = index_of(key)
    return [POSITION_KEYS[c] for c in (2 * i + 1, 2 * i + 2) if c < FORMATION_SIZE]


def subtree_keys(root: str, include_root: bool = True) -> List[str]:
    """
    Keys of the subtree under `root` in breadth-first order:
    lowest level first, leftmost first within a level.
    """
    ordered = []
    frontier = [root]
    while frontier:
        ordered.extend(frontier)
        frontier = [child for key in frontier for child in children_of(key)]
    return ordered if include_root else ordered[1:]


def relative_key(root: str, key: str) -> str:
    """
    Where `key` lands when the subtree rooted at `root` is lifted so that
    `root` becomes the apex of a fresh formation.
    """
    root_index = index_of(root)
    index = index_of(key)
    depth = level_of(key) - level_of(root)
    if depth < 0:
        raise ValueError(f"{key} is not below {root}")

    # First heap index of the subtree at this depth.
    first = root_index
    for _ in range(depth):
        first = 2 * first + 1
    offset = index - first
    if offset < 0 or offset >= 2 ** depth:
        raise ValueError(f"{key} is not below {root}")
    return POSITION_KEYS[(2 ** depth - 1) + offset]


def is_ancestor(ancestor: str, key: str) -> bool:
    current = parent_of(key)
    while current is not None:
        if current == ancestor:
            return True
        current = parent_of(current)
    return False
