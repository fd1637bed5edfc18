"""Unit tests for decp_ann.tree."""

import numpy as np
import pytest

from decp_ann.errors import ConfigurationError
from decp_ann.tree import (
    build_tree,
    geometric_sample_size,
    leaf_points,
    tree_fingerprint,
    tree_from_dict,
    tree_to_dict,
)
from decp_ann.types import TreeNode, VectorPoint


def _points(n: int = 64, dim: int = 6, seed: int = 0):
    data = np.random.default_rng(seed).random((n, dim))
    return [VectorPoint(id=i, vector=row) for i, row in enumerate(data)]


def _inner_nodes(root: TreeNode):
    seen, stack, out = set(), [root], []
    while stack:
        node = stack.pop()
        if id(node) in seen or node.is_leaf:
            continue
        seen.add(id(node))
        out.append(node)
        stack.extend(node.children)
    return out


# ---------------------------------------------------------------------------
# Sampling policy
# ---------------------------------------------------------------------------


def test_geometric_sample_size_levels():
    assert geometric_sample_size(64, 64, 3) == 16
    assert geometric_sample_size(16, 64, 3) == 4
    assert geometric_sample_size(4, 64, 3) == 1


def test_geometric_sample_size_at_least_one():
    assert geometric_sample_size(1, 1000, 4) == 1
    assert geometric_sample_size(100, 100, 1) == 1
    assert geometric_sample_size(0, 100, 2) == 0


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def test_empty_point_set():
    with pytest.raises(ConfigurationError, match="empty"):
        build_tree([], height=2)


def test_invalid_height():
    with pytest.raises(ConfigurationError, match="height"):
        build_tree(_points(8), height=0)


def test_invalid_branch_factor():
    with pytest.raises(ConfigurationError, match="branch factor"):
        build_tree(_points(8), height=2, branch_factor=0)


def test_policy_selecting_nothing():
    with pytest.raises(ConfigurationError, match="at least one"):
        build_tree(_points(8), height=2, policy=lambda pop, n, h: 0)


def test_tree_has_requested_height():
    root = build_tree(_points(64), height=3, rng=1)
    assert root.height() == 3


def test_single_level_tree_is_one_leaf():
    pts = _points(10)
    root = build_tree(pts, height=1, rng=3)
    assert root.is_leaf
    assert root.representative in pts


def test_leaves_come_from_the_sample():
    pts = _points(64)
    root = build_tree(pts, height=3, rng=2)
    leaves = leaf_points(root)
    assert len(leaves) == 16
    assert all(p in pts for p in leaves)
    assert len({p.id for p in leaves}) == 16


def test_inner_representative_is_a_child_representative():
    root = build_tree(_points(64), height=3, branch_factor=2, rng=4)
    for node in _inner_nodes(root):
        assert node.representative.id in {c.representative.id for c in node.children}


def test_branch_factor_replicates_children():
    root = build_tree(_points(64), height=3, branch_factor=2, rng=5)
    level1 = root.children
    assert len(level1) == 4
    # every one of the 16 leaves picked two of the four level-1 parents
    assert sum(len(n.children) for n in level1) == 32
    assert len(leaf_points(root)) == 16


def test_synthesised_root_over_remaining_nodes():
    pts = _points(3)
    root = build_tree(pts, height=2, policy=lambda pop, n, h: pop, rng=0)
    assert len(root.children) == 3
    assert root.representative == root.children[0].representative
    assert [c.children[0].cluster_id for c in root.children] == [0, 1, 2]


# ---------------------------------------------------------------------------
# Determinism
# ---------------------------------------------------------------------------


def test_same_seed_same_tree():
    pts = _points(100)
    a = build_tree(pts, height=3, branch_factor=2, rng=42)
    b = build_tree(pts, height=3, branch_factor=2, rng=42)
    assert tree_fingerprint(a) == tree_fingerprint(b)
    assert [p.id for p in leaf_points(a)] == [p.id for p in leaf_points(b)]


def test_generator_and_seed_agree():
    pts = _points(50)
    a = build_tree(pts, height=2, rng=np.random.default_rng(11))
    b = build_tree(pts, height=2, rng=11)
    assert tree_fingerprint(a) == tree_fingerprint(b)


def test_parallel_parent_selection_matches_serial():
    pts = _points(200, dim=4)
    serial = build_tree(pts, height=3, branch_factor=3, rng=8, workers=1)
    parallel = build_tree(pts, height=3, branch_factor=3, rng=8, workers=4)
    assert tree_fingerprint(serial) == tree_fingerprint(parallel)


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def test_tree_dict_round_trip_keeps_shared_children():
    root = build_tree(_points(64), height=3, branch_factor=2, rng=6)
    data = tree_to_dict(root)
    restored = tree_from_dict(data)
    assert tree_fingerprint(restored) == tree_fingerprint(root)
    assert len(data["nodes"]) == 1 + 4 + 16
    # a leaf shared by two parents is restored as one object
    level1 = restored.children
    child_ids = [id(c) for n in level1 for c in n.children]
    assert len(set(child_ids)) == 16


def test_tree_from_dict_malformed():
    with pytest.raises(ConfigurationError, match="Malformed"):
        tree_from_dict({"nodes": [{"representative": {"id": 1, "vector": [0.0]},
                                   "children": [5]}]})
    with pytest.raises(ConfigurationError, match="Malformed"):
        tree_from_dict({})


# ---------------------------------------------------------------------------
# Parent selection memory
# ---------------------------------------------------------------------------


def test_parent_selection_memory_is_bounded():
    import tracemalloc

    from decp_ann.tree import _nearest_parents

    rng = np.random.default_rng(0)
    current = rng.random((2000, 128))
    centers = rng.random((200, 128))
    center_ids = np.arange(200, dtype=np.int64)

    tracemalloc.start()
    try:
        parents = _nearest_parents(current, centers, center_ids, 2)
        _, peak = tracemalloc.get_traced_memory()
    finally:
        tracemalloc.stop()

    assert len(parents) == 2000
    assert peak < 64 * 1024 * 1024


def test_block_size_does_not_change_tree(monkeypatch):
    import decp_ann.tree as tree_module

    pts = _points(300, dim=5)
    expected = tree_fingerprint(build_tree(pts, height=3, branch_factor=2, rng=13))
    monkeypatch.setattr(tree_module, "BLOCK_ELEMENTS", 1)
    assert tree_fingerprint(build_tree(pts, height=3, branch_factor=2, rng=13)) == expected


def test_high_dimensional_build():
    pts = _points(3000, dim=128, seed=4)
    root = build_tree(pts, height=3, branch_factor=3, rng=21)
    assert root.height() == 3
    assert len(leaf_points(root)) == geometric_sample_size(3000, 3000, 3)
