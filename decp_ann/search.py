"""Candidate-cluster retrieval for decp-ann.

search_index   — greedy nearest-first descent of the cluster tree
search_leaders — flat ranking over leaf leaders, used when no tree exists
"""

from __future__ import annotations

from typing import List, Optional, Sequence, Set

import numpy as np

from .distance import distances, rank_points, stack_vectors
from .types import TreeNode, VectorPoint


def _ordered_children(node: TreeNode, query: np.ndarray) -> List[TreeNode]:
    reps = [c.representative for c in node.children]
    dists = distances(query, stack_vectors(reps))
    ids = np.array([p.id for p in reps], dtype=np.int64)
    return [node.children[i] for i in np.lexsort((ids, dists))]


def search_index(
    root: Optional[TreeNode],
    query: VectorPoint,
    m: int,
    leaders: Sequence[VectorPoint] = (),
) -> List[int]:
    """Return up to ``m`` leaf cluster ids near ``query``, nearest first.

    Children are visited in ascending distance to the query (ties by id).
    When a subtree runs out of leaves before ``m`` ids are found, the
    search backtracks to the next-nearest sibling. A subtree reached a
    second time through another parent is skipped.

    Fewer than ``m`` leaves in the tree is not an error: all of them are
    returned. With ``root`` set to None the ids come from
    :func:`search_leaders` over ``leaders``.
    """
    if m < 1:
        return []
    if root is None:
        return search_leaders(leaders, query, m)

    q = query.vector
    found: List[TreeNode] = []
    found_ids: Set[int] = set()
    visited: Set[int] = set()

    def descend(node: TreeNode) -> None:
        if id(node) in visited:
            return
        visited.add(id(node))
        if node.is_leaf:
            if node.cluster_id not in found_ids:
                found_ids.add(node.cluster_id)
                found.append(node)
            return
        for child in _ordered_children(node, q):
            if len(found) >= m:
                return
            descend(child)

    descend(root)
    ranked = rank_points(q, [leaf.representative for leaf in found])
    return [p.id for p, _ in ranked]


def search_leaders(
    leaders: Sequence[VectorPoint],
    query: VectorPoint,
    m: int,
) -> List[int]:
    """Rank leaf leaders by direct distance; distinct ids, at most ``m``."""
    if m < 1:
        return []
    out: List[int] = []
    seen: Set[int] = set()
    for p, _ in rank_points(query.vector, list(leaders)):
        if p.id in seen:
            continue
        seen.add(p.id)
        out.append(p.id)
        if len(out) == m:
            break
    return out
