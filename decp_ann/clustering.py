"""Assignment of dataset points to tree clusters.

assign_points     — run the index search for every point and record the
                    ``replication`` nearest clusters it lands in
ClusterAssignment — immutable cluster id -> member ids mapping
"""

from __future__ import annotations

import logging
import time
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Sequence

from .errors import ConfigurationError
from .search import search_index
from .tree import leaf_points
from .types import TreeNode, VectorPoint

logger = logging.getLogger(__name__)

_EMPTY: FrozenSet[int] = frozenset()


class ClusterAssignment:
    """Read-only partition of point ids into (possibly overlapping) clusters.

    Built once and then shared by reference with every query worker; no
    method mutates it.
    """

    def __init__(self, members: Mapping[int, Iterable[int]]) -> None:
        frozen = {int(cid): frozenset(int(p) for p in ids) for cid, ids in members.items()}
        self._members: Mapping[int, FrozenSet[int]] = MappingProxyType(frozen)

    @property
    def cluster_ids(self) -> List[int]:
        return sorted(self._members)

    def members(self, cluster_id: int) -> FrozenSet[int]:
        """Member ids of ``cluster_id``; empty for an unknown id."""
        return self._members.get(cluster_id, _EMPTY)

    def clusters_of(self, point_id: int) -> List[int]:
        return sorted(cid for cid, ids in self._members.items() if point_id in ids)

    def sizes(self) -> Dict[int, int]:
        return {cid: len(ids) for cid, ids in self._members.items()}

    def __contains__(self, cluster_id: object) -> bool:
        return cluster_id in self._members

    def __len__(self) -> int:
        return len(self._members)

    def to_dict(self) -> Dict[str, List[int]]:
        return {str(cid): sorted(ids) for cid, ids in sorted(self._members.items())}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ClusterAssignment":
        try:
            return cls({int(cid): list(ids) for cid, ids in data.items()})
        except (TypeError, ValueError, AttributeError) as exc:
            raise ConfigurationError(f"Malformed assignment data: {exc}") from exc

    def __repr__(self) -> str:
        total = sum(len(ids) for ids in self._members.values())
        return f"ClusterAssignment(clusters={len(self)}, memberships={total})"


def assign_points(
    points: Sequence[VectorPoint],
    root: TreeNode,
    replication: int = 1,
) -> ClusterAssignment:
    """Assign every point to its ``replication`` nearest clusters.

    Every leaf of ``root`` becomes a cluster, even when no point lands in
    it. A point belongs to at least one and at most ``replication``
    clusters; fewer when the tree has fewer leaves.
    """
    if replication < 1:
        raise ConfigurationError(
            f"assignment replication must be >= 1, got {replication}"
        )
    t0 = time.perf_counter()
    members: Dict[int, set] = {p.id: set() for p in leaf_points(root)}
    for p in points:
        for cid in search_index(root, p, replication):
            members.setdefault(cid, set()).add(p.id)
    assignment = ClusterAssignment(members)
    logger.info(
        "Assigned %d points to %d clusters (a=%d) in %.3fs",
        len(points), len(assignment), replication, time.perf_counter() - t0,
    )
    return assignment
