"""Core record types for decp-ann.

VectorPoint — one dataset or query vector with a stable integer id.
TreeNode    — node of the cluster tree; its representative stands in for
              the whole subtree during descent.
QueryResult — top-k neighbours of one query, nearest first.
QueryRecord — what the result sink receives for every submitted query.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np

Neighbor = Tuple[int, float]
GroundTruth = Mapping[int, Sequence[int]]


# ---------------------------------------------------------------------------
# VectorPoint
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class VectorPoint:
    """A point in the searched space.

    Schema
    ------
    id     : int         — unique, stable point id
    vector : np.ndarray  — dense 1-D float64 vector

    Equality is by ``id`` and vector contents, not by object identity.
    """

    id: int
    vector: np.ndarray

    def __post_init__(self) -> None:
        self.id = int(self.id)
        self.vector = np.asarray(self.vector, dtype=np.float64)
        if self.vector.ndim != 1:
            raise ValueError("vector must be a 1-D array")
        if self.vector.size == 0:
            raise ValueError("vector must not be empty")

    @property
    def dim(self) -> int:
        return int(self.vector.shape[0])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VectorPoint):
            return NotImplemented
        return self.id == other.id and np.array_equal(self.vector, other.vector)

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"VectorPoint(id={self.id}, dim={self.dim})"

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "vector": self.vector.tolist()}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorPoint":
        return cls(id=data["id"], vector=data["vector"])


# ---------------------------------------------------------------------------
# TreeNode
# ---------------------------------------------------------------------------


@dataclass(eq=False)
class TreeNode:
    """Node of the cluster tree.

    Leaves carry the randomly sampled cluster leaders; an inner node
    reuses the representative of the node it was promoted from, so every
    representative on a root-to-leaf path is a real dataset point.

    With a parent-replication factor above one, a node can be the child of
    several parents: the structure is then a DAG with a single root.
    """

    representative: VectorPoint
    children: List["TreeNode"] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return len(self.children) == 0

    @property
    def cluster_id(self) -> int:
        """Cluster id of a leaf: its representative's point id."""
        return self.representative.id

    def height(self) -> int:
        """Number of levels from this node down to its deepest leaf."""
        if self.is_leaf:
            return 1
        return 1 + max(child.height() for child in self.children)

    def leaves(self) -> Iterator["TreeNode"]:
        """Yield each distinct leaf once, in depth-first order."""
        seen = set()
        stack = [self]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            if node.is_leaf:
                yield node
            else:
                stack.extend(reversed(node.children))

    def __repr__(self) -> str:
        return (
            f"TreeNode(rep={self.representative.id}, "
            f"children={len(self.children)})"
        )


# ---------------------------------------------------------------------------
# Query results
# ---------------------------------------------------------------------------


@dataclass
class QueryResult:
    """Top-k answer for one query.

    ``issue_timestamp_millis`` is taken when the query starts and is only
    used for latency reporting.
    """

    query_id: int
    issue_timestamp_millis: int
    neighbors: List[Neighbor] = field(default_factory=list)

    @property
    def neighbor_ids(self) -> List[int]:
        return [pid for pid, _ in self.neighbors]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "issue_timestamp_millis": self.issue_timestamp_millis,
            "neighbors": [[pid, dist] for pid, dist in self.neighbors],
        }


@dataclass
class QueryRecord:
    """Record handed to the result sink, one per submitted query."""

    query_id: int
    timestamp_millis: int
    neighbors: List[Neighbor] = field(default_factory=list)
    recall: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query_id": self.query_id,
            "timestamp_millis": self.timestamp_millis,
            "neighbors": [[pid, dist] for pid, dist in self.neighbors],
            "recall": self.recall,
            "error": self.error,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
