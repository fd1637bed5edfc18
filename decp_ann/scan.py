"""Brute-force exact search; the oracle the index is measured against."""

from __future__ import annotations

from typing import List, Optional, Sequence

from .distance import distances, stack_vectors
from .knn import now_millis, top_k
from .types import Neighbor, QueryResult, VectorPoint


def sequential_scan(
    points: Sequence[VectorPoint],
    query: VectorPoint,
    k: int,
) -> List[Neighbor]:
    """Exact top-k over ``points``, ascending by (distance, id)."""
    return SequentialScanner(points, k).scan(query)


class SequentialScanner:
    """Exact top-k over the whole dataset.

    The dataset matrix is stacked once, so repeated queries only pay for
    the distance computation.
    """

    def __init__(self, points: Sequence[VectorPoint], k: int) -> None:
        self.points = list(points)
        self.k = k
        self._ids = [p.id for p in self.points]
        self._matrix = stack_vectors(self.points)

    def scan(self, query: VectorPoint) -> List[Neighbor]:
        if self.k < 1 or not self.points:
            return []
        dists = distances(query.vector, self._matrix)
        return top_k(zip(self._ids, (float(d) for d in dists)), self.k)

    def search(
        self,
        query: VectorPoint,
        issued_millis: Optional[int] = None,
    ) -> QueryResult:
        issued = now_millis() if issued_millis is None else issued_millis
        return QueryResult(
            query_id=query.id,
            issue_timestamp_millis=issued,
            neighbors=self.scan(query),
        )

    def __len__(self) -> int:
        return len(self.points)
