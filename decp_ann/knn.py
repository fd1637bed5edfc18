"""Exact top-k refinement over candidate clusters.

KnnRefiner.refine          — gather the union of candidate members, rank
KnnRefiner.refine_streamed — merge each cluster's local top-k into a
                             running k-sized buffer
KnnRefiner.search          — refine and wrap in a timestamped QueryResult
"""

from __future__ import annotations

import heapq
import time
from concurrent.futures import Executor
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from .distance import distances, stack_vectors
from .storage import ClusterStore
from .types import Neighbor, QueryResult, VectorPoint


def now_millis() -> int:
    return int(time.time() * 1000)


def _sort_key(item: Neighbor):
    return (item[1], item[0])


def _score(query: VectorPoint, points: Sequence[VectorPoint]) -> List[Neighbor]:
    unique: Dict[int, VectorPoint] = {}
    for p in points:
        unique.setdefault(p.id, p)
    if not unique:
        return []
    pts = list(unique.values())
    dists = distances(query.vector, stack_vectors(pts))
    return [(p.id, float(d)) for p, d in zip(pts, dists)]


def top_k(neighbors: Iterable[Neighbor], k: int) -> List[Neighbor]:
    """The ``k`` nearest neighbours, ascending by (distance, id)."""
    return heapq.nsmallest(k, neighbors, key=_sort_key)


class KnnRefiner:
    """Reduce candidate clusters to the exact top-k for a query.

    Parameters
    ----------
    store    : cluster storage collaborator (``get(cluster_id)``).
    k        : result size.
    streamed : use the bounded-memory streamed merge by default.
    executor : optional executor used to fetch candidate clusters
               concurrently; the merge itself always runs in the caller.
    """

    def __init__(
        self,
        store: ClusterStore,
        k: int,
        streamed: bool = False,
        executor: Optional[Executor] = None,
    ) -> None:
        self.store = store
        self.k = k
        self.streamed = streamed
        self.executor = executor

    def _fetch(self, cluster_ids: Sequence[int]) -> Iterator[List[VectorPoint]]:
        ids = list(dict.fromkeys(cluster_ids))
        if self.executor is not None and len(ids) > 1:
            # map() yields in submission order and re-raises fetch errors.
            return iter(list(self.executor.map(self.store.get, ids)))
        return (self.store.get(cid) for cid in ids)

    def refine(self, query: VectorPoint, cluster_ids: Sequence[int]) -> List[Neighbor]:
        """Rank the de-duplicated union of every candidate cluster."""
        if self.k < 1:
            return []
        gathered: List[VectorPoint] = []
        for members in self._fetch(cluster_ids):
            gathered.extend(members)
        return top_k(_score(query, gathered), self.k)

    def refine_streamed(
        self,
        query: VectorPoint,
        cluster_ids: Sequence[int],
    ) -> List[Neighbor]:
        """Same answer as :meth:`refine`, holding at most k + one cluster."""
        if self.k < 1:
            return []
        current: List[Neighbor] = []
        for members in self._fetch(cluster_ids):
            local = top_k(_score(query, members), self.k)
            merged = {pid: dist for pid, dist in current}
            merged.update(local)
            current = top_k(merged.items(), self.k)
        return current

    def search(
        self,
        query: VectorPoint,
        cluster_ids: Sequence[int],
        issued_millis: Optional[int] = None,
    ) -> QueryResult:
        issued = now_millis() if issued_millis is None else issued_millis
        if self.streamed:
            neighbors = self.refine_streamed(query, cluster_ids)
        else:
            neighbors = self.refine(query, cluster_ids)
        return QueryResult(
            query_id=query.id,
            issue_timestamp_millis=issued,
            neighbors=neighbors,
        )
