"""Unit tests for decp_ann.knn."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from decp_ann.clustering import ClusterAssignment
from decp_ann.errors import StorageUnavailableError
from decp_ann.knn import KnnRefiner, top_k
from decp_ann.scan import sequential_scan
from decp_ann.storage import InMemoryClusterStore
from decp_ann.types import VectorPoint


def _line_points():
    # ids 0..9 at x = 0..9 on a line
    return [VectorPoint(i, [float(i), 0.0]) for i in range(10)]


@pytest.fixture
def store():
    pts = _line_points()
    assignment = ClusterAssignment({0: [0, 1, 2, 3], 4: [3, 4, 5, 6], 7: [6, 7, 8, 9], 11: []})
    return InMemoryClusterStore(assignment, pts)


class FailingStore:
    def get(self, cluster_id):
        raise StorageUnavailableError(f"cluster {cluster_id} unreachable")


# ---------------------------------------------------------------------------
# top_k
# ---------------------------------------------------------------------------


def test_top_k_orders_by_distance_then_id():
    items = [(5, 1.0), (2, 1.0), (9, 0.5), (1, 3.0)]
    assert top_k(items, 3) == [(9, 0.5), (2, 1.0), (5, 1.0)]


# ---------------------------------------------------------------------------
# Gathered refinement
# ---------------------------------------------------------------------------


def test_refine_union_without_duplicates(store):
    q = VectorPoint(100, [3.2, 0.0])
    out = KnnRefiner(store, k=4).refine(q, [0, 4])
    assert [pid for pid, _ in out] == [3, 4, 2, 5]
    assert [d for _, d in out] == pytest.approx([0.2, 0.8, 1.2, 1.8])


def test_refine_fewer_than_k(store):
    q = VectorPoint(100, [0.0, 0.0])
    out = KnnRefiner(store, k=50).refine(q, [0])
    assert [pid for pid, _ in out] == [0, 1, 2, 3]


def test_refine_empty_and_unknown_clusters(store):
    q = VectorPoint(100, [0.0, 0.0])
    assert KnnRefiner(store, k=3).refine(q, [11, 404]) == []
    assert KnnRefiner(store, k=3).refine(q, []) == []


def test_refine_duplicate_cluster_ids(store):
    q = VectorPoint(100, [0.0, 0.0])
    out = KnnRefiner(store, k=10).refine(q, [0, 0, 0])
    assert len(out) == 4


def test_refine_ties_by_id(store):
    q = VectorPoint(100, [4.5, 0.0])
    out = KnnRefiner(store, k=2).refine(q, [4])
    assert [pid for pid, _ in out] == [4, 5]


def test_refine_all_clusters_matches_scan(store):
    pts = _line_points()
    q = VectorPoint(100, [6.7, 1.0])
    assert KnnRefiner(store, k=5).refine(q, [0, 4, 7]) == sequential_scan(pts, q, 5)


# ---------------------------------------------------------------------------
# Streamed refinement
# ---------------------------------------------------------------------------


def test_streamed_matches_gathered_random():
    rng = np.random.default_rng(0)
    pts = [VectorPoint(i, v) for i, v in enumerate(rng.random((200, 6)))]
    ids = [p.id for p in pts]
    members = {c: rng.choice(ids, size=40, replace=False).tolist() for c in range(10)}
    store = InMemoryClusterStore(ClusterAssignment(members), pts)
    refiner = KnnRefiner(store, k=7)
    for v in rng.random((20, 6)):
        q = VectorPoint(-1, v)
        clusters = rng.choice(10, size=4, replace=False).tolist()
        gathered = refiner.refine(q, clusters)
        streamed = refiner.refine_streamed(q, clusters)
        assert [pid for pid, _ in streamed] == [pid for pid, _ in gathered]
        assert [d for _, d in streamed] == pytest.approx([d for _, d in gathered])
        assert len(gathered) <= 7
        assert len({pid for pid, _ in gathered}) == len(gathered)
        dists = [d for _, d in gathered]
        assert dists == sorted(dists)


def test_streamed_fewer_than_k(store):
    q = VectorPoint(100, [9.0, 0.0])
    out = KnnRefiner(store, k=20, streamed=True).refine_streamed(q, [7, 11])
    assert [pid for pid, _ in out] == [9, 8, 7, 6]


# ---------------------------------------------------------------------------
# Concurrent fetch and QueryResult
# ---------------------------------------------------------------------------


def test_executor_fetch_matches_serial(store):
    q = VectorPoint(100, [5.1, 0.3])
    serial = KnnRefiner(store, k=6).refine(q, [0, 4, 7])
    with ThreadPoolExecutor(max_workers=3) as pool:
        concurrent = KnnRefiner(store, k=6, executor=pool).refine(q, [0, 4, 7])
        streamed = KnnRefiner(store, k=6, executor=pool).refine_streamed(q, [0, 4, 7])
    assert concurrent == serial
    assert streamed == serial


def test_search_returns_query_result(store):
    q = VectorPoint(100, [1.0, 0.0])
    result = KnnRefiner(store, k=2).search(q, [0])
    assert result.query_id == 100
    assert result.issue_timestamp_millis > 0
    assert result.neighbor_ids == [1, 0]


def test_search_uses_given_timestamp(store):
    q = VectorPoint(100, [1.0, 0.0])
    result = KnnRefiner(store, k=2, streamed=True).search(q, [0], issued_millis=1234)
    assert result.issue_timestamp_millis == 1234


def test_storage_failure_propagates():
    q = VectorPoint(100, [1.0, 0.0])
    with pytest.raises(StorageUnavailableError, match="unreachable"):
        KnnRefiner(FailingStore(), k=2).refine(q, [0])
