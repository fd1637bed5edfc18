"""Distance helpers for decp-ann.

Everything is Euclidean (L2). The scalar and batch forms share one code
path so that a distance computed during tree descent matches the one
computed during refinement bit for bit.

euclidean_distance — distance between two vectors
distances          — distances from one vector to every row of a matrix
stack_vectors      — (N, D) matrix from a sequence of VectorPoints
rank_points        — points ordered by (distance, id)
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

import numpy as np

from .types import VectorPoint


def distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """L2 distance from ``query`` to each row of ``matrix``."""
    matrix = np.atleast_2d(matrix)
    if matrix.shape[0] == 0:
        return np.empty(0, dtype=np.float64)
    diff = matrix - query
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


def euclidean_distance(a: np.ndarray, b: np.ndarray) -> float:
    """L2 (Euclidean) distance between two vectors."""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Dimension mismatch: {a.shape} vs {b.shape}.")
    return float(distances(a, b[np.newaxis, :])[0])


def point_distance(p: VectorPoint, q: VectorPoint) -> float:
    return euclidean_distance(p.vector, q.vector)


def stack_vectors(points: Sequence[VectorPoint]) -> np.ndarray:
    """Stack point vectors into an (N, D) float64 matrix."""
    if not points:
        return np.empty((0, 0), dtype=np.float64)
    return np.vstack([p.vector for p in points])


def rank_points(
    query: np.ndarray,
    points: Sequence[VectorPoint],
) -> List[Tuple[VectorPoint, float]]:
    """Order ``points`` by ascending distance to ``query``, ties by id."""
    if not points:
        return []
    dists = distances(query, stack_vectors(points))
    ids = np.array([p.id for p in points], dtype=np.int64)
    order = np.lexsort((ids, dists))
    return [(points[i], float(dists[i])) for i in order]
