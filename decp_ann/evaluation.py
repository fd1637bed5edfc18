"""Recall evaluation against ground truth.

recall_at_k — |approximate ids ∩ true top-k ids| / k
evaluate    — recall for a QueryResult looked up in a GroundTruth mapping
mean_recall — average over evaluated queries
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

import numpy as np

from .errors import ConfigurationError
from .types import GroundTruth, QueryResult


def recall_at_k(
    result: QueryResult,
    truth_ids: Sequence[int],
    k: int,
) -> float:
    """Fraction of the true top-k neighbours present in ``result``.

    Only the first ``k`` entries of ``truth_ids`` count as the truth set,
    and only the first ``k`` neighbours of ``result``.
    """
    if k < 1:
        raise ConfigurationError(f"k must be >= 1, got {k}")
    approx = set(result.neighbor_ids[:k])
    truth = set(truth_ids[:k])
    return len(approx & truth) / k


def evaluate(
    result: QueryResult,
    truth: GroundTruth,
    k: int,
) -> Optional[float]:
    """Recall of ``result``, or None when the query has no ground truth."""
    truth_ids = truth.get(result.query_id)
    if truth_ids is None:
        return None
    return recall_at_k(result, list(truth_ids), k)


def mean_recall(values: Iterable[Optional[float]]) -> Optional[float]:
    scored = [v for v in values if v is not None]
    if not scored:
        return None
    return float(np.mean(scored))
