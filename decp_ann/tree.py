"""Cluster tree construction for decp-ann.

build_tree             — L-level tree by random center selection and
                         nearest-parent assignment
geometric_sample_size  — default sampling policy
tree_to_dict / tree_from_dict — node-table serialisation (shared children
                         are stored once)
tree_fingerprint       — Blake2b-256 digest of the tree structure

Construction is level-synchronous. Each iteration samples candidate
centers from the current level, lets every current node pick its
``branch_factor`` nearest centers as parents, and only then lets each
center collect its children. Parent selection may run in a thread pool;
every worker receives the full candidate-center matrix, and all workers
finish before any children are collected.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import numpy as np

from .distance import stack_vectors
from .errors import ConfigurationError
from .types import TreeNode, VectorPoint

logger = logging.getLogger(__name__)

SamplingPolicy = Callable[[int, int, int], int]
RandomSource = Union[None, int, np.random.Generator]

# Cap on float64 values in one parent-selection difference block (16 MB).
BLOCK_ELEMENTS = 1 << 21


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def geometric_sample_size(population: int, dataset_size: int, height: int) -> int:
    """Keep ``population * N ** (-1/L)`` nodes, at least one.

    Applied to the dataset for the leaves and then once per level, the
    level sizes shrink geometrically from about N^((L-1)/L) leaves to a
    single root after L-1 iterations.
    """
    if population <= 0:
        return 0
    ratio = float(dataset_size) ** (-1.0 / height)
    return int(min(population, max(1, round(population * ratio))))


def _sample(
    rng: np.random.Generator,
    items: Sequence,
    count: int,
) -> List:
    # Drawn without replacement; survivors keep their input order.
    picked = np.sort(rng.choice(len(items), size=count, replace=False))
    return [items[i] for i in picked]


def _sample_count(
    policy: SamplingPolicy,
    population: int,
    dataset_size: int,
    height: int,
) -> int:
    count = int(policy(population, dataset_size, height))
    if count < 1:
        raise ConfigurationError(
            f"Sampling policy returned {count} for population {population}; "
            "it must select at least one node."
        )
    return min(count, population)


# ---------------------------------------------------------------------------
# Parent selection
# ---------------------------------------------------------------------------


def _nearest_parents(
    current: np.ndarray,
    centers: np.ndarray,
    center_ids: np.ndarray,
    branch_factor: int,
) -> List[np.ndarray]:
    """Indices of the ``branch_factor`` nearest centers for each row.

    Rows are processed in blocks so the difference tensor never holds more
    than ``BLOCK_ELEMENTS`` values, whatever the level and center counts.
    """
    keep = min(branch_factor, centers.shape[0])
    per_row = max(1, centers.shape[0] * centers.shape[1])
    block = max(1, BLOCK_ELEMENTS // per_row)
    out: List[np.ndarray] = []
    for start in range(0, current.shape[0], block):
        diff = current[start:start + block, np.newaxis, :] - centers[np.newaxis, :, :]
        dists = np.sqrt(np.einsum("ijk,ijk->ij", diff, diff))
        out.extend(np.lexsort((center_ids, row))[:keep] for row in dists)
    return out


def _select_parents(
    current_nodes: List[TreeNode],
    new_nodes: List[TreeNode],
    branch_factor: int,
    workers: int,
) -> List[np.ndarray]:
    current = stack_vectors([n.representative for n in current_nodes])
    centers = stack_vectors([n.representative for n in new_nodes])
    center_ids = np.array([n.representative.id for n in new_nodes], dtype=np.int64)

    if workers <= 1 or len(current_nodes) < 2:
        return _nearest_parents(current, centers, center_ids, branch_factor)

    chunks = np.array_split(np.arange(len(current_nodes)), workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        # Every chunk gets the complete center set; map() returning is the
        # barrier before children are collected.
        parts = list(pool.map(
            lambda idx: _nearest_parents(current[idx], centers, center_ids, branch_factor),
            [c for c in chunks if len(c)],
        ))
    return [row for part in parts for row in part]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_tree(
    points: Sequence[VectorPoint],
    height: int,
    branch_factor: int = 1,
    rng: RandomSource = None,
    policy: SamplingPolicy = geometric_sample_size,
    workers: int = 1,
) -> TreeNode:
    """Build the cluster tree over ``points``.

    Parameters
    ----------
    points        : the point set P, materialised.
    height        : number of levels L (>= 1), leaves included.
    branch_factor : number of nearest candidate parents kept per node
                    (treeA, >= 1).
    rng           : numpy Generator or seed; identical draws and inputs
                    give an identical tree.
    policy        : sampling policy ``(population, N, L) -> count``.
    workers       : threads used for parent selection.

    Returns
    -------
    The root TreeNode. Leaves are the level-0 sample; their representative
    ids are the cluster ids.
    """
    points = list(points)
    n = len(points)
    if height < 1:
        raise ConfigurationError(f"tree height must be >= 1, got {height}")
    if n == 0:
        raise ConfigurationError("Cannot build a cluster tree over an empty point set.")
    if branch_factor < 1:
        raise ConfigurationError(f"branch factor must be >= 1, got {branch_factor}")

    rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
    t0 = time.perf_counter()

    leaders = _sample(rng, points, _sample_count(policy, n, n, height))
    level = [TreeNode(representative=p) for p in leaders]
    logger.info("Level 0: %d leaves sampled from %d points", len(level), n)

    for depth in range(1, height):
        new_nodes = [
            TreeNode(representative=node.representative)
            for node in _sample(rng, level, _sample_count(policy, len(level), n, height))
        ]
        parents = _select_parents(level, new_nodes, branch_factor, workers)
        for node, chosen in zip(level, parents):
            for j in chosen:
                new_nodes[j].children.append(node)
        logger.info(
            "Level %d: %d nodes over %d children", depth, len(new_nodes), len(level)
        )
        level = new_nodes

    if len(level) == 1:
        root = level[0]
    else:
        root = TreeNode(representative=level[0].representative, children=list(level))
        logger.info("Synthesised root over %d top-level nodes", len(level))

    logger.info("Cluster tree built in %.3fs", time.perf_counter() - t0)
    return root


def leaf_points(root: Optional[TreeNode]) -> List[VectorPoint]:
    """Representatives of every distinct leaf (the cluster leaders)."""
    if root is None:
        return []
    return [leaf.representative for leaf in root.leaves()]


# ---------------------------------------------------------------------------
# Serialisation
# ---------------------------------------------------------------------------


def _node_table(root: TreeNode) -> List[TreeNode]:
    order: List[TreeNode] = []
    seen = set()
    queue = [root]
    while queue:
        node = queue.pop(0)
        if id(node) in seen:
            continue
        seen.add(id(node))
        order.append(node)
        queue.extend(node.children)
    return order


def tree_to_dict(root: TreeNode) -> Dict[str, Any]:
    """Serialise the tree as a breadth-first node table.

    Node 0 is the root; ``children`` hold indices into the table, so a
    child shared by several parents is written once.
    """
    table = _node_table(root)
    index = {id(node): i for i, node in enumerate(table)}
    return {
        "nodes": [
            {
                "representative": node.representative.to_dict(),
                "children": [index[id(c)] for c in node.children],
            }
            for node in table
        ]
    }


def tree_from_dict(data: Dict[str, Any]) -> TreeNode:
    """Rebuild a tree written by :func:`tree_to_dict`."""
    try:
        records = data["nodes"]
        nodes = [
            TreeNode(representative=VectorPoint.from_dict(r["representative"]))
            for r in records
        ]
        for node, record in zip(nodes, records):
            node.children = [nodes[i] for i in record["children"]]
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise ConfigurationError(f"Malformed tree data: {exc}") from exc
    if not nodes:
        raise ConfigurationError("Malformed tree data: no nodes.")
    return nodes[0]


def tree_fingerprint(root: TreeNode) -> str:
    """Blake2b-256 over leaves and edges, as representative ids."""
    table = _node_table(root)
    index = {id(node): i for i, node in enumerate(table)}
    payload = json.dumps(
        [
            [node.representative.id, [index[id(c)] for c in node.children]]
            for node in table
        ],
        separators=(",", ":"),
    ).encode()
    return hashlib.blake2b(payload, digest_size=32).hexdigest()
