"""DeCPEngine — startup and serving for decp-ann.

Public API
----------
DeCPEngine
    .start()     — scan mode: stack the dataset; index mode: build or load
    .build()     — cluster tree + assignment + cluster store
    .save()      — write a JSON snapshot of tree and assignment
    .load()      — restore a snapshot written by save()
    .query()     — top-k QueryResult for one query point
    .run()       — serve many queries, score recall, feed the result sink
    .snapshot()  — serialisable state dict
    .stats()     — live statistics dict
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import numpy as np

from .clustering import ClusterAssignment, assign_points
from .config import DeCPConfig
from .errors import ConfigurationError, NotBuiltError, StorageUnavailableError
from .evaluation import evaluate, mean_recall
from .knn import KnnRefiner, now_millis
from .scan import SequentialScanner
from .search import search_index
from .storage import ClusterStore, FileClusterStore, InMemoryClusterStore
from .tree import build_tree, leaf_points, tree_fingerprint, tree_from_dict, tree_to_dict
from .types import GroundTruth, QueryRecord, QueryResult, TreeNode, VectorPoint

logger = logging.getLogger(__name__)

ResultSink = Callable[[QueryRecord], None]


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class DeCPEngine:
    """Approximate k-NN search over a hierarchically clustered index.

    The tree, the assignment and the cluster store are built once and
    are read-only afterwards; every query worker shares them by reference.

    Parameters
    ----------
    config : validated run parameters.
    points : the dataset; materialised on construction.
    store  : optional cluster storage collaborator. When omitted the engine
             serves clusters from memory, or from ``config.cluster_dir``
             when that is set.
    """

    VERSION: str = "0.1.0"

    def __init__(
        self,
        config: DeCPConfig,
        points: Iterable[VectorPoint],
        store: Optional[ClusterStore] = None,
    ) -> None:
        self.config = config
        self.points: List[VectorPoint] = list(points)
        if len(self.points) != config.dataset_size:
            logger.warning(
                "dataset_size=%d but %d points were supplied; using %d",
                config.dataset_size, len(self.points), len(self.points),
            )

        self.root: Optional[TreeNode] = None
        self.assignment: Optional[ClusterAssignment] = None
        self.store: Optional[ClusterStore] = store
        self.tree_hash: Optional[str] = None
        self.history: List[Dict[str, Any]] = []

        self._external_store = store is not None
        self._scanner: Optional[SequentialScanner] = None
        self._refiner: Optional[KnnRefiner] = None
        self._fetch_pool: Optional[ThreadPoolExecutor] = None

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _log(self, action: str, **kwargs: Any) -> None:
        self.history.append({"action": action, "timestamp": _utcnow(), **kwargs})

    def _make_store(self, assignment: ClusterAssignment) -> ClusterStore:
        # Blobs always mirror ``assignment``; stale ones are replaced.
        if self._external_store:
            return self.store
        cfg = self.config
        if cfg.cluster_dir is None:
            return InMemoryClusterStore(assignment, self.points)
        store = FileClusterStore(cfg.cluster_dir, prefix=cfg.cluster_prefix)
        store.write(assignment, self.points)
        return store

    def _publish(
        self,
        root: TreeNode,
        assignment: ClusterAssignment,
        store: ClusterStore,
    ) -> None:
        self.close()
        cfg = self.config
        if isinstance(store, FileClusterStore) and cfg.workers > 1:
            self._fetch_pool = ThreadPoolExecutor(
                max_workers=cfg.workers, thread_name_prefix="decp-fetch"
            )
        self.root = root
        self.assignment = assignment
        self.store = store
        self.tree_hash = tree_fingerprint(root)
        self._refiner = KnnRefiner(
            store, cfg.result_size, streamed=cfg.streamed, executor=self._fetch_pool
        )

    @property
    def built(self) -> bool:
        if self.config.mode == "scan":
            return self._scanner is not None
        return self.root is not None and self._refiner is not None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    def start(self) -> "DeCPEngine":
        """Prepare the engine for serving according to ``config.mode``."""
        cfg = self.config
        if cfg.mode == "scan":
            self._scanner = SequentialScanner(self.points, cfg.result_size)
            self._log("SCAN_READY", points=len(self.points))
            logger.info("Sequential scan ready over %d points", len(self.points))
        elif cfg.recluster_on_startup:
            self.build()
        elif cfg.snapshot_path is not None:
            self.load(cfg.snapshot_path)
        else:
            raise ConfigurationError(
                "Index mode without reclustering needs a persisted snapshot."
            )
        return self

    def build(self) -> "DeCPEngine":
        """Build tree, assignment and store; nothing is published on failure."""
        cfg = self.config
        t0 = time.perf_counter()
        logger.info(
            "Building index: N=%d L=%d treeA=%d a=%d",
            len(self.points), cfg.tree_height, cfg.branch_factor,
            cfg.assignment_replication,
        )
        root = build_tree(
            self.points,
            height=cfg.tree_height,
            branch_factor=cfg.branch_factor,
            rng=np.random.default_rng(cfg.seed),
            workers=cfg.workers,
        )
        assignment = assign_points(self.points, root, cfg.assignment_replication)
        store = self._make_store(assignment)
        self._publish(root, assignment, store)

        elapsed = time.perf_counter() - t0
        self._log(
            "BUILD",
            leaves=len(leaf_points(root)),
            clusters=len(assignment),
            tree_hash=self.tree_hash,
            seconds=round(elapsed, 3),
        )
        logger.info("Index built in %.3fs (%d clusters)", elapsed, len(assignment))
        if cfg.snapshot_path is not None:
            self.save(cfg.snapshot_path)
        return self

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        """Serialisable state: config, tree, assignment and tree hash."""
        if self.root is None or self.assignment is None:
            raise NotBuiltError("No index to snapshot; call build() first.")
        return {
            "version": self.VERSION,
            "config": self.config.to_dict(),
            "tree": tree_to_dict(self.root),
            "assignment": self.assignment.to_dict(),
            "tree_hash": self.tree_hash,
            "history": self.history,
        }

    def save(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.snapshot()), encoding="utf-8")
        self._log("SAVE", path=str(path))
        logger.info("Snapshot written to %s", path)
        return path

    def load(self, path: Union[str, Path]) -> "DeCPEngine":
        """Restore tree and assignment from a snapshot file.

        Raises ConfigurationError when the file is missing, malformed, or
        its tree does not match the recorded hash.
        """
        path = Path(path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise ConfigurationError(f"Cannot read snapshot {path}: {exc}") from exc
        except ValueError as exc:
            raise ConfigurationError(f"Snapshot {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or "tree" not in data or "assignment" not in data:
            raise ConfigurationError(f"Snapshot {path} lacks tree or assignment.")

        root = tree_from_dict(data["tree"])
        expected = data.get("tree_hash")
        if expected is not None and tree_fingerprint(root) != expected:
            raise ConfigurationError(f"Snapshot {path} failed its tree hash check.")
        assignment = ClusterAssignment.from_dict(data["assignment"])
        store = self._make_store(assignment)
        self._publish(root, assignment, store)
        self._log("LOAD", path=str(path), tree_hash=self.tree_hash)
        logger.info("Snapshot loaded from %s (%d clusters)", path, len(assignment))
        return self

    # ------------------------------------------------------------------
    # Serving
    # ------------------------------------------------------------------

    def query(
        self,
        point: VectorPoint,
        issued_millis: Optional[int] = None,
    ) -> QueryResult:
        """Top-k neighbours of ``point``.

        Raises NotBuiltError before start()/build()/load(), and
        StorageUnavailableError when the cluster store cannot be reached.
        """
        issued = now_millis() if issued_millis is None else issued_millis
        if self.config.mode == "scan":
            if self._scanner is None:
                raise NotBuiltError("Sequential scanner not ready; call start() first.")
            return self._scanner.search(point, issued)
        if self.root is None or self._refiner is None:
            raise NotBuiltError("Index not built; call start(), build() or load() first.")
        cluster_ids = search_index(self.root, point, self.config.candidate_clusters)
        return self._refiner.search(point, cluster_ids, issued)

    def _serve(self, point: VectorPoint, truth: Optional[GroundTruth]) -> QueryRecord:
        issued = now_millis()
        try:
            result = self.query(point, issued)
        except StorageUnavailableError as exc:
            logger.warning("Query %d dropped: %s", point.id, exc)
            return QueryRecord(query_id=point.id, timestamp_millis=issued, error=str(exc))
        recall = None
        if truth is not None:
            recall = evaluate(result, truth, self.config.result_size)
        return QueryRecord(
            query_id=result.query_id,
            timestamp_millis=result.issue_timestamp_millis,
            neighbors=result.neighbors,
            recall=recall,
        )

    def run(
        self,
        queries: Iterable[VectorPoint],
        truth: Optional[GroundTruth] = None,
        sink: Optional[ResultSink] = None,
    ) -> List[QueryRecord]:
        """Serve every query and hand one QueryRecord per query to ``sink``.

        With ``config.workers > 1`` queries run concurrently and records
        arrive in completion order. A storage failure only affects the
        query that hit it: its record carries the error and serving goes on.
        """
        if not self.built:
            raise NotBuiltError("Engine not started; call start() first.")
        queries = list(queries)
        records: List[QueryRecord] = []

        def emit(record: QueryRecord) -> None:
            records.append(record)
            if sink is not None:
                sink(record)

        t0 = time.perf_counter()
        logger.info("Serving %d queries in %s mode", len(queries), self.config.mode)
        if self.config.workers > 1 and len(queries) > 1:
            with ThreadPoolExecutor(
                max_workers=self.config.workers, thread_name_prefix="decp-query"
            ) as pool:
                futures = [pool.submit(self._serve, q, truth) for q in queries]
                for future in as_completed(futures):
                    emit(future.result())
        else:
            for q in queries:
                emit(self._serve(q, truth))

        failed = sum(1 for r in records if not r.ok)
        avg = mean_recall(r.recall for r in records)
        logger.info(
            "Served %d queries in %.3fs (failed=%d, mean recall=%s)",
            len(records), time.perf_counter() - t0, failed,
            "n/a" if avg is None else f"{avg:.4f}",
        )
        return records

    def close(self) -> None:
        if self._fetch_pool is not None:
            self._fetch_pool.shutdown(wait=True)
            self._fetch_pool = None
            if self._refiner is not None:
                self._refiner.executor = None

    def __enter__(self) -> "DeCPEngine":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, Any]:
        """Return live statistics for monitoring."""
        sizes = self.assignment.sizes() if self.assignment is not None else {}
        return {
            "version": self.VERSION,
            "mode": self.config.mode,
            "built": self.built,
            "point_count": len(self.points),
            "tree_height": self.root.height() if self.root is not None else 0,
            "leaf_count": len(leaf_points(self.root)),
            "cluster_count": len(sizes),
            "empty_clusters": sum(1 for n in sizes.values() if n == 0),
            "memberships": sum(sizes.values()),
            "tree_hash": self.tree_hash,
            "history_entries": len(self.history),
        }

    def __repr__(self) -> str:
        s = self.stats()
        return (
            f"DeCPEngine(v{s['version']} mode={s['mode']} "
            f"points={s['point_count']} clusters={s['cluster_count']} "
            f"built={s['built']})"
        )
