"""Cluster storage for decp-ann.

A store answers one question: which points belong to cluster ``id``.

ClusterStore          — protocol: ``get(cluster_id) -> list[VectorPoint]``
InMemoryClusterStore  — assignment + point table held in memory and shared
                        by reference with every query worker
FileClusterStore      — one JSON-lines blob per cluster, named
                        ``<prefix><cluster_id>.jsonl``, read on demand

Unknown cluster ids give an empty list. A store that cannot be reached
raises StorageUnavailableError.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Protocol, Sequence, Tuple, Union, runtime_checkable

from .clustering import ClusterAssignment
from .errors import StorageUnavailableError
from .types import VectorPoint

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "clusterID-"


@runtime_checkable
class ClusterStore(Protocol):
    def get(self, cluster_id: int) -> List[VectorPoint]:
        ...


class InMemoryClusterStore:
    """Serve cluster members straight from an in-memory assignment.

    Member lists are resolved and ordered once, when the store is built.
    """

    def __init__(
        self,
        assignment: ClusterAssignment,
        points: Union[Sequence[VectorPoint], Mapping[int, VectorPoint]],
    ) -> None:
        self.assignment = assignment
        if isinstance(points, Mapping):
            self._points: Mapping[int, VectorPoint] = points
        else:
            self._points = {p.id: p for p in points}
        self._clusters: Dict[int, Tuple[VectorPoint, ...]] = {
            cid: tuple(
                self._points[pid]
                for pid in sorted(assignment.members(cid))
                if pid in self._points
            )
            for cid in assignment.cluster_ids
        }

    def get(self, cluster_id: int) -> List[VectorPoint]:
        return list(self._clusters.get(cluster_id, ()))

    def __repr__(self) -> str:
        return f"InMemoryClusterStore(clusters={len(self.assignment)})"


class FileClusterStore:
    """One blob per cluster under ``directory``.

    Parameters
    ----------
    directory : folder holding the cluster blobs.
    prefix    : stable blob name prefix; the cluster id is appended.
    """

    def __init__(self, directory: Union[str, Path], prefix: str = DEFAULT_PREFIX) -> None:
        self.directory = Path(directory)
        self.prefix = prefix

    def path_for(self, cluster_id: int) -> Path:
        return self.directory / f"{self.prefix}{cluster_id}.jsonl"

    def blobs(self) -> List[Tuple[int, Path]]:
        """(cluster id, path) of every blob under this prefix."""
        out = []
        for path in self.directory.glob(f"{self.prefix}*.jsonl"):
            suffix = path.name[len(self.prefix):-len(".jsonl")]
            try:
                out.append((int(suffix), path))
            except ValueError:
                continue
        return sorted(out)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def write(
        self,
        assignment: ClusterAssignment,
        points: Sequence[VectorPoint],
    ) -> int:
        """Write one blob per cluster; returns the number of blobs written.

        Blobs under the same prefix whose cluster id is not in
        ``assignment`` are removed, so the directory mirrors exactly one
        assignment.
        """
        by_id: Dict[int, VectorPoint] = {p.id: p for p in points}
        keep = set(assignment.cluster_ids)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            removed = 0
            for cid, path in self.blobs():
                if cid not in keep:
                    path.unlink()
                    removed += 1
            if removed:
                logger.info("Removed %d stale cluster blobs from %s", removed, self.directory)
            for cid in assignment.cluster_ids:
                lines = [
                    by_id[pid].to_json()
                    for pid in sorted(assignment.members(cid))
                    if pid in by_id
                ]
                self.path_for(cid).write_text("\n".join(lines), encoding="utf-8")
        except OSError as exc:
            raise StorageUnavailableError(
                f"Cannot write clusters to {self.directory}: {exc}"
            ) from exc
        logger.info("Wrote %d cluster blobs to %s", len(assignment), self.directory)
        return len(assignment)

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get(self, cluster_id: int) -> List[VectorPoint]:
        if not self.directory.is_dir():
            raise StorageUnavailableError(
                f"Cluster directory {self.directory} is not available."
            )
        path = self.path_for(cluster_id)
        if not path.exists():
            return []
        try:
            text = path.read_text(encoding="utf-8")
            return [
                VectorPoint.from_dict(json.loads(line))
                for line in text.splitlines()
                if line.strip()
            ]
        except (OSError, ValueError, KeyError) as exc:
            raise StorageUnavailableError(
                f"Cannot read cluster {cluster_id} from {path}: {exc}"
            ) from exc

    def __repr__(self) -> str:
        return f"FileClusterStore({str(self.directory)!r}, prefix={self.prefix!r})"
