"""Configuration surface for decp-ann.

DeCPConfig  — validated run parameters (N, L, treeA, a, b, k, mode, ...)
load_config — read a DeCPConfig from a YAML file
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError

Mode = Literal["scan", "index"]
MODES = ("scan", "index")


@dataclass
class DeCPConfig:
    """Run parameters.

    Schema
    ------
    dataset_size           : N, number of dataset points (>= 1)
    tree_height            : L, levels in the cluster tree (>= 1)
    branch_factor          : treeA, candidate parents kept per node (>= 1)
    assignment_replication : a, clusters each point is assigned to (>= 1)
    candidate_clusters     : b, clusters searched per query (>= 1)
    result_size            : k, neighbours returned per query (>= 1)
    mode                   : "scan" (exact) or "index" (approximate)
    recluster_on_startup   : build the index at startup instead of loading
    snapshot_path          : persisted tree + assignment to load or save
    cluster_dir            : write and read cluster blobs here; in memory
                             when unset
    cluster_prefix         : blob name prefix inside ``cluster_dir``
    streamed               : bounded-memory refinement
    seed                   : random seed for the tree build
    workers                : threads for tree build and query serving
    """

    dataset_size: int
    tree_height: int = 4
    branch_factor: int = 3
    assignment_replication: int = 1
    candidate_clusters: int = 1
    result_size: int = 5
    mode: Mode = "index"
    recluster_on_startup: bool = True
    snapshot_path: Optional[str] = None
    cluster_dir: Optional[str] = None
    cluster_prefix: str = "clusterID-"
    streamed: bool = False
    seed: Optional[int] = None
    workers: int = 1

    def __post_init__(self) -> None:
        for name in (
            "dataset_size",
            "tree_height",
            "branch_factor",
            "assignment_replication",
            "candidate_clusters",
            "result_size",
            "workers",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigurationError(f"{name} must be an integer, got {value!r}")
            if value < 1:
                raise ConfigurationError(f"{name} must be >= 1, got {value}")
        if self.mode not in MODES:
            raise ConfigurationError(
                f"Unknown mode {self.mode!r}. Valid options: 'scan', 'index'."
            )
        if (
            self.mode == "index"
            and not self.recluster_on_startup
            and self.snapshot_path is None
        ):
            raise ConfigurationError(
                "mode='index' with recluster_on_startup=False needs a "
                "snapshot_path to load the tree and assignment from."
            )

    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeCPConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {unknown}")
        if "dataset_size" not in data:
            raise ConfigurationError("Missing required configuration key 'dataset_size'.")
        return cls(**data)


def load_config(
    path: Union[str, Path],
    **overrides: Any,
) -> DeCPConfig:
    """Load a DeCPConfig from YAML; keyword ``overrides`` win over the file."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc

    data = data if data is not None else {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config {path} must hold a mapping.")
    data.update(overrides)
    return DeCPConfig.from_dict(data)
