"""decp-ann — approximate nearest-neighbour search over a clustered index.

A random multi-level cluster tree routes every point and query to its
nearest leaf clusters; queries are answered exactly within the few
clusters they reach.

Public API::

    from decp_ann import DeCPConfig, DeCPEngine, VectorPoint
"""

from .types import GroundTruth, QueryRecord, QueryResult, TreeNode, VectorPoint
from .errors import (
    ConfigurationError,
    DeCPError,
    NotBuiltError,
    StorageUnavailableError,
)
from .distance import euclidean_distance
from .tree import build_tree, geometric_sample_size, tree_fingerprint
from .search import search_index, search_leaders
from .clustering import ClusterAssignment, assign_points
from .storage import ClusterStore, FileClusterStore, InMemoryClusterStore
from .knn import KnnRefiner
from .scan import SequentialScanner, sequential_scan
from .evaluation import evaluate, mean_recall, recall_at_k
from .config import DeCPConfig, load_config
from .engine import DeCPEngine

__version__ = "0.1.0"
__all__ = [
    "VectorPoint",
    "TreeNode",
    "QueryResult",
    "QueryRecord",
    "GroundTruth",
    "DeCPError",
    "ConfigurationError",
    "NotBuiltError",
    "StorageUnavailableError",
    "euclidean_distance",
    "build_tree",
    "geometric_sample_size",
    "tree_fingerprint",
    "search_index",
    "search_leaders",
    "ClusterAssignment",
    "assign_points",
    "ClusterStore",
    "InMemoryClusterStore",
    "FileClusterStore",
    "KnnRefiner",
    "SequentialScanner",
    "sequential_scan",
    "recall_at_k",
    "evaluate",
    "mean_recall",
    "DeCPConfig",
    "load_config",
    "DeCPEngine",
]
