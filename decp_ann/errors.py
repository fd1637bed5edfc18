"""Error taxonomy for decp-ann.

ConfigurationError       — invalid or missing parameters; fatal at startup.
NotBuiltError            — a query reached the index before construction.
StorageUnavailableError  — the cluster store could not be reached; local to
                           the query that hit it.

Empty clusters, short candidate lists and missing leaves are ordinary
results and never raise.
"""

from __future__ import annotations


class DeCPError(Exception):
    """Base class for every error raised by decp-ann."""


class ConfigurationError(DeCPError, ValueError):
    """Invalid or missing configuration parameter."""


class NotBuiltError(DeCPError, RuntimeError):
    """The index was queried before it was built or loaded."""


class StorageUnavailableError(DeCPError, OSError):
    """The cluster storage collaborator is unreachable."""
