"""
Manuscript Search - project-scoped retrieval over manuscript and settings notes

Splits Markdown/text files into heading-aware chunks and serves keyword or
semantic (Qdrant) search per project, keeping indexes current from
filesystem events.
"""

__version__ = "0.3.0"

from .models import (
    BootstrapMode,
    Chunk,
    FileCategory,
    FileChangeEvent,
    FileEventType,
    IndexSummary,
    RetrievalResult,
)
from .search_exceptions import (
    SearchError,
    InvalidInputError,
    NotInitializedError,
    BackendUnavailableError,
    SemanticSearchUnavailableError,
)

# The registry pulls in watchdog, qdrant-client and the embedding stack
_SERVICE_ATTRS = {"IndexerRegistry", "SearchConfig", "load_config"}


def __getattr__(name):
    if name in _SERVICE_ATTRS:
        from . import services
        return getattr(services, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "BootstrapMode",
    "Chunk",
    "FileCategory",
    "FileChangeEvent",
    "FileEventType",
    "IndexSummary",
    "RetrievalResult",
    "SearchError",
    "InvalidInputError",
    "NotInitializedError",
    "BackendUnavailableError",
    "SemanticSearchUnavailableError",
    "IndexerRegistry",
    "SearchConfig",
    "load_config",
]
