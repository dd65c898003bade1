"""
Service classes for manuscript search.

Chunking, tokenization, the keyword and vector backends, vector store
provisioning, per-project indexers and the registry that ties them to the
file watcher.
"""

# Lightweight imports (pydantic only)
from .config_loader import ConfigLoader, SearchConfig, load_config, get_config_loader
from .chunker import ChunkingEngine, TokenCounter

_LAZY = {
    "KeywordBackend": ".keyword_backend",
    "NltkTokenizer": ".tokenizer",
    "EmbeddingService": ".embedding_service",
    "LightweightEmbeddingService": ".embedding_service",
    "get_embedding_service": ".embedding_service",
    "QdrantVectorStore": ".vector_store",
    "VectorBackend": ".vector_backend",
    "VectorStoreBootstrap": ".vector_store_bootstrap",
    "DockerProvisioningRuntime": ".provisioning",
    "ProjectLayout": ".project_layout",
    "ProjectIndexer": ".project_indexer",
    "IndexerRegistry": ".indexer_registry",
    "FileChangeWatcher": ".file_watcher",
    "LocalFileReader": ".file_reader",
}


def __getattr__(name):
    """Lazy-import classes that depend on nltk, qdrant-client, watchdog or torch."""
    module_name = _LAZY.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    import importlib
    module = importlib.import_module(module_name, __name__)
    return getattr(module, name)


__all__ = [
    "ConfigLoader",
    "SearchConfig",
    "load_config",
    "get_config_loader",
    "ChunkingEngine",
    "TokenCounter",
    *_LAZY,
]
