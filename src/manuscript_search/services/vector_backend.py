"""
Vector Backend

Semantic search over one project's chunks. Chunks are embedded as
``title + "\\n" + content`` and written to a Qdrant collection that is shared
by all projects; every point carries its project id and every search or
deletion filters on it.
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..logging_config import configure_logger_for_debug_trace
from ..models import Chunk, FileCategory, RetrievalResult
from ..search_exceptions import (
    NotInitializedError,
    SearchError,
    VectorBackendError,
)
from .embedding_service import INPUT_DOCUMENT, INPUT_QUERY, EmbeddingProvider
from .search_backend import SearchBackend, make_snippet, scope_payload
from .vector_store import VectorPoint, VectorStore

logger = configure_logger_for_debug_trace(__name__)


@dataclass
class VectorBackendConfig:
    """
    Settings of one vector backend instance.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    collection_name: str = "manuscript-chunks"
    score_threshold: float = 0.7
    snippet_length: int = 120
    batch_size: int = 32


class VectorBackend(SearchBackend):
    """
    Embedding plus nearest-neighbour retrieval, filtered by project.

    ::: This is-in-layer Service-Layer.
    ::: This is a repository.
    ::: This is-in-process Main-Process.
    ::: This is stateful.
    """

    name = "vector"

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_service: EmbeddingProvider,
        config: Optional[VectorBackendConfig] = None,
    ):
        self.vector_store = vector_store
        self.embedding_service = embedding_service
        self.config = config or VectorBackendConfig()
        self._lock = threading.Lock()
        self._ready = False
        self._points_written = 0
        self._points_deleted_files = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        """
        Connect, load the embedding model and ensure the collection.

        Idempotent and safe under concurrent calls.

        Raises:
            VectorBackendError: If any step fails
        """
        if self._ready:
            return
        with self._lock:
            if self._ready:
                return
            try:
                if not self.vector_store.is_connected():
                    self.vector_store.connect()
                self.embedding_service.initialize()
                self.vector_store.ensure_collection(
                    self.config.collection_name, self.embedding_service.dimensions
                )
            except SearchError as e:
                raise VectorBackendError(
                    f"Vector backend initialization failed: {e}",
                    {"collection": self.config.collection_name},
                ) from e
            self._ready = True
            logger.info(
                f"Vector backend ready (collection={self.config.collection_name}, "
                f"dim={self.embedding_service.dimensions})"
            )

    def is_ready(self) -> bool:
        return self._ready

    def _require_ready(self) -> None:
        if not self._ready:
            raise NotInitializedError("Vector backend is not initialized; call initialize() first")

    def dispose(self) -> None:
        """Mark this instance unusable; the shared store and model stay open."""
        self._ready = False

    # =========================================================================
    # Indexing
    # =========================================================================

    def add(self, chunks: List[Chunk]) -> int:
        """
        Embed and upsert chunks in batches.

        Raises:
            VectorBackendError: If embedding or the upsert fails
        """
        self._require_ready()
        if not chunks:
            return 0

        written = 0
        batch_size = self.config.batch_size
        for i in range(0, len(chunks), batch_size):
            batch = chunks[i:i + batch_size]
            try:
                vectors = self.embedding_service.embed_batch(
                    [chunk.composite_text for chunk in batch], input_type=INPUT_DOCUMENT
                )
                points = [
                    VectorPoint(id=chunk.id, vector=vector.tolist(), payload=self._payload(chunk))
                    for chunk, vector in zip(batch, vectors)
                ]
                self.vector_store.upsert(self.config.collection_name, points)
            except SearchError as e:
                raise VectorBackendError(
                    f"Failed to add {len(batch)} chunks ({written} already written): {e}",
                    {"written": written},
                ) from e
            written += len(points)
            self._points_written += len(points)

        logger.debug(f"Vector backend: upserted {written} chunks")
        return written

    @staticmethod
    def _payload(chunk: Chunk) -> Dict[str, Any]:
        payload = scope_payload(chunk)
        payload.update({
            "project_id": chunk.project_id,
            "content": chunk.content,
            "ordinal": chunk.ordinal,
            "content_hash": chunk.content_hash,
        })
        return payload

    def remove_ids(self, chunk_ids: List[str]) -> None:
        self._require_ready()
        try:
            self.vector_store.delete(self.config.collection_name, chunk_ids)
        except SearchError as e:
            raise VectorBackendError(f"Failed to delete {len(chunk_ids)} chunks: {e}") from e

    def remove_file(self, path: str, project_id: str) -> None:
        self._delete_where({"project_id": project_id, "path": path})
        self._points_deleted_files += 1

    def remove_project(self, project_id: str) -> None:
        self._delete_where({"project_id": project_id})

    def _delete_where(self, conditions: Dict[str, Any]) -> None:
        self._require_ready()
        try:
            self.vector_store.delete_by_filter(self.config.collection_name, conditions)
        except SearchError as e:
            raise VectorBackendError(f"Failed to delete chunks where {conditions}: {e}") from e

    def clear_collection(self) -> None:
        """Drop and recreate the shared collection (all projects)."""
        self._require_ready()
        try:
            self.vector_store.delete_collection(self.config.collection_name)
            self.vector_store.ensure_collection(
                self.config.collection_name, self.embedding_service.dimensions
            )
        except SearchError as e:
            raise VectorBackendError(f"Failed to clear collection: {e}") from e

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        k: int,
        project_id: str,
        category: Optional[FileCategory] = None,
    ) -> List[RetrievalResult]:
        """
        Similarity search restricted to one project.

        Raises:
            VectorBackendError: If embedding or the store query fails
        """
        self._require_ready()
        if k <= 0 or not query.strip():
            return []

        conditions = {
            "project_id": project_id,
            "category": category.value if category else None,
        }
        try:
            vector = self.embedding_service.embed(query, input_type=INPUT_QUERY)
            hits = self.vector_store.search(
                self.config.collection_name,
                vector.tolist(),
                limit=k,
                score_threshold=self.config.score_threshold,
                conditions=conditions,
            )
        except SearchError as e:
            raise VectorBackendError(f"Semantic search failed: {e}") from e

        results = []
        for hit in hits:
            payload = dict(hit.payload)
            content = payload.pop("content", "") or ""
            payload.pop("project_id", None)
            results.append(RetrievalResult(
                id=hit.id,
                score=min(1.0, max(0.0, hit.score)),
                snippet=make_snippet(content, query, self.config.snippet_length),
                payload=payload,
                backend=self.name,
            ))
        return results

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "backend": self.name,
            "initialized": self._ready,
            "collection": self.config.collection_name,
            "points_written": self._points_written,
            "files_removed": self._points_deleted_files,
        }
        if self._ready:
            try:
                info = self.vector_store.collection_info(self.config.collection_name)
            except SearchError as e:
                logger.warning(f"Could not read collection info: {e}")
                info = None
            if info is not None:
                stats["collection_points"] = info.points_count
                stats["collection_status"] = info.status
        return stats
