"""
Indexer Registry

Lazily creates, reuses and evicts one ProjectIndexer per project id, owns the
resources shared by all projects (tokenizer, embedding model, vector store
connection) and routes file-change events from the watcher.

First access to a project is single-flight: concurrent callers wait on the
same Future and receive the same, already initialized, indexer.
"""

import queue
import threading
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..logging_config import configure_logger_for_debug_trace
from ..models import FileCategory, FileChangeEvent, FileEventType, IndexSummary, RetrievalResult
from ..search_exceptions import InvalidInputError, SearchError, SemanticSearchUnavailableError
from .chunker import ChunkingEngine, TokenCounter
from .config_loader import SearchConfig
from .embedding_service import EmbeddingProvider, get_embedding_service
from .file_reader import FileReader, LocalFileReader
from .file_watcher import FileChangeWatcher
from .keyword_backend import KeywordBackend
from .project_indexer import ProjectIndexer
from .project_layout import load_project_layout, validate_project_id
from .search_backend import SearchBackend
from .tokenizer import NltkTokenizer, Tokenizer
from .vector_backend import VectorBackend, VectorBackendConfig
from .vector_store import VectorStore
from .vector_store_bootstrap import BootstrapResult, VectorStoreBootstrap

logger = configure_logger_for_debug_trace(__name__)

_DISPATCH_POLL_SECONDS = 0.2


class IndexerRegistry:
    """
    Project-id keyed table of ProjectIndexer instances.

    ::: This is-in-layer Service-Layer.
    ::: This is a registry.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    The backend of every new indexer is chosen from configuration and the
    outcome of the vector store bootstrap: a VectorBackend when the
    configured backend is "vector" and a store is reachable, otherwise a
    KeywordBackend.
    """

    def __init__(
        self,
        config: Optional[SearchConfig] = None,
        tokenizer: Optional[Tokenizer] = None,
        embedding_service: Optional[EmbeddingProvider] = None,
        bootstrap: Optional[VectorStoreBootstrap] = None,
        file_reader: Optional[FileReader] = None,
        chunker: Optional[ChunkingEngine] = None,
    ):
        self.config = config or SearchConfig()
        self.projects_root = Path(self.config.projects_root).resolve()
        self.file_reader = file_reader or LocalFileReader(self.projects_root)
        self.chunker = chunker or ChunkingEngine(TokenCounter(self.config.chunk.chars_per_token))

        self._tokenizer = tokenizer
        self._embedding_service = embedding_service
        self._bootstrap = bootstrap
        self._bootstrap_result: Optional[BootstrapResult] = None
        self._vector_store: Optional[VectorStore] = None

        self._indexers: Dict[str, ProjectIndexer] = {}
        self._pending: Dict[str, "Future[ProjectIndexer]"] = {}
        self._lock = threading.Lock()
        self._backend_lock = threading.Lock()

        self._watcher: Optional[FileChangeWatcher] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._stop_dispatch = threading.Event()

    # =========================================================================
    # Shared resources
    # =========================================================================

    @property
    def tokenizer(self) -> Tokenizer:
        if self._tokenizer is None:
            self._tokenizer = NltkTokenizer()
        return self._tokenizer

    @property
    def embedding_service(self) -> EmbeddingProvider:
        if self._embedding_service is None:
            embedding = self.config.embedding
            self._embedding_service = get_embedding_service(
                model_name=embedding.model_name,
                cache_size=embedding.cache_size,
                batch_size=embedding.batch_size,
                use_lightweight=embedding.use_lightweight,
            )
        return self._embedding_service

    def initialize_backend(self) -> Optional[BootstrapResult]:
        """
        Run the vector store bootstrap once, if the vector backend is configured.

        Returns:
            The cached BootstrapResult, or None when the keyword backend is configured
        """
        if self.config.search.backend != "vector":
            return None

        with self._backend_lock:
            if self._bootstrap_result is None:
                if self._bootstrap is None:
                    self._bootstrap = VectorStoreBootstrap(
                        self.config.vector_store, self.config.provisioning
                    )
                result = self._bootstrap.initialize()
                self._bootstrap_result = result
                self._vector_store = result.store if result.success else None
                if not result.success:
                    logger.warning(result.user_message())
            return self._bootstrap_result

    @property
    def semantic_search_available(self) -> bool:
        return self.initialize_backend() is not None and self._vector_store is not None

    def _create_backend(self) -> SearchBackend:
        self.initialize_backend()
        if self._vector_store is not None:
            vector = self.config.vector_store
            return VectorBackend(
                self._vector_store,
                self.embedding_service,
                VectorBackendConfig(
                    collection_name=vector.collection_name,
                    score_threshold=vector.score_threshold,
                    snippet_length=vector.snippet_length,
                    batch_size=self.config.embedding.batch_size,
                ),
            )
        return KeywordBackend(
            self.tokenizer,
            self.file_reader,
            min_token_length=self.config.keyword.min_token_length,
            snippet_length=self.config.keyword.snippet_length,
        )

    # =========================================================================
    # Indexer table
    # =========================================================================

    def get_or_create(self, project_id: str) -> ProjectIndexer:
        """
        Return the project's indexer, creating and initializing it on first use.

        Concurrent first calls for the same project construct it only once.

        Raises:
            InvalidInputError: If the project id is invalid or unknown
            SearchError: If backend initialization or indexing fails
        """
        validate_project_id(project_id)

        with self._lock:
            indexer = self._indexers.get(project_id)
            if indexer is not None:
                return indexer
            future = self._pending.get(project_id)
            owner = future is None
            if owner:
                future = Future()
                self._pending[project_id] = future

        if not owner:
            return future.result()

        try:
            indexer = self._build_indexer(project_id)
        except Exception as e:
            with self._lock:
                self._pending.pop(project_id, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._indexers[project_id] = indexer
            self._pending.pop(project_id, None)
        future.set_result(indexer)
        return indexer

    def _build_indexer(self, project_id: str) -> ProjectIndexer:
        layout = load_project_layout(
            self.projects_root,
            project_id,
            config_file=self.config.project_config_file,
            extensions=self.config.watcher.extensions,
        )
        indexer = ProjectIndexer(
            layout,
            self._create_backend(),
            self.file_reader,
            chunker=self.chunker,
            chunk_config=self.config.chunk,
        )
        indexer.initialize()
        if self.config.index_on_create:
            indexer.index_all()
        logger.info(f"Indexer ready for project {project_id} ({indexer.backend.name})")
        return indexer

    def get_indexer(self, project_id: str) -> Optional[ProjectIndexer]:
        with self._lock:
            return self._indexers.get(project_id)

    def has_indexer(self, project_id: str) -> bool:
        return self.get_indexer(project_id) is not None

    def loaded_projects(self) -> List[str]:
        with self._lock:
            return sorted(self._indexers)

    def list_projects(self) -> List[str]:
        """Project directories below the projects root."""
        if not self.projects_root.is_dir():
            return []
        return sorted(
            entry.name for entry in self.projects_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def remove_indexer(self, project_id: str) -> bool:
        """
        Clean up and evict a project's indexer.

        Returns:
            True if an indexer was loaded
        """
        indexer = self.get_indexer(project_id)
        if indexer is None:
            return False
        indexer.cleanup()
        with self._lock:
            if self._indexers.get(project_id) is indexer:
                del self._indexers[project_id]
        logger.info(f"Evicted indexer for project {project_id}")
        return True

    # =========================================================================
    # Operations
    # =========================================================================

    def _clamp_k(self, k: Optional[int]) -> int:
        if k is None:
            return self.config.search.default_k
        return max(1, min(int(k), self.config.search.max_k))

    def search(
        self,
        project_id: str,
        query: str,
        k: Optional[int] = None,
        category: Optional[FileCategory] = None,
    ) -> List[RetrievalResult]:
        """
        Search one project with whichever backend is active.

        Raises:
            InvalidInputError: If the query is empty or the project unknown
        """
        if not query or not query.strip():
            raise InvalidInputError("Search query must not be empty")
        indexer = self.get_or_create(project_id)
        return indexer.search(query, self._clamp_k(k), category)

    def semantic_search(
        self,
        project_id: str,
        query: str,
        k: Optional[int] = None,
        category: Optional[FileCategory] = None,
    ) -> List[RetrievalResult]:
        """
        Search one project with the vector backend.

        Raises:
            SemanticSearchUnavailableError: If the vector backend is disabled or degraded
        """
        result = self.initialize_backend()
        if result is None:
            raise SemanticSearchUnavailableError(
                "Semantic search is disabled (search backend is 'keyword')",
                suggestion="Use keyword search, or set MANUSCRIPT_SEARCH_BACKEND=vector.",
            )
        if self._vector_store is None:
            raise SemanticSearchUnavailableError(
                result.user_message(),
                suggestion="Use keyword search instead.",
                context=result.to_dict(),
            )
        return self.search(project_id, query, k, category)

    def index_all(self, project_id: str) -> IndexSummary:
        """Index a whole project, creating its indexer if needed."""
        already_loaded = self.has_indexer(project_id)
        indexer = self.get_or_create(project_id)
        if not already_loaded and indexer.last_summary is not None:
            return indexer.last_summary
        return indexer.index_all()

    def rebuild_index(self, project_id: str) -> IndexSummary:
        """Drop every chunk of a project and index it from scratch."""
        indexer = self.get_indexer(project_id)
        if indexer is not None:
            indexer.clear()
            self.remove_indexer(project_id)
        return self.index_all(project_id)

    def process_file(
        self,
        path: Union[str, Path],
        project_id: str,
        category: Optional[FileCategory] = None,
    ) -> int:
        """Reindex one file. Returns the number of chunks it now has."""
        indexer = self.get_or_create(project_id)
        return len(indexer.process_file(path, category))

    def remove_file(self, path: Union[str, Path], project_id: str) -> None:
        """Remove one file's chunks. No-op if the project was never loaded."""
        indexer = self.get_indexer(project_id)
        if indexer is None:
            return
        indexer.remove_file(path)

    def handle_file_change(self, event: FileChangeEvent) -> None:
        """
        Apply one watcher event.

        Projects that are not loaded are skipped: their files are picked up
        by the full index on first access. Failures are logged, not raised.
        """
        indexer = self.get_indexer(event.project_id)
        if indexer is None:
            logger.debug(f"Ignoring {event.type.value} {event.path}: project {event.project_id} not loaded")
            return

        try:
            if event.type == FileEventType.UNLINK:
                indexer.remove_file(event.path)
                return
            if not indexer.layout.is_indexable(event.path):
                return
            category = indexer.layout.categorize(event.path)
            if category is None:
                logger.debug(f"Ignoring {event.path}: outside configured directories")
                return
            indexer.process_file(event.path, category)
        except SearchError as e:
            logger.warning(f"Failed to apply {event.type.value} {event.path}: {e}")

    # =========================================================================
    # File watching
    # =========================================================================

    def start_file_watching(self) -> None:
        """Start the watcher and the thread that applies its events."""
        with self._lock:
            if self._watcher is not None and self._watcher.is_running():
                logger.warning("File watching is already running")
                return
            watcher = FileChangeWatcher(
                self.projects_root,
                extensions=self.config.watcher.extensions,
                debounce_seconds=self.config.watcher.debounce_ms / 1000.0,
            )
            self._watcher = watcher
            self._stop_dispatch.clear()
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                args=(watcher.events,),
                name="file-change-dispatcher",
                daemon=True,
            )
        watcher.start()
        self._dispatcher.start()

    def _dispatch_loop(self, events: "queue.Queue[FileChangeEvent]") -> None:
        while not self._stop_dispatch.is_set():
            try:
                event = events.get(timeout=_DISPATCH_POLL_SECONDS)
            except queue.Empty:
                continue
            self.handle_file_change(event)

    def stop_file_watching(self) -> None:
        with self._lock:
            watcher, self._watcher = self._watcher, None
            dispatcher, self._dispatcher = self._dispatcher, None
        if watcher is not None:
            watcher.stop()
        self._stop_dispatch.set()
        if dispatcher is not None:
            dispatcher.join(timeout=2.0)

    def is_file_watching(self) -> bool:
        watcher = self._watcher
        return watcher is not None and watcher.is_running()

    # =========================================================================
    # Status and shutdown
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "projects_root": str(self.projects_root),
            "configured_backend": self.config.search.backend,
            "loaded_projects": self.loaded_projects(),
            "file_watching": self.is_file_watching(),
        }
        result = self._bootstrap_result
        if result is not None:
            status["vector_store"] = result.to_dict()
            status["semantic_search"] = result.success
            if not result.success:
                status["message"] = result.user_message()
        else:
            status["semantic_search"] = False
        return status

    def get_stats(self, project_id: str) -> Dict[str, Any]:
        return self.get_or_create(project_id).get_stats()

    def cleanup(self) -> None:
        """
        Release every indexer and the shared resources.

        Best-effort: a failing project is logged and the others are still
        cleaned up. Safe to call repeatedly.
        """
        self.stop_file_watching()

        for project_id in self.loaded_projects():
            try:
                self.remove_indexer(project_id)
            except Exception as e:
                logger.error(f"Cleanup of project {project_id} failed: {e}")
                with self._lock:
                    self._indexers.pop(project_id, None)

        if self._embedding_service is not None:
            try:
                self._embedding_service.dispose()
            except Exception as e:
                logger.error(f"Embedding service dispose failed: {e}")

        if self._vector_store is not None:
            try:
                self._vector_store.disconnect()
            except Exception as e:
                logger.error(f"Vector store disconnect failed: {e}")

        logger.info("Indexer registry cleaned up")
