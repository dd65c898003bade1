"""
Project Indexer

Binds one ChunkingEngine and one SearchBackend to one project. A file
update removes the file's old chunks and adds the new ones while holding the
indexer lock, and searches take the same lock, so a query never sees old and
new chunks of a file side by side.
"""

import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..logging_config import configure_logger_for_debug_trace
from ..models import Chunk, FileCategory, IndexSummary, RetrievalResult
from ..search_exceptions import IndexingError, InvalidInputError, SearchError
from .chunker import ChunkingEngine
from .config_loader import ChunkConfig
from .file_reader import FileReader
from .project_layout import ProjectLayout
from .search_backend import SearchBackend

logger = configure_logger_for_debug_trace(__name__)


class ProjectIndexer:
    """
    Indexes and searches the documents of a single project.

    ::: This is-in-layer Service-Layer.
    ::: This is a manager.
    ::: This is-in-process Main-Process.
    ::: This is stateful.
    """

    def __init__(
        self,
        layout: ProjectLayout,
        backend: SearchBackend,
        file_reader: FileReader,
        chunker: Optional[ChunkingEngine] = None,
        chunk_config: Optional[ChunkConfig] = None,
    ):
        self.layout = layout
        self.backend = backend
        self.file_reader = file_reader
        self.chunker = chunker or ChunkingEngine()
        self.chunk_config = chunk_config or ChunkConfig()
        self._lock = threading.RLock()
        self._cleaned_up = False
        self._indexed_files: Dict[str, int] = {}
        self._last_summary: Optional[IndexSummary] = None

    @property
    def project_id(self) -> str:
        return self.layout.project_id

    @property
    def last_summary(self) -> Optional[IndexSummary]:
        return self._last_summary

    def initialize(self) -> None:
        self.backend.initialize()
        self._cleaned_up = False

    def is_ready(self) -> bool:
        return not self._cleaned_up and self.backend.is_ready()

    # =========================================================================
    # Indexing
    # =========================================================================

    def index_all(self) -> IndexSummary:
        """
        Index every file of the configured content and settings directories.

        A file that cannot be read or indexed is logged, recorded in the
        summary and skipped.
        """
        summary = IndexSummary(project_id=self.project_id)
        start = time.time()

        files = self.layout.discover_files()
        logger.info(f"[{self.project_id}] Indexing {len(files)} files")
        for path, category in files:
            try:
                chunks = self.process_file(path, category)
            except SearchError as e:
                logger.warning(f"[{self.project_id}] Skipping {path}: {e}")
                summary.failed_files.append(str(path))
                continue
            summary.files_indexed += 1
            summary.chunks_indexed += len(chunks)

        summary.elapsed = time.time() - start
        self._last_summary = summary
        logger.info(
            f"[{self.project_id}] Indexed {summary.files_indexed} files, "
            f"{summary.chunks_indexed} chunks in {summary.elapsed:.2f}s"
            + (f" ({len(summary.failed_files)} failed)" if summary.failed_files else "")
        )
        return summary

    def process_file(
        self,
        path: Union[str, Path],
        category: Optional[FileCategory] = None,
    ) -> List[Chunk]:
        """
        Replace the chunks of one file with freshly computed ones.

        Calling it twice on unchanged content leaves exactly one copy of
        each chunk.

        Raises:
            InvalidInputError: If the path is outside the project
            IndexingError: If the file cannot be read
            ExternalCallError: If the backend fails
        """
        relative = self.layout.relative_path(path)
        if category is None:
            category = self.layout.categorize(path) or FileCategory.CONTENT

        try:
            text = self.file_reader.read_text(relative)
        except (OSError, UnicodeDecodeError) as e:
            raise IndexingError(f"Cannot read {relative}: {e}", {"path": relative}) from e

        chunks = self.chunker.chunk(
            text,
            relative,
            self.chunk_config.max_tokens,
            self.chunk_config.overlap_ratio,
            project_id=self.project_id,
            category=category,
        )

        with self._lock:
            self.backend.remove_file(relative, self.project_id)
            self._indexed_files.pop(relative, None)
            if chunks:
                self.backend.add(chunks)
                self._indexed_files[relative] = len(chunks)

        logger.debug(f"[{self.project_id}] {relative}: {len(chunks)} chunks")
        return chunks

    def remove_file(self, path: Union[str, Path]) -> None:
        """Remove a file's chunks. A never-indexed path is a no-op."""
        relative = self.layout.relative_path(path)
        with self._lock:
            self.backend.remove_file(relative, self.project_id)
            self._indexed_files.pop(relative, None)
        logger.debug(f"[{self.project_id}] removed {relative}")

    def clear(self) -> None:
        """Remove every chunk of this project from the backend."""
        with self._lock:
            self.backend.remove_project(self.project_id)
            self._indexed_files.clear()
        logger.info(f"[{self.project_id}] index cleared")

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        k: int,
        category: Optional[FileCategory] = None,
    ) -> List[RetrievalResult]:
        if not query or not query.strip():
            raise InvalidInputError("Search query must not be empty")
        with self._lock:
            return self.backend.search(query, k, self.project_id, category)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def cleanup(self) -> None:
        """Release the backend instance. Safe to call repeatedly."""
        if self._cleaned_up:
            return
        self._cleaned_up = True
        with self._lock:
            self.backend.dispose()
            self._indexed_files.clear()
        logger.debug(f"[{self.project_id}] cleaned up")

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = {
                "project_id": self.project_id,
                "ready": self.is_ready(),
                "files": len(self._indexed_files),
                "chunks": sum(self._indexed_files.values()),
                "backend": self.backend.get_stats(),
            }
        if self._last_summary is not None:
            stats["last_index"] = self._last_summary.to_dict()
        return stats
