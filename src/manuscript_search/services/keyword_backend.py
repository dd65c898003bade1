"""
Keyword Backend

In-memory inverted index of morphological tokens. Every indexed token keeps
its surface form, lemma and reading together with a reference to the chunk
it came from. Chunk text itself is not retained: snippets are read back from
the source file on demand.

Scoring is ``min(1, matched_tokens / 10)`` per chunk.
"""

import dataclasses
import re
import threading
from collections import OrderedDict, defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..logging_config import configure_logger_for_debug_trace
from ..models import Chunk, FileCategory, RetrievalResult
from ..search_exceptions import NotInitializedError
from .file_reader import FileReader, read_line_range
from .search_backend import SearchBackend, make_snippet, scope_payload
from .tokenizer import INDEXABLE_POS, AnalyzedToken, Tokenizer

logger = configure_logger_for_debug_trace(__name__)

_NON_LEXICAL = re.compile(r'^[\d\s\W_]+$')

MATCHES_FOR_FULL_SCORE = 10


@dataclass
class _TokenEntry:
    surface: str
    lemma: str
    reading: Optional[str]
    pos: str
    offset: int
    chunk_id: str


class KeywordBackend(SearchBackend):
    """
    Morphological keyword search over one project's chunks.

    ::: This is-in-layer Service-Layer.
    ::: This is a repository.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    Attributes:
        min_token_length: Tokens shorter than this are not indexed
        snippet_length: Maximum snippet length in characters
    """

    name = "keyword"

    def __init__(
        self,
        tokenizer: Tokenizer,
        file_reader: FileReader,
        min_token_length: int = 2,
        snippet_length: int = 120,
    ):
        self.tokenizer = tokenizer
        self.file_reader = file_reader
        self.min_token_length = min_token_length
        self.snippet_length = snippet_length

        self._lock = threading.RLock()
        self._initialized = False
        self._next_entry_id = 0
        self._entries: Dict[int, _TokenEntry] = {}
        self._by_surface: Dict[str, Set[int]] = defaultdict(set)
        self._by_lemma: Dict[str, Set[int]] = defaultdict(set)
        self._by_reading: Dict[str, Set[int]] = defaultdict(set)
        # chunk id -> chunk metadata (content stripped)
        self._chunks: Dict[str, Chunk] = {}
        self._entries_by_chunk: Dict[str, Set[int]] = defaultdict(set)
        self._chunks_by_file: Dict[Tuple[str, str], Set[str]] = defaultdict(set)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def initialize(self) -> None:
        with self._lock:
            if self._initialized:
                return
            self._initialized = True
            logger.debug("Keyword index initialized")

    def is_ready(self) -> bool:
        return self._initialized

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("Keyword index is not initialized; call initialize() first")

    def dispose(self) -> None:
        with self._lock:
            self.clear()
            self._initialized = False

    def clear(self) -> None:
        """Drop every indexed token."""
        with self._lock:
            self._entries.clear()
            self._by_surface.clear()
            self._by_lemma.clear()
            self._by_reading.clear()
            self._chunks.clear()
            self._entries_by_chunk.clear()
            self._chunks_by_file.clear()

    # =========================================================================
    # Indexing
    # =========================================================================

    def add(self, chunks: List[Chunk]) -> int:
        """
        Tokenize and index chunks.

        A chunk whose tokenization fails is logged and skipped; the rest of
        the batch is still indexed.

        Returns:
            Number of chunks indexed
        """
        self._require_initialized()

        indexed = 0
        for chunk in chunks:
            try:
                tokens = self._lexical_tokens(self.tokenizer.analyze(chunk.content))
            except Exception as e:
                logger.warning(f"Tokenizer failed for chunk {chunk.id}: {e}")
                continue

            with self._lock:
                self._add_tokens(chunk, tokens)
            indexed += 1

        logger.debug(f"Keyword index: added {indexed}/{len(chunks)} chunks")
        return indexed

    def _add_tokens(self, chunk: Chunk, tokens: List[AnalyzedToken]) -> None:
        if chunk.id in self._chunks:
            self._remove_chunk(chunk.id)

        self._chunks[chunk.id] = dataclasses.replace(chunk, content="")
        self._chunks_by_file[(chunk.project_id, chunk.path)].add(chunk.id)

        for token in tokens:
            entry_id = self._next_entry_id
            self._next_entry_id += 1
            self._entries[entry_id] = _TokenEntry(
                surface=token.surface,
                lemma=token.lemma,
                reading=token.reading,
                pos=token.pos,
                offset=token.offset,
                chunk_id=chunk.id,
            )
            self._entries_by_chunk[chunk.id].add(entry_id)
            self._by_surface[self._key(token.surface)].add(entry_id)
            self._by_lemma[self._key(token.lemma)].add(entry_id)
            if token.reading:
                self._by_reading[self._key(token.reading)].add(entry_id)

    def remove_file(self, path: str, project_id: str) -> None:
        """Remove all tokens of one file. Unknown paths are ignored."""
        self._require_initialized()
        with self._lock:
            chunk_ids = self._chunks_by_file.pop((project_id, path), set())
            for chunk_id in chunk_ids:
                self._remove_chunk(chunk_id)
        if chunk_ids:
            logger.debug(f"Keyword index: removed {len(chunk_ids)} chunks of {project_id}/{path}")

    def remove_project(self, project_id: str) -> None:
        self._require_initialized()
        with self._lock:
            keys = [key for key in self._chunks_by_file if key[0] == project_id]
            for key in keys:
                for chunk_id in self._chunks_by_file.pop(key):
                    self._remove_chunk(chunk_id)

    def _remove_chunk(self, chunk_id: str) -> None:
        for entry_id in self._entries_by_chunk.pop(chunk_id, set()):
            entry = self._entries.pop(entry_id)
            self._discard(self._by_surface, self._key(entry.surface), entry_id)
            self._discard(self._by_lemma, self._key(entry.lemma), entry_id)
            if entry.reading:
                self._discard(self._by_reading, self._key(entry.reading), entry_id)
        self._chunks.pop(chunk_id, None)

    @staticmethod
    def _discard(index: Dict[str, Set[int]], key: str, entry_id: int) -> None:
        ids = index.get(key)
        if ids is None:
            return
        ids.discard(entry_id)
        if not ids:
            del index[key]

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
        Search the project's chunks.

        Query tokens are matched by surface, lemma and reading. When the
        query yields no indexable token the raw query is matched as a
        substring of indexed surfaces instead.
        """
        self._require_initialized()
        if k <= 0 or not query.strip():
            return []

        try:
            query_tokens = self._lexical_tokens(self.tokenizer.analyze(query))
        except Exception as e:
            logger.warning(f"Tokenizer failed for query {query!r}: {e}")
            query_tokens = []

        with self._lock:
            if query_tokens:
                entry_ids = self._lookup_tokens(query_tokens)
            else:
                entry_ids = self._search_direct(query)
            ranked = self._rank_chunks(entry_ids, project_id, category)[:k]
            hits = [(self._chunks[chunk_id], count) for chunk_id, count in ranked]

        return [self._to_result(chunk, count, query) for chunk, count in hits]

    def _lookup_tokens(self, tokens: List[AnalyzedToken]) -> Set[int]:
        entry_ids: Set[int] = set()
        for token in tokens:
            for index, value in (
                (self._by_surface, token.surface),
                (self._by_lemma, token.lemma),
                (self._by_reading, token.reading),
            ):
                if value:
                    entry_ids |= index.get(self._key(value), set())
        return entry_ids

    def _search_direct(self, query: str) -> Set[int]:
        """Substring match of the raw query against indexed surface forms."""
        needle = self._key(query.strip())
        entry_ids: Set[int] = set()
        for surface, ids in self._by_surface.items():
            if needle in surface:
                entry_ids |= ids
        return entry_ids

    def _rank_chunks(
        self,
        entry_ids: Iterable[int],
        project_id: str,
        category: Optional[FileCategory],
    ) -> List[Tuple[str, int]]:
        """Group matched entries by chunk, keeping the requested project only."""
        counts: "OrderedDict[str, int]" = OrderedDict()
        for entry_id in sorted(entry_ids):
            chunk_id = self._entries[entry_id].chunk_id
            chunk = self._chunks[chunk_id]
            if chunk.project_id != project_id:
                continue
            if category is not None and chunk.category != category:
                continue
            counts[chunk_id] = counts.get(chunk_id, 0) + 1

        # sorted() is stable, so ties keep first-match order
        return sorted(counts.items(), key=lambda item: -self._score(item[1]))

    @staticmethod
    def _score(match_count: int) -> float:
        return min(1.0, match_count / MATCHES_FOR_FULL_SCORE)

    def _to_result(self, chunk: Chunk, match_count: int, query: str) -> RetrievalResult:
        try:
            text = read_line_range(self.file_reader, chunk.path, chunk.start_line, chunk.end_line)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Could not read {chunk.path} for snippet: {e}")
            text = ""

        payload = scope_payload(chunk)
        payload["matched_tokens"] = match_count
        return RetrievalResult(
            id=chunk.id,
            score=self._score(match_count),
            snippet=make_snippet(text, query, self.snippet_length),
            payload=payload,
            backend=self.name,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _lexical_tokens(self, tokens: List[AnalyzedToken]) -> List[AnalyzedToken]:
        """Keep tokens that are long enough and carry lexical content."""
        return [
            token for token in tokens
            if len(token.surface) >= self.min_token_length
            and token.pos in INDEXABLE_POS
            and not _NON_LEXICAL.match(token.surface)
        ]

    @staticmethod
    def _key(value: str) -> str:
        return value.casefold()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "backend": self.name,
                "initialized": self._initialized,
                "chunks": len(self._chunks),
                "tokens": len(self._entries),
                "files": len(self._chunks_by_file),
                "distinct_terms": len(self._by_surface),
            }
