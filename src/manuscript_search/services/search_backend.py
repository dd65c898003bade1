"""
Shared contract of the keyword and vector retrieval backends.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..models import Chunk, FileCategory, RetrievalResult


class SearchBackend(ABC):
    """
    Retrieval engine over the chunks of one project.

    ::: This is-in-layer Service-Layer.
    ::: This is a repository.
    ::: This is-in-process Main-Process.
    ::: This is stateful.

    Every query and deletion is scoped by project id; implementations must
    never return or remove chunks of another project.
    """

    name = "backend"

    @abstractmethod
    def initialize(self) -> None:
        """Prepare the backend. Safe to call more than once."""

    @abstractmethod
    def is_ready(self) -> bool:
        """True once initialize() completed and dispose() was not called."""

    @abstractmethod
    def add(self, chunks: List[Chunk]) -> int:
        """Index chunks. Returns the number of chunks actually indexed."""

    @abstractmethod
    def remove_file(self, path: str, project_id: str) -> None:
        """Remove every chunk of one file in one project."""

    @abstractmethod
    def remove_project(self, project_id: str) -> None:
        """Remove every chunk of one project."""

    @abstractmethod
    def search(
        self,
        query: str,
        k: int,
        project_id: str,
        category: Optional[FileCategory] = None,
    ) -> List[RetrievalResult]:
        """Return up to k results for the query, best first."""

    @abstractmethod
    def get_stats(self) -> Dict[str, Any]:
        """Backend statistics for status reporting."""

    def dispose(self) -> None:
        """Release resources held by this backend instance."""


def make_snippet(content: str, query: str, max_length: int) -> str:
    """
    Cut a snippet of at most max_length characters out of content.

    The window is centred on the first query word found in the content
    (case-insensitive). Without a hit the leading window is used. Cut edges
    are marked with "...".
    """
    if len(content) <= max_length:
        return content

    lowered = content.lower()
    for word in query.lower().split():
        index = lowered.find(word)
        if index == -1:
            continue
        start = max(0, index - max_length // 2)
        end = min(len(content), start + max_length)
        snippet = content[start:end]
        if start > 0:
            snippet = "..." + snippet
        if end < len(content):
            snippet = snippet + "..."
        return snippet

    return content[:max_length] + "..."


def scope_payload(chunk: Chunk) -> Dict[str, Any]:
    """Payload fields shared by both backends' results."""
    return {
        "path": chunk.path,
        "start_line": chunk.start_line,
        "end_line": chunk.end_line,
        "title": chunk.title,
        "category": chunk.category.value if chunk.category else None,
        "tags": list(chunk.tags),
    }
