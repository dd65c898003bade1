"""
Data models for Manuscript Search

Value objects for chunks, retrieval results and file-change events.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ============================================================================
# Enums
# ============================================================================

class FileCategory(str, Enum):
    """Role of a file inside a project"""
    CONTENT = "content"      # Manuscript text
    SETTINGS = "settings"    # Notes, character sheets, world building


class FileEventType(str, Enum):
    """Kind of filesystem change"""
    ADD = "add"
    CHANGE = "change"
    UNLINK = "unlink"


class BootstrapMode(str, Enum):
    """Connection state of the optional vector store"""
    UNCONFIGURED = "unconfigured"          # Bootstrap has not run yet
    EXPLICIT = "explicit"                  # Configured URL answered
    AUTO_PROVISIONED = "auto_provisioned"  # Managed container answered
    DEGRADED = "degraded"                  # Keyword-only fallback


# ============================================================================
# Core Data Models
# ============================================================================

@dataclass
class Chunk:
    """
    Minimal retrievable unit of a document.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.

    The id has the form ``path::start-end::chunk-ordinal@hash8`` so that
    unchanged content always reproduces the same id. ``start`` and ``end``
    are the 1-based line numbers also stored in start_line/end_line, so ids
    are not interchangeable with indexes that number lines from 0.
    """
    id: str
    title: str
    content: str
    path: str
    start_line: int  # 1-based, inclusive
    end_line: int    # 1-based, inclusive
    ordinal: int
    content_hash: str
    project_id: str = ""
    category: Optional[FileCategory] = None
    tags: List[str] = field(default_factory=list)

    @property
    def composite_text(self) -> str:
        """Title and body, the text that gets embedded."""
        return f"{self.title}\n{self.content}"


class RetrievalResult(BaseModel):
    """Single search hit returned by either backend"""
    id: str
    score: float = Field(..., ge=0.0, le=1.0)
    snippet: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    backend: str = "keyword"

    @property
    def path(self) -> Optional[str]:
        return self.payload.get("path")


@dataclass
class FileChangeEvent:
    """
    Debounced, project-scoped filesystem change.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    type: FileEventType
    path: str
    project_id: str


@dataclass
class IndexSummary:
    """
    Outcome of a full project index build.

    ::: This is-in-layer Domain-Layer.
    ::: This is a value-object.
    """
    project_id: str
    files_indexed: int = 0
    chunks_indexed: int = 0
    failed_files: List[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.time)
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "files_indexed": self.files_indexed,
            "chunks_indexed": self.chunks_indexed,
            "failed_files": list(self.failed_files),
            "elapsed": round(self.elapsed, 3),
        }
