"""
Raw file access for indexing and snippet extraction.

Paths handed to a reader are relative to the projects root and use POSIX
separators, the same form stored in ``Chunk.path``.
"""

from pathlib import Path
from typing import Protocol, runtime_checkable

from ..logging_config import configure_logger_for_debug_trace
from .chunker import split_lines

logger = configure_logger_for_debug_trace(__name__)

FALLBACK_ENCODINGS = ('latin-1', 'cp1252')


@runtime_checkable
class FileReader(Protocol):
    """Reads document text by projects-root-relative path."""

    def read_text(self, relative_path: str) -> str:
        ...


class LocalFileReader:
    """
    Reads files below a base directory, falling back through encodings.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is a reader.
    ::: This is-in-process Main-Process.
    ::: This is stateless.
    """

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)

    def resolve(self, relative_path: str) -> Path:
        return self.base_dir / Path(relative_path)

    def read_text(self, relative_path: str) -> str:
        """
        Read a file as text.

        Raises:
            OSError: If the file cannot be read
            UnicodeDecodeError: If no supported encoding decodes it
        """
        path = self.resolve(relative_path)
        try:
            return path.read_text(encoding='utf-8')
        except UnicodeDecodeError:
            for encoding in FALLBACK_ENCODINGS:
                try:
                    text = path.read_text(encoding=encoding)
                    logger.debug(f"Decoded {relative_path} as {encoding}")
                    return text
                except UnicodeDecodeError:
                    continue
            raise


def read_line_range(reader: FileReader, relative_path: str, start_line: int, end_line: int) -> str:
    """Return lines start_line..end_line (1-based, inclusive) of a file."""
    lines = split_lines(reader.read_text(relative_path))
    return '\n'.join(lines[max(start_line - 1, 0):end_line])
