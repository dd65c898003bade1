"""
Chunking engine for manuscript documents.

Splits one document into bounded, overlapping, addressable chunks:
- Sections (by markdown headings, or one implicit section)
- Paragraphs (blank-line delimited, never split unless oversized)
- Greedy packing of paragraphs up to a token budget, with an overlap
  suffix carried into the next chunk
- Binary-search splitting of single paragraphs that exceed the budget

Chunk ids are content-addressed: ``path::start-end::chunk-ordinal@hash8``.
"""

import hashlib
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..logging_config import configure_logger_for_debug_trace
from ..models import Chunk, FileCategory
from ..search_exceptions import InvalidInputError

logger = configure_logger_for_debug_trace(__name__)

HEADING_PATTERN = re.compile(r'^(#{1,6})\s+(.+)$')
DEFAULT_SECTION_TITLE = "Document"

# (first line index, last line index, content); indexes are 0-based and inclusive
_Piece = Tuple[int, int, str]


def split_lines(text: str) -> List[str]:
    """
    Split text into lines the way chunk line numbers are counted.

    CRLF is normalized and a single trailing empty element produced by a
    final newline is dropped, so ``"a\\nb\\n"`` has two lines.
    """
    if not text:
        return []
    lines = text.replace('\r\n', '\n').split('\n')
    if lines[-1] == "":
        lines.pop()
    return lines


class TokenCounter:
    """
    Fast token estimate based on character count.

    ::: This is-in-layer Utility-Layer.
    ::: This is a helper.
    ::: This is stateless.
    """

    def __init__(self, chars_per_token: float = 2.5):
        if chars_per_token <= 0:
            raise InvalidInputError("chars_per_token must be positive")
        self.chars_per_token = chars_per_token

    def count(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)


@dataclass
class _Section:
    title: str
    level: int
    start: int  # inclusive
    end: int    # exclusive


@dataclass
class _Paragraph:
    start: int  # inclusive, may include leading blank lines of the section
    end: int    # exclusive, includes trailing blank lines


class ChunkingEngine:
    """
    Splits documents into chunks bounded by an estimated token budget.

    ::: This is-in-layer Service-Layer.
    ::: This is a parser.
    ::: This is-in-process Main-Process.
    ::: This is stateless.

    The engine is pure: the same (text, path, max_tokens, overlap_ratio)
    always yields the same chunk ids and boundaries.
    """

    def __init__(self, token_counter: Optional[TokenCounter] = None):
        self.token_counter = token_counter or TokenCounter()

    def chunk(
        self,
        text: str,
        path: str,
        max_tokens: int,
        overlap_ratio: float,
        project_id: str = "",
        category: Optional[FileCategory] = None,
    ) -> List[Chunk]:
        """
        Chunk one document.

        Args:
            text: Full document text
            path: Path used in chunk ids (relative to the projects root)
            max_tokens: Maximum estimated tokens per chunk
            overlap_ratio: Fraction of a closed chunk carried into the next one
            project_id: Owning project, copied onto every chunk
            category: File category, copied onto every chunk

        Returns:
            Ordered list of chunks; empty for empty or blank input

        Raises:
            InvalidInputError: If the budget or overlap ratio is out of range
        """
        if max_tokens < 1:
            raise InvalidInputError(f"max_tokens must be >= 1, got {max_tokens}")
        if not 0.0 <= overlap_ratio < 1.0:
            raise InvalidInputError(f"overlap_ratio must be in [0, 1), got {overlap_ratio}")

        lines = split_lines(text)
        if not lines:
            return []

        chunks: List[Chunk] = []
        for section in self._extract_sections(lines):
            pieces = self._chunk_section(lines, section, max_tokens, overlap_ratio)
            for ordinal, (start, end, content) in enumerate(pieces):
                chunks.append(self._make_chunk(
                    path, section, ordinal, start, end, content, project_id, category
                ))

        logger.debug(f"Chunked {path}: {len(lines)} lines -> {len(chunks)} chunks")
        return chunks

    def _extract_sections(self, lines: List[str]) -> List[_Section]:
        """Split lines at heading boundaries; text before the first heading is its own section."""
        sections = []
        title, level, start = DEFAULT_SECTION_TITLE, 0, 0

        for i, line in enumerate(lines):
            match = HEADING_PATTERN.match(line)
            if not match:
                continue
            if i > start:
                sections.append(_Section(title, level, start, i))
            title, level, start = match.group(2).strip(), len(match.group(1)), i

        sections.append(_Section(title, level, start, len(lines)))
        return sections

    def _extract_paragraphs(self, lines: List[str], section: _Section) -> List[_Paragraph]:
        """
        Split a section into paragraphs.

        Each paragraph owns the blank lines that follow it, and the first one
        also owns any leading blank lines, so paragraphs tile the section.
        A blank-only section has no paragraphs.
        """
        run_starts = [
            i for i in range(section.start, section.end)
            if lines[i].strip() and (i == section.start or not lines[i - 1].strip())
        ]
        if not run_starts:
            return []

        bounds = [section.start] + run_starts[1:] + [section.end]
        return [_Paragraph(bounds[k], bounds[k + 1]) for k in range(len(run_starts))]

    def _chunk_section(
        self,
        lines: List[str],
        section: _Section,
        max_tokens: int,
        overlap_ratio: float,
    ) -> List[_Piece]:
        paragraphs = self._extract_paragraphs(lines, section)
        if not paragraphs:
            return []

        section_text = self._join(lines, section.start, section.end)
        if len(paragraphs) <= 1 and self.token_counter.count(section_text) <= max_tokens:
            return [(section.start, section.end - 1, section_text)]

        return self._pack_paragraphs(lines, paragraphs, max_tokens, overlap_ratio)

    def _pack_paragraphs(
        self,
        lines: List[str],
        paragraphs: List[_Paragraph],
        max_tokens: int,
        overlap_ratio: float,
    ) -> List[_Piece]:
        """Greedily pack paragraphs into contiguous line ranges within the budget."""
        count = self.token_counter.count
        pieces: List[_Piece] = []
        buf_start: Optional[int] = None
        buf_end = 0

        for para in paragraphs:
            if count(self._join(lines, para.start, para.end)) > max_tokens:
                if buf_start is not None:
                    pieces.append(self._piece(lines, buf_start, buf_end))
                    buf_start = None
                pieces.extend(self._split_oversized(lines, para, max_tokens))
                continue

            if buf_start is None:
                buf_start, buf_end = para.start, para.end
                continue

            if count(self._join(lines, buf_start, para.end)) <= max_tokens:
                buf_end = para.end
                continue

            pieces.append(self._piece(lines, buf_start, buf_end))
            overlap_start = self._overlap_start(lines, buf_start, buf_end, overlap_ratio)
            if (overlap_start is not None
                    and count(self._join(lines, overlap_start, para.end)) <= max_tokens):
                buf_start = overlap_start
            else:
                buf_start = para.start
            buf_end = para.end

        if buf_start is not None:
            pieces.append(self._piece(lines, buf_start, buf_end))
        return pieces

    def _overlap_start(
        self,
        lines: List[str],
        start: int,
        end: int,
        overlap_ratio: float,
    ) -> Optional[int]:
        """
        Line index where the overlap suffix of lines[start:end] begins.

        The suffix is the last floor(len * ratio) characters, snapped back to
        the start of the line that contains the cut.
        """
        if overlap_ratio <= 0:
            return None
        content = self._join(lines, start, end)
        overlap_size = int(len(content) * overlap_ratio)
        if overlap_size <= 0:
            return None

        cut = len(content) - overlap_size
        offset = 0
        for i in range(start, end):
            line_end = offset + len(lines[i])
            if cut <= line_end:
                return i
            offset = line_end + 1
        return end - 1

    def _split_oversized(
        self,
        lines: List[str],
        para: _Paragraph,
        max_tokens: int,
    ) -> List[_Piece]:
        """
        Split a paragraph that alone exceeds the budget.

        Each piece is the longest prefix of the remaining text whose estimate
        fits, found by binary search; at least one character is consumed per
        step. The first and last pieces absorb the paragraph's surrounding
        blank lines into their line ranges.
        """
        count = self.token_counter.count
        first = para.start
        while first < para.end and not lines[first].strip():
            first += 1
        last = para.end - 1
        while last > first and not lines[last].strip():
            last -= 1

        text = self._join(lines, first, last + 1)
        pieces: List[_Piece] = []
        pos = 0
        while pos < len(text):
            remaining = text[pos:]
            if count(remaining) <= max_tokens:
                take = len(remaining)
            else:
                lo, hi = 1, len(remaining)
                while lo < hi:
                    mid = (lo + hi + 1) // 2
                    if count(remaining[:mid]) <= max_tokens:
                        lo = mid
                    else:
                        hi = mid - 1
                take = max(lo, 1)

            piece_start = first + text.count('\n', 0, pos)
            piece_end = first + text.count('\n', 0, pos + take - 1)
            pieces.append((piece_start, piece_end, remaining[:take]))
            pos += take

        if pieces:
            _, end, content = pieces[0]
            pieces[0] = (para.start, end, content)
            start, _, content = pieces[-1]
            pieces[-1] = (start, para.end - 1, content)
        return pieces

    def _piece(self, lines: List[str], start: int, end: int) -> _Piece:
        return (start, end - 1, self._join(lines, start, end))

    @staticmethod
    def _join(lines: List[str], start: int, end: int) -> str:
        return '\n'.join(lines[start:end])

    @staticmethod
    def _make_chunk(
        path: str,
        section: _Section,
        ordinal: int,
        start: int,
        end: int,
        content: str,
        project_id: str,
        category: Optional[FileCategory],
    ) -> Chunk:
        content_hash = hashlib.md5(content.encode('utf-8')).hexdigest()
        start_line, end_line = start + 1, end + 1
        tags = [f"h{section.level}"] if section.level else []
        return Chunk(
            id=f"{path}::{start_line}-{end_line}::chunk-{ordinal}@{content_hash[:8]}",
            title=section.title,
            content=content,
            path=path,
            start_line=start_line,
            end_line=end_line,
            ordinal=ordinal,
            content_hash=content_hash,
            project_id=project_id,
            category=category,
            tags=tags,
        )
