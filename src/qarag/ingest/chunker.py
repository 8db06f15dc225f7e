"""Boundary-aware chunker for uploaded document text.

Strategy:
- Detect section headings (Markdown ``#``, numbered ``2.1 Checkout`` style,
  short ALL-CAPS lines). Adjacent small sections are packed together while
  they fit in one chunk; a chunk never starts in one oversized section and ends
  in another.
- Inside a span that is too long, pick the split point nearest the size
  limit by priority: paragraph break → sentence end → newline → word
  boundary → hard cut.
- Consecutive chunks of one span overlap by ``overlap`` characters, clamped
  to 10-20 % of ``chunk_size``.

Sizes are in characters. The chunker is a pure function of its input and
parameters: same text in, same boundaries out.
"""

from __future__ import annotations

import re

from qarag.errors import EmptyDocumentError
from qarag.models import Chunk

_MD_HEADING_RE = re.compile(r"^#{1,6}[ \t]+\S.*$", re.MULTILINE)
_NUMBERED_HEADING_RE = re.compile(r"^\d+(?:\.\d+)*\.?[ \t]+[A-Z][^.!?:\n]{0,60}$", re.MULTILINE)
_CAPS_HEADING_RE = re.compile(r"^[A-Z][A-Z0-9 &/\-]{2,60}$", re.MULTILINE)
_SENTENCE_END_RE = re.compile(r"[.!?](?=\s)")

# How far back from the size limit a natural boundary is searched for.
_BOUNDARY_WINDOW = 200

_MIN_CHUNK_SIZE = 20


class Chunker:
    """Split raw document text into overlapping, boundary-aware chunks."""

    def __init__(self, chunk_size: int = 800, overlap: int = 100) -> None:
        if chunk_size < _MIN_CHUNK_SIZE:
            raise ValueError(f"chunk_size must be >= {_MIN_CHUNK_SIZE}")
        if overlap < 0:
            raise ValueError("overlap must be >= 0")
        self.chunk_size = chunk_size
        low, high = int(chunk_size * 0.10), int(chunk_size * 0.20)
        self.overlap = min(max(overlap, low), high)

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    def chunk(self, project_id: str, document_id: str, text: str) -> list[Chunk]:
        """Split *text* into ordered Chunks.

        Raises:
            EmptyDocumentError: If *text* is empty or whitespace only.
        """
        if not text or not text.strip():
            raise EmptyDocumentError(f"Document '{document_id}' has no text content.")

        sections = detect_sections(text)
        spans = self._pack_sections(sections)

        chunks: list[Chunk] = []
        for start, end in spans:
            for s, e in self._split_span(text, start, end):
                ordinal = len(chunks)
                chunks.append(
                    Chunk(
                        id=f"{document_id}#{ordinal}",
                        project_id=project_id,
                        document_id=document_id,
                        text=text[s:e],
                        ordinal=ordinal,
                        char_range=(s, e),
                        section=_section_at(sections, s),
                    )
                )
        return chunks

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    def _pack_sections(
        self, sections: list[tuple[int, int, str | None]]
    ) -> list[tuple[int, int]]:
        """Merge adjacent sections while the merged span fits in one chunk."""
        packed: list[tuple[int, int]] = []
        for start, end, _ in sections:
            if packed and end - packed[-1][0] <= self.chunk_size:
                packed[-1] = (packed[-1][0], end)
            else:
                packed.append((start, end))
        return packed

    # ------------------------------------------------------------------
    # Window splitting
    # ------------------------------------------------------------------

    def _split_span(self, text: str, start: int, end: int) -> list[tuple[int, int]]:
        """Return stripped ``(start, end)`` ranges covering text[start:end]."""
        ranges: list[tuple[int, int]] = []
        pos = start
        while pos < end:
            while pos < end and text[pos].isspace():
                pos += 1
            if pos >= end:
                break

            split = end if end - pos <= self.chunk_size else self._find_split(text, pos, end)
            stripped = _strip_range(text, pos, split)
            if stripped is not None:
                ranges.append(stripped)
            if split >= end:
                break

            nxt = _advance_to_word(text, split - self.overlap, split)
            pos = nxt if nxt > pos else split
        return ranges

    def _find_split(self, text: str, pos: int, end: int) -> int:
        target = min(pos + self.chunk_size, end)
        lo = max(pos + self.chunk_size // 2, target - _BOUNDARY_WINDOW)

        para = text.rfind("\n\n", lo, target)
        if para > pos:
            return para

        last_sentence = None
        for m in _SENTENCE_END_RE.finditer(text, lo, min(target + 1, end)):
            if m.end() <= target:
                last_sentence = m
        if last_sentence is not None:
            return last_sentence.end()

        newline = text.rfind("\n", lo, target)
        if newline > pos:
            return newline

        for i in range(target - 1, lo - 1, -1):
            if text[i].isspace():
                return i

        return target


def detect_sections(text: str) -> list[tuple[int, int, str | None]]:
    """Return ``(start, end, title)`` spans, one per detected section.

    Content before the first heading is returned with title None.
    """
    starts = sorted({m.start(): m.group(0) for m in _iter_headings(text)}.items())
    if not starts:
        return [(0, len(text), None)]

    sections: list[tuple[int, int, str | None]] = []
    if text[: starts[0][0]].strip():
        sections.append((0, starts[0][0], None))
    for i, (start, line) in enumerate(starts):
        end = starts[i + 1][0] if i + 1 < len(starts) else len(text)
        sections.append((start, end, _clean_heading(line)))
    return sections


def _iter_headings(text: str):
    yield from _MD_HEADING_RE.finditer(text)
    for regex in (_NUMBERED_HEADING_RE, _CAPS_HEADING_RE):
        for m in regex.finditer(text):
            if _is_isolated(text, m.start(), m.end()):
                yield m


def _is_isolated(text: str, start: int, end: int) -> bool:
    """True when the line is preceded by a blank line (or BOF) and followed
    by a blank line (or EOF). Keeps numbered list items from becoming headings."""
    before = text[:start].split("\n")
    after = text[end:].split("\n")
    blank_before = len(before) < 2 or not before[-2].strip()
    blank_after = len(after) < 2 or not after[1].strip()
    return blank_before and blank_after


def _clean_heading(line: str) -> str:
    return line.strip().lstrip("#").strip()


def _section_at(sections: list[tuple[int, int, str | None]], pos: int) -> str | None:
    """Heading of the last section that starts at or before *pos*."""
    title = None
    for start, _, heading in sections:
        if start > pos:
            break
        if heading:
            title = heading
    return title


def _strip_range(text: str, start: int, end: int) -> tuple[int, int] | None:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    return (start, end) if end > start else None


def _advance_to_word(text: str, pos: int, limit: int) -> int:
    """Move *pos* forward to the start of the next word, not past *limit*."""
    if pos <= 0 or text[pos - 1].isspace():
        return pos
    i = pos
    while i < limit and not text[i].isspace():
        i += 1
    return i if i < limit else pos
