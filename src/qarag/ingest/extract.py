"""Raw text extraction for uploaded files.

Dispatch by extension:
  .pdf                                → pypdf, page text joined by blank lines
  .txt .md .markdown .rst .text .log  → read as UTF-8
"""

from __future__ import annotations

from pathlib import Path

import pypdf

_PDF_EXTS = {".pdf"}
_TEXT_EXTS = {".txt", ".md", ".markdown", ".rst", ".text", ".log"}
SUPPORTED_EXTENSIONS = _PDF_EXTS | _TEXT_EXTS


class UnsupportedFileType(ValueError):
    """Raised for files whose extension has no extractor."""


def extract_text(path: Path | str) -> str:
    """Return the plain text content of *path*.

    Raises:
        UnsupportedFileType: If the extension is not supported.
        FileNotFoundError: If *path* does not exist.
    """
    p = Path(path)
    ext = p.suffix.lower()
    if ext not in SUPPORTED_EXTENSIONS:
        raise UnsupportedFileType(f"Unsupported file type: {ext or p.name!r}")
    if not p.exists():
        raise FileNotFoundError(str(p))
    if ext in _PDF_EXTS:
        return _extract_pdf(p)
    return p.read_text(encoding="utf-8", errors="replace")


def _extract_pdf(path: Path) -> str:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text (scanned images) are skipped.
    """
    reader = pypdf.PdfReader(str(path))
    parts: list[str] = []
    for page in reader.pages:
        page_text = (page.extract_text() or "").strip()
        if page_text:
            parts.append(page_text)
    return "\n\n".join(parts)
