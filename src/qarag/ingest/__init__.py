"""qarag ingest pipeline: text extraction and chunking."""

from qarag.ingest.chunker import Chunker, detect_sections
from qarag.ingest.extract import SUPPORTED_EXTENSIONS, UnsupportedFileType, extract_text

__all__ = [
    "Chunker",
    "detect_sections",
    "extract_text",
    "SUPPORTED_EXTENSIONS",
    "UnsupportedFileType",
]
