"""Tests for raw text extraction."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from qarag.ingest.extract import SUPPORTED_EXTENSIONS, UnsupportedFileType, extract_text


def _mock_reader(page_texts: list[str | None]):
    pages = []
    for text in page_texts:
        page = MagicMock()
        page.extract_text.return_value = text
        pages.append(page)
    reader = MagicMock()
    reader.pages = pages
    return reader


def test_supported_extensions():
    assert {".pdf", ".md", ".txt"} <= SUPPORTED_EXTENSIONS


def test_markdown_read_as_utf8(tmp_path):
    f = tmp_path / "login.md"
    f.write_text("# Login\n\nCafé users sign in with email.", encoding="utf-8")
    assert extract_text(f) == "# Login\n\nCafé users sign in with email."


def test_extension_is_case_insensitive(tmp_path):
    f = tmp_path / "NOTES.TXT"
    f.write_text("plain notes", encoding="utf-8")
    assert extract_text(str(f)) == "plain notes"


def test_unsupported_extension_raises(tmp_path):
    f = tmp_path / "image.png"
    f.write_bytes(b"\x89PNG")
    with pytest.raises(UnsupportedFileType, match=".png"):
        extract_text(f)


def test_unsupported_is_value_error(tmp_path):
    with pytest.raises(ValueError):
        extract_text(tmp_path / "archive.zip")


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        extract_text(tmp_path / "missing.md")


def test_pdf_pages_joined_with_blank_line(tmp_path):
    f = tmp_path / "spec.pdf"
    f.write_bytes(b"%PDF-1.4")
    with patch("qarag.ingest.extract.pypdf") as mock_pypdf:
        mock_pypdf.PdfReader.return_value = _mock_reader(["Page one.", "Page two."])
        text = extract_text(f)
    assert text == "Page one.\n\nPage two."


def test_pdf_skips_pages_without_text(tmp_path):
    f = tmp_path / "scan.pdf"
    f.write_bytes(b"%PDF-1.4")
    with patch("qarag.ingest.extract.pypdf") as mock_pypdf:
        mock_pypdf.PdfReader.return_value = _mock_reader([None, "  ", "Only page."])
        text = extract_text(f)
    assert text == "Only page."
