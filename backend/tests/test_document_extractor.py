"""Tests for upload text extraction, attachment download and policy ingestion."""

import io

import httpx
import pytest
from docx import Document

from core.errors import ExtractionError
from scripts.ingest_policy import ingest_file
from services.document_extractor import DocumentExtractor, DocumentFetcher, resolve_type

extractor = DocumentExtractor()


@pytest.mark.parametrize("mime,filename,expected", [
    ("application/pdf", None, "pdf"),
    ("text/plain; charset=utf-8", None, "txt"),
    ("application/vnd.openxmlformats-officedocument.wordprocessingml.document", None, "docx"),
    (None, "notes.md", "txt"),
    ("application/octet-stream", "report.PDF", "pdf"),
    ("image/png", "scan.png", None),
])
def test_resolve_type(mime, filename, expected):
    assert resolve_type(mime, filename) == expected


def test_txt_extraction_handles_encodings():
    assert extractor.extract("Zugangsdaten für Büro".encode("utf-8"), "text/plain") == "Zugangsdaten für Büro"
    assert extractor.extract("cafés".encode("cp1252"), "text/plain") == "cafés"


def test_docx_extraction_reads_paragraphs_then_tables():
    doc = Document()
    doc.add_paragraph("Phishing results for Q3")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "Finance"
    table.rows[0].cells[1].text = "40%"
    buffer = io.BytesIO()
    doc.save(buffer)

    text = extractor.extract(buffer.getvalue(), None, "results.docx")
    assert text.index("Phishing results for Q3") < text.index("Finance | 40%")


def test_images_are_rejected():
    with pytest.raises(ExtractionError):
        extractor.extract(b"\x89PNG\r\n", "image/png", "scan.png")


def test_empty_and_corrupt_files_are_rejected():
    with pytest.raises(ExtractionError):
        extractor.extract(b"", "text/plain")
    with pytest.raises(ExtractionError):
        extractor.extract(b"definitely not a pdf", "application/pdf")


def test_fetcher_only_allows_upload_location():
    fetcher = DocumentFetcher("https://files.example.com/uploads/")

    assert fetcher.is_allowed("https://files.example.com/uploads/a/report.pdf")
    assert not fetcher.is_allowed("http://files.example.com/uploads/report.pdf")
    assert not fetcher.is_allowed("https://evil.example.com/uploads/report.pdf")
    assert not fetcher.is_allowed("https://files.example.com/uploads-other/report.pdf")
    assert not DocumentFetcher(None).is_allowed("https://files.example.com/uploads/report.pdf")


@pytest.mark.asyncio
async def test_fetch_returns_content_type_and_name():
    def handler(request):
        assert request.url.path == "/uploads/notes.txt"
        return httpx.Response(200, content=b"hello", headers={"content-type": "text/plain"})

    fetcher = DocumentFetcher("http://uploads.test/uploads", transport=httpx.MockTransport(handler))
    content, mime, filename = await fetcher.fetch("http://uploads.test/uploads/notes.txt")

    assert (content, mime, filename) == (b"hello", "text/plain", "notes.txt")


@pytest.mark.asyncio
async def test_fetch_errors_become_extraction_errors():
    calls = []

    def handler(request):
        calls.append(request.url)
        return httpx.Response(404)

    fetcher = DocumentFetcher("http://uploads.test/uploads", transport=httpx.MockTransport(handler))

    with pytest.raises(ExtractionError):
        await fetcher.fetch("http://uploads.test/uploads/missing.pdf")
    with pytest.raises(ExtractionError):
        await fetcher.fetch("http://elsewhere.test/secret.txt")
    assert len(calls) == 1


def test_ingest_policy_file(tmp_path, empty_policy):
    path = tmp_path / "policy.txt"
    path.write_text("Security Policy\n\nPasswords must be at least 12 characters.\n\nPage 1", encoding="utf-8")

    assert ingest_file(path, empty_policy) == 3
    assert "Passwords must be at least 12 characters." in empty_policy.query_context("password length")
