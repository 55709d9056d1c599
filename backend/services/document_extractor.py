"""
Document Extraction Service
Turns uploaded PDF, DOCX and TXT bytes into plain text for the answering
pipeline. Images are not OCR'd; they are rejected like any other unsupported
type.
"""
from __future__ import annotations

import io
import mimetypes
import os
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

import httpx
import PyPDF2
from docx import Document as DocxDocument

from core.errors import ExtractionError
from core.logging_config import get_logger

logger = get_logger(__name__)

# Maximum characters kept from one document
MAX_CONTENT_CHARS = 100000

MAX_DOWNLOAD_BYTES = 15 * 1024 * 1024

MIME_ALIASES = {
    "application/pdf": "pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
    "application/msword": "docx",
    "text/plain": "txt",
    "text/markdown": "txt",
}


def extract_text_from_pdf(file_bytes: bytes) -> str:
    """Extract text from PDF file."""
    try:
        pdf_reader = PyPDF2.PdfReader(io.BytesIO(file_bytes))
        text_parts = []

        for page in pdf_reader.pages:
            try:
                text = page.extract_text()
                if text:
                    text_parts.append(text)
            except Exception as e:  # noqa: BLE001
                logger.warning("Failed to extract text from PDF page", extra={"error": str(e)})
                continue

        return "\n\n".join(text_parts)[:MAX_CONTENT_CHARS]

    except Exception as e:  # noqa: BLE001
        logger.error("Failed to extract PDF", extra={"error": str(e)})
        raise ExtractionError(f"Cannot read PDF file: {e}") from e


def extract_text_from_docx(file_bytes: bytes) -> str:
    """Extract text from DOCX file, paragraphs first, then tables."""
    try:
        doc = DocxDocument(io.BytesIO(file_bytes))
        text_parts = [p.text for p in doc.paragraphs if p.text.strip()]

        for table in doc.tables:
            for row in table.rows:
                row_text = " | ".join(cell.text.strip() for cell in row.cells if cell.text.strip())
                if row_text:
                    text_parts.append(row_text)

        return "\n\n".join(text_parts)[:MAX_CONTENT_CHARS]

    except Exception as e:  # noqa: BLE001
        logger.error("Failed to extract DOCX", extra={"error": str(e)})
        raise ExtractionError(f"Cannot read DOCX file: {e}") from e


def extract_text_from_txt(file_bytes: bytes) -> str:
    # latin-1 decodes anything, so it goes last
    for encoding in ("utf-8", "utf-16", "cp1252", "latin-1"):
        try:
            return file_bytes.decode(encoding)[:MAX_CONTENT_CHARS]
        except UnicodeDecodeError:
            continue
    raise ExtractionError("Cannot determine text file encoding")


def resolve_type(mime: Optional[str], filename: Optional[str] = None) -> Optional[str]:
    """Map a MIME type or file name to one of pdf/docx/txt."""
    if mime:
        base = mime.split(";", 1)[0].strip().lower()
        if base in MIME_ALIASES:
            return MIME_ALIASES[base]
        if base in ("pdf", "docx", "doc", "txt"):
            return "docx" if base == "doc" else base
    if filename:
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        if ext == "doc":
            return "docx"
        if ext in ("pdf", "docx", "txt", "md"):
            return "txt" if ext == "md" else ext
    return None


class DocumentExtractor:
    def __init__(self) -> None:
        self._extractors: Dict[str, Callable[[bytes], str]] = {
            "pdf": extract_text_from_pdf,
            "docx": extract_text_from_docx,
            "txt": extract_text_from_txt,
        }

    def extract(self, file_bytes: bytes, mime: Optional[str], filename: Optional[str] = None) -> str:
        file_type = resolve_type(mime, filename)
        extractor = self._extractors.get(file_type or "")
        if extractor is None:
            raise ExtractionError(f"Unsupported file type: {mime or filename}. Only PDF, DOCX and TXT are supported")
        if not file_bytes:
            raise ExtractionError("Uploaded file is empty")
        text = extractor(file_bytes)
        logger.info("Document extracted", extra={"file_type": file_type, "chars": len(text)})
        return text


class DocumentFetcher:
    """Downloads attachments referenced by `fileUrl`, only from the upload host."""

    def __init__(
        self,
        upload_base_url: Optional[str],
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.upload_base_url = (upload_base_url or "").rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_allowed(self, url: str) -> bool:
        if not self.upload_base_url:
            return False
        base = urlparse(self.upload_base_url)
        target = urlparse(url)
        if (target.scheme, target.netloc) != (base.scheme, base.netloc):
            return False
        base_path = base.path.rstrip("/")
        return target.path == base_path or target.path.startswith(base_path + "/")

    async def fetch(self, url: str) -> Tuple[bytes, Optional[str], str]:
        """Return (content, mime, filename); raises ExtractionError."""
        if not self.is_allowed(url):
            raise ExtractionError(f"File URL is outside the upload location: {url}")
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Attachment download failed", extra={"url": url, "error": str(exc)})
            raise ExtractionError(f"Cannot download attachment: {exc}") from exc

        content = response.content
        if len(content) > MAX_DOWNLOAD_BYTES:
            raise ExtractionError("Attachment is larger than 15MB")
        filename = os.path.basename(urlparse(url).path)
        mime = response.headers.get("content-type") or mimetypes.guess_type(filename)[0]
        return content, mime, filename
