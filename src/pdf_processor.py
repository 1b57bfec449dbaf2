"""
pdf_processor.py

PDF text extraction for the per-item pipeline.

A run may carry a set of uploaded PDF files (data sheets, manuals). A product
uses every file whose name starts with its article number, case-insensitive:

    article "A-100"  →  a-100.pdf, A-100_Datasheet.pdf, A-100 manual.PDF

Rows without a real article number (synthetic "auto_<n>") never match.

Text extraction (pdfplumber) is CPU-bound and runs in asyncio.to_thread.
A file that cannot be read is logged and left out; it never fails the item.
"""

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import pdfplumber

from config import SYNTHETIC_ARTICLE_PREFIX
from errors import SoftSourceError

logger = logging.getLogger(__name__)

PDF_SEPARATOR = "\n\n[PDF CONTENT SEPARATOR]\n\n"


@dataclass(frozen=True)
class PdfFile:
    filename: str
    data: bytes


@dataclass
class PdfExtraction:
    text: str = ""
    filenames: tuple[str, ...] = ()   # files that actually contributed text
    failed: tuple[str, ...] = ()


# ── Matching ───────────────────────────────────────────────────────────────────

def find_pdfs_for_article(
    pdf_files: Iterable[PdfFile],
    article_number: Optional[str],
) -> list[PdfFile]:
    """Return PDFs whose filename starts with article_number (case-insensitive)."""
    prefix = (article_number or "").strip()
    if not prefix or prefix.startswith(SYNTHETIC_ARTICLE_PREFIX):
        return []

    prefix = prefix.lower()
    return [
        f for f in pdf_files
        if f.filename.lower().endswith(".pdf") and f.filename.lower().startswith(prefix)
    ]


# ── Extraction ─────────────────────────────────────────────────────────────────

def extract_pdf_text(pdf_file: PdfFile) -> str:
    """
    Extract the text of every page of one PDF.

    Raises:
        SoftSourceError if the file cannot be opened or is encrypted.
    """
    page_texts: list[str] = []
    try:
        with pdfplumber.open(io.BytesIO(pdf_file.data)) as pdf:
            if pdf.metadata and pdf.metadata.get("Encrypt"):
                raise SoftSourceError("pdf", f"{pdf_file.filename} is password protected")

            for page_number, page in enumerate(pdf.pages, start=1):
                try:
                    text = page.extract_text() or ""
                except Exception as exc:
                    logger.warning(
                        f"[{pdf_file.filename}] pdfplumber failed on page {page_number}: {exc}"
                    )
                    continue
                if text.strip():
                    page_texts.append(text.strip())
    except SoftSourceError:
        raise
    except Exception as exc:
        raise SoftSourceError("pdf", f"{pdf_file.filename} could not be read: {exc}") from exc

    return "\n\n".join(page_texts)


async def extract_text_from_pdfs(pdf_files: list[PdfFile]) -> PdfExtraction:
    """
    Extract and concatenate the text of several PDFs.

    Each file's text is headed "[PDF i: filename]" (i counts all matched
    files, 1-based) and files are joined with the PDF content separator.
    Files that fail or contain no text are omitted.
    """
    parts: list[str] = []
    used: list[str] = []
    failed: list[str] = []

    for index, pdf_file in enumerate(pdf_files, start=1):
        try:
            text = await asyncio.to_thread(extract_pdf_text, pdf_file)
        except SoftSourceError as exc:
            logger.warning(f"PDF extraction skipped: {exc}")
            failed.append(pdf_file.filename)
            continue

        if text:
            parts.append(f"[PDF {index}: {pdf_file.filename}]\n{text}")
            used.append(pdf_file.filename)

    return PdfExtraction(
        text=PDF_SEPARATOR.join(parts),
        filenames=tuple(used),
        failed=tuple(failed),
    )
