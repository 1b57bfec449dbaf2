"""
item_pipeline.py

Per-item worker: drives one ProductRecord through the content pipeline and
leaves its ItemState in a terminal status.

Steps:
    1. PDF      — only with pdf_enabled and a real (non "auto_") article number.
                  Every uploaded PDF whose name starts with the article number
                  is read; unreadable files are skipped.
    2. Web      — only when the record has a URL. Failure is soft: log it and
                  carry on with no web content.
    3. Fallback — nothing gathered but a URL exists → one direct AI call with
                  the URL; the service fetches the page itself. Done.
    4. Combined — sanitise, combine (web+pdf > pdf > web) and make one AI call
                  with sourceLabels. Nothing gathered and no URL → failed with
                  "no content extracted".
    5. Tag      — stamp source_labels / source_info on the result.

Progress:
    searching 10 → 25 (PDF) → 35 → 50 (web) → extracting 60 (fallback) | 75
    (combined) → completed 100 | failed 100.

Cancellation:
    The run's cancel event is checked before every network call; when set the
    item is stopped without issuing the call. A call already in flight is
    aborted by task cancellation: CancelledError surfaces at the await, the
    item is marked stopped and the cancellation is re-raised to the
    controller. Neither path ever marks the item failed.

Isolation:
    Every other exception is converted into a failed item here. Nothing but
    CancelledError leaves process_item.
"""

import asyncio
import dataclasses
import logging
import time
from typing import Optional, Sequence

from ai_extractor import extract_product_data
from content_builder import build_combined_content
from errors import ExtractionError, HardCancellation, SoftSourceError
from models import (
    SOURCE_WEB,
    STATUS_COMPLETED,
    STATUS_EXTRACTING,
    STATUS_FAILED,
    STATUS_SEARCHING,
    STATUS_STOPPED,
    ExtractionConfig,
    ExtractionResult,
    ProductRecord,
    SourceInfo,
)
from pdf_processor import PdfExtraction, PdfFile, extract_text_from_pdfs, find_pdfs_for_article
from status_store import StatusStore
from web_fetcher import fetch_web_content

logger = logging.getLogger(__name__)

NO_CONTENT_MESSAGE = "no content extracted"

# ── Progress checkpoints ───────────────────────────────────────────────────────
PROGRESS_STARTED        = 10
PROGRESS_PDF_EXTRACTING = 25
PROGRESS_PDF_DONE       = 35
PROGRESS_WEB            = 50
PROGRESS_AI_DIRECT      = 60
PROGRESS_AI_COMBINED    = 75
PROGRESS_DONE           = 100


def _set(store: StatusStore, item_id: str, **changes) -> None:
    store.update(item_id, lambda state: dataclasses.replace(state, **changes))


def _ensure_running(cancelled: asyncio.Event) -> None:
    if cancelled.is_set():
        raise HardCancellation("run stopped")


# ── Steps ──────────────────────────────────────────────────────────────────────

async def _gather_pdf_text(
    record: ProductRecord,
    config: ExtractionConfig,
    store: StatusStore,
    pdf_files: Sequence[PdfFile],
) -> PdfExtraction:
    if not config.pdf_enabled or not record.has_real_article_number:
        return PdfExtraction()

    matches = find_pdfs_for_article(pdf_files, record.article_number)
    if not matches:
        logger.info(f"[{record.article_number}] No PDF files match, PDF step skipped.")
        return PdfExtraction()

    logger.info(f"[{record.article_number}] Found {len(matches)} PDF file(s).")
    _set(
        store, record.id,
        progress=PROGRESS_PDF_EXTRACTING,
        status_detail=f"Extracting {len(matches)} PDF(s)...",
    )
    extraction = await extract_text_from_pdfs(matches)
    _set(store, record.id, progress=PROGRESS_PDF_DONE)

    if extraction.failed:
        logger.warning(
            f"[{record.article_number}] {len(extraction.failed)} PDF(s) unreadable: "
            f"{', '.join(extraction.failed)}"
        )
    return extraction


async def _gather_web_content(
    record: ProductRecord,
    config: ExtractionConfig,
    store: StatusStore,
    cancelled: asyncio.Event,
) -> str:
    if not config.web_enabled or not record.url:
        return ""

    _ensure_running(cancelled)
    _set(store, record.id, progress=PROGRESS_WEB, status_detail="Analyzing web page...")

    try:
        return await fetch_web_content(record.url, record.article_number)
    except SoftSourceError as exc:
        logger.warning(f"[{record.article_number}] Web content unavailable: {exc}")
        return ""


def _tag(
    result: ExtractionResult,
    labels: tuple[str, ...],
    info: SourceInfo,
) -> ExtractionResult:
    return dataclasses.replace(result, source_labels=labels, source_info=info)


# ── Worker ─────────────────────────────────────────────────────────────────────

async def process_item(
    record: ProductRecord,
    config: ExtractionConfig,
    store: StatusStore,
    pdf_files: Sequence[PdfFile] = (),
    cancelled: Optional[asyncio.Event] = None,
) -> Optional[ExtractionResult]:
    """
    Run one record through the pipeline.

    Returns the ExtractionResult on success, None when the item failed or
    was stopped. The terminal state is always published to store.
    Raises only asyncio.CancelledError (after marking the item stopped).
    """
    cancelled = cancelled or asyncio.Event()
    label = record.article_number or record.id
    start_time = time.monotonic()

    try:
        _ensure_running(cancelled)
        _set(
            store, record.id,
            status=STATUS_SEARCHING,
            progress=PROGRESS_STARTED,
            status_detail="Initializing...",
        )

        pdf = await _gather_pdf_text(record, config, store, pdf_files)
        web_content = await _gather_web_content(record, config, store, cancelled)

        # ── Fallback: let the service fetch the URL itself ─────────────────────
        if not pdf.text and not web_content and config.web_enabled and record.url:
            _ensure_running(cancelled)
            _set(
                store, record.id,
                status=STATUS_EXTRACTING,
                progress=PROGRESS_AI_DIRECT,
                status_detail="AI analyzing URL...",
            )
            result = await extract_product_data(record, config)
            result = _tag(
                result,
                (SOURCE_WEB,),
                SourceInfo(has_web=True, web_url=record.url),
            )
            return _complete(store, record, result, start_time)

        # ── Combined extraction ────────────────────────────────────────────────
        combined = build_combined_content(pdf.text, web_content, record.url)
        if combined is None:
            raise ExtractionError(NO_CONTENT_MESSAGE)

        _ensure_running(cancelled)
        _set(
            store, record.id,
            status=STATUS_EXTRACTING,
            progress=PROGRESS_AI_COMBINED,
            status_detail="AI extracting data...",
        )
        result = await extract_product_data(
            record,
            config,
            pdf_text=combined.pdf_text or None,
            web_content=combined.web_content or None,
            combined_content=combined.combined,
            source_labels=combined.source_labels,
        )
        result = _tag(
            result,
            combined.source_labels,
            SourceInfo(
                has_web=bool(combined.web_content),
                has_pdf=bool(combined.pdf_text),
                web_url=record.url,
                pdf_files=pdf.filenames,
                pdf_content=combined.pdf_text or None,
                web_content=combined.web_content or None,
            ),
        )
        return _complete(store, record, result, start_time)

    except HardCancellation:
        _stop(store, record)
        return None

    except asyncio.CancelledError:
        _stop(store, record)
        raise

    except ExtractionError as exc:
        logger.warning(f"[{label}] Extraction failed: {exc}")
        _fail(store, record, str(exc))
        return None

    except Exception as exc:
        logger.error(f"[{label}] Unexpected pipeline error: {exc}", exc_info=True)
        _fail(store, record, f"Unexpected error: {exc}")
        return None


# ── Terminal transitions ───────────────────────────────────────────────────────

def _complete(
    store: StatusStore,
    record: ProductRecord,
    result: ExtractionResult,
    start_time: float,
) -> ExtractionResult:
    _set(
        store, record.id,
        status=STATUS_COMPLETED,
        progress=PROGRESS_DONE,
        status_detail="Completed",
        result=result,
    )
    elapsed = time.monotonic() - start_time
    logger.info(
        f"[{record.article_number}] Completed in {elapsed:.2f}s "
        f"({len(result.properties)} properties, sources={list(result.source_labels)})."
    )
    return result


def _fail(store: StatusStore, record: ProductRecord, message: str) -> None:
    _set(
        store, record.id,
        status=STATUS_FAILED,
        progress=PROGRESS_DONE,
        status_detail="Failed",
        error=message,
    )


def _stop(store: StatusStore, record: ProductRecord) -> None:
    logger.info(f"[{record.article_number}] Stopped by user.")
    _set(store, record.id, status=STATUS_STOPPED, status_detail="Stopped")
