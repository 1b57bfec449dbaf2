"""
ai_extractor.py

Async client for the AI extraction service.

Pipeline position:
    PDF text / web content → combined payload → AI  (this module handles the AI step only)

Two call shapes, same endpoint:
    direct    — URL + product identity only; the service fetches the page itself.
                Used as the fallback when no local content could be gathered.
    combined  — sanitised pdfText / webContent / combinedContent plus sourceLabels
                so the model can attribute each value to its source.

All calls are async and never block the event loop waiting on network I/O.
Concurrency is capped by a module-level asyncio.Semaphore (AI_CONCURRENCY)
shared by every run in the process.

Public API:
    build_extraction_request(record, config, ...) → dict
    parse_extraction_response(data, record)        → ExtractionResult
    extract_product_data(record, config, ...)      → async ExtractionResult
        Raises ExtractionError on terminal failure.
"""

import asyncio
import logging
import random
from typing import Optional, Sequence

import httpx

import service_client
from config import AI_CONCURRENCY, AI_MAX_RETRIES, AI_READ_TIMEOUT, EXTRACT_ENDPOINT, OPENAI_API_KEY
from errors import ExtractionError
from models import (
    ExtractionConfig,
    ExtractionResult,
    ProductRecord,
    PropertyValue,
    SourceRef,
)

logger = logging.getLogger(__name__)

# ── Concurrency limiter ────────────────────────────────────────────────────────
# Lazy-initialised so it is created inside a running event loop.
_ai_semaphore: Optional[asyncio.Semaphore] = None


def _get_semaphore() -> asyncio.Semaphore:
    global _ai_semaphore
    if _ai_semaphore is None:
        _ai_semaphore = asyncio.Semaphore(AI_CONCURRENCY)
    return _ai_semaphore


# Status codes worth retrying; any other 4xx is a request problem and won't improve.
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}


# ── Request / response mapping ─────────────────────────────────────────────────

def build_extraction_request(
    record: ProductRecord,
    config: ExtractionConfig,
    pdf_text: Optional[str] = None,
    web_content: Optional[str] = None,
    combined_content: Optional[str] = None,
    source_labels: Sequence[str] = (),
) -> dict:
    """
    Build the JSON body for the extraction endpoint.

    Optional content keys are omitted entirely when empty so the direct
    (URL-only) call stays minimal.
    """
    payload: dict = {
        "productName": record.product_name,
        "articleNumber": record.article_number,
        "properties": [p.to_request() for p in config.properties],
        "useAI": True,
        "modelProvider": config.model_provider,
        "apiKey": config.api_key or OPENAI_API_KEY,
        "sourceLabels": list(source_labels),
    }
    if record.url:
        payload["url"] = record.url
    if pdf_text:
        payload["pdfText"] = pdf_text
    if web_content:
        payload["webContent"] = web_content
    if combined_content:
        payload["combinedContent"] = combined_content
    return payload


def _parse_property(raw) -> PropertyValue:
    if not isinstance(raw, dict):
        # Some models answer with a bare scalar instead of the object form.
        return PropertyValue(value=raw)

    sources = tuple(
        SourceRef(url=str(s.get("url", "")), label=str(s.get("label") or s.get("title") or ""))
        for s in (raw.get("sources") or [])
        if isinstance(s, dict) and s.get("url")
    )
    confidence = raw.get("confidence")
    return PropertyValue(
        value=raw.get("value"),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
        sources=sources,
        is_consistent=raw.get("isConsistent"),
    )


def parse_extraction_response(data, record: ProductRecord) -> ExtractionResult:
    """
    Map the service response to an ExtractionResult for record.

    Only the first product is used: one request is always one product.
    Keys starting with "__" are service-side metadata, not properties.
    """
    if not isinstance(data, dict):
        raise ExtractionError("extraction service returned a non-object response")

    products = data.get("products")
    if not products or not isinstance(products, list) or not isinstance(products[0], dict):
        raise ExtractionError("extraction service returned no products")

    product = products[0]
    raw_properties = product.get("properties") or {}
    if not isinstance(raw_properties, dict):
        raise ExtractionError("extraction service returned malformed properties")

    properties = {
        name: _parse_property(raw)
        for name, raw in raw_properties.items()
        if not name.startswith("__")
    }

    return ExtractionResult(
        article_number=product.get("articleNumber") or record.article_number or "",
        product_name=product.get("productName") or record.product_name,
        properties=properties,
    )


# ── Retry wrapper ──────────────────────────────────────────────────────────────

async def _post_with_retry(payload: dict, label: str) -> dict:
    """
    POST payload to the extraction endpoint, retrying transient failures.

    Returns the decoded JSON body. Raises ExtractionError on terminal failure.
    asyncio.CancelledError passes straight through, so a stopped run aborts
    the in-flight request and any pending backoff sleep.
    """
    client = service_client.get_http_client()
    timeout = httpx.Timeout(AI_READ_TIMEOUT, connect=30.0)
    last_error = "unknown error"

    for attempt in range(AI_MAX_RETRIES + 1):
        try:
            async with _get_semaphore():
                response = await client.post(EXTRACT_ENDPOINT, json=payload, timeout=timeout)
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            last_error = f"AI extraction failed with HTTP {status}"
            detail = _error_detail(exc.response)
            if detail:
                last_error = f"{last_error}: {detail}"
            logger.error(
                f"[{label}] Extraction service HTTP error {status} "
                f"(attempt {attempt + 1}/{AI_MAX_RETRIES + 1})"
            )
            if status not in _RETRYABLE_STATUS:
                break

        except httpx.RequestError as exc:
            last_error = f"AI extraction request failed: {exc}"
            logger.error(
                f"[{label}] Extraction request failed "
                f"(attempt {attempt + 1}/{AI_MAX_RETRIES + 1}): {exc}"
            )

        except ValueError as exc:
            last_error = f"AI extraction returned invalid JSON: {exc}"
            logger.warning(
                f"[{label}] Invalid JSON from extraction service "
                f"(attempt {attempt + 1}/{AI_MAX_RETRIES + 1}): {exc}"
            )

        if attempt < AI_MAX_RETRIES:
            # Exponential backoff: 1s, 2s, 4s ... + jitter
            backoff = (2 ** attempt) + random.uniform(0, 1)
            logger.info(f"[{label}] Retrying in {backoff:.1f}s...")
            await asyncio.sleep(backoff)

    raise ExtractionError(last_error)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return ""
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or "")
    return ""


# ── Public entry point ─────────────────────────────────────────────────────────

async def extract_product_data(
    record: ProductRecord,
    config: ExtractionConfig,
    pdf_text: Optional[str] = None,
    web_content: Optional[str] = None,
    combined_content: Optional[str] = None,
    source_labels: Sequence[str] = (),
) -> ExtractionResult:
    """
    Run one AI extraction for record.

    Args:
        record:           Product identity (and URL for the direct call).
        config:           Property schema, model selector and credentials.
        pdf_text:         Sanitised PDF text, if any.
        web_content:      Sanitised scraped page text, if any.
        combined_content: Labelled combination of the above.
        source_labels:    Which sources the content came from ("web", "pdf").

    Returns:
        ExtractionResult without provenance; the worker tags that.
    """
    payload = build_extraction_request(
        record,
        config,
        pdf_text=pdf_text,
        web_content=web_content,
        combined_content=combined_content,
        source_labels=source_labels,
    )
    mode = "combined" if combined_content else "direct"
    logger.info(
        f"[{record.article_number}] AI extraction ({mode}): "
        f"{len(config.properties)} properties, "
        f"{len(combined_content or '')} chars content."
    )
    data = await _post_with_retry(payload, record.article_number or record.id)
    return parse_extraction_response(data, record)
