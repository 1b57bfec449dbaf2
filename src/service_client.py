"""
service_client.py

Persistent async HTTP client for the extraction backend.

One client is reused for every web-content and AI-extraction call to avoid a
TCP handshake per request. Per-call read timeouts are set by the callers
(web_fetcher / ai_extractor) since the two endpoints have very different
latency profiles.

Cancellation:
    httpx requests are plain awaitables. Cancelling the task awaiting one
    aborts the request immediately without waiting for a timeout.
    The batch controller relies on this when a run is stopped.
"""

import logging
from typing import Optional

import httpx

from config import EXTRACTION_SERVICE_URL

logger = logging.getLogger(__name__)

_http_client: Optional[httpx.AsyncClient] = None


def get_http_client() -> httpx.AsyncClient:
    global _http_client
    if _http_client is None or _http_client.is_closed:
        _http_client = httpx.AsyncClient(
            base_url=EXTRACTION_SERVICE_URL,
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(connect=30.0, read=120.0, write=30.0, pool=10.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
    return _http_client


async def close_http_client() -> None:
    """Close the shared client. Called from the FastAPI lifespan on shutdown."""
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        await _http_client.aclose()
        logger.info("Extraction service HTTP client closed.")
    _http_client = None
