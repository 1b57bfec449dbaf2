"""
web_fetcher.py

Web Content Service adapter.

    POST /api/search/web-content  {url, articleNumber}  →  {success, content?}

Failures are soft: any network error, non-2xx status, unparseable body or
"success": false is logged and reported as SoftSourceError, which the worker
turns into empty web content. asyncio.CancelledError is never caught here:
a stopped run must abort the request, not degrade it into "no content".
"""

import logging
from typing import Optional

import httpx

import service_client
from config import WEB_CONTENT_ENDPOINT, WEB_FETCH_TIMEOUT
from errors import SoftSourceError

logger = logging.getLogger(__name__)


async def fetch_web_content(url: str, article_number: Optional[str] = None) -> str:
    """
    Ask the backend to scrape url and return its text content.

    Raises:
        SoftSourceError on any failure other than cancellation.
    """
    payload = {"url": url.strip(), "articleNumber": article_number}
    client = service_client.get_http_client()

    try:
        response = await client.post(
            WEB_CONTENT_ENDPOINT,
            json=payload,
            timeout=httpx.Timeout(WEB_FETCH_TIMEOUT, connect=30.0),
        )
        response.raise_for_status()
        data = response.json()
    except httpx.HTTPStatusError as exc:
        raise SoftSourceError("web", f"HTTP {exc.response.status_code} for {url}") from exc
    except httpx.RequestError as exc:
        raise SoftSourceError("web", f"request failed for {url}: {exc}") from exc
    except ValueError as exc:
        raise SoftSourceError("web", f"invalid JSON from web-content service: {exc}") from exc

    if not isinstance(data, dict) or not data.get("success"):
        reason = data.get("error") if isinstance(data, dict) else None
        raise SoftSourceError("web", f"scrape unsuccessful for {url}: {reason or 'no detail'}")

    content = data.get("content") or ""
    logger.info(f"[{article_number}] Web content extracted: {len(content)} characters.")
    return content
