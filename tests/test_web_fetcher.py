"""
Tests for the web-content adapter. Every failure is soft.
"""

import json
from unittest.mock import patch

import httpx
import pytest

import service_client
from errors import SoftSourceError
from web_fetcher import fetch_web_content


def _client_with(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(base_url="http://extraction.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_returns_scraped_content():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"success": True, "content": "Drill X, 18 V"})

    client = _client_with(handler)
    with patch.object(service_client, "get_http_client", return_value=client):
        content = await fetch_web_content(" https://x.test/p ", "A-100")

    assert content == "Drill X, 18 V"
    assert seen == [{"url": "https://x.test/p", "articleNumber": "A-100"}]
    await client.aclose()


@pytest.mark.asyncio
async def test_missing_content_is_empty_string():
    client = _client_with(lambda request: httpx.Response(200, json={"success": True}))
    with patch.object(service_client, "get_http_client", return_value=client):
        assert await fetch_web_content("https://x.test/p") == ""
    await client.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize("response", [
    httpx.Response(200, json={"success": False, "error": "blocked by robots.txt"}),
    httpx.Response(502, text="bad gateway"),
    httpx.Response(200, text="<html>not json</html>"),
])
async def test_failures_are_soft(response):
    client = _client_with(lambda request: response)
    with patch.object(service_client, "get_http_client", return_value=client):
        with pytest.raises(SoftSourceError) as exc_info:
            await fetch_web_content("https://x.test/p", "A-100")

    assert exc_info.value.source == "web"
    await client.aclose()


@pytest.mark.asyncio
async def test_network_error_is_soft():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = _client_with(handler)
    with patch.object(service_client, "get_http_client", return_value=client):
        with pytest.raises(SoftSourceError, match="request failed"):
            await fetch_web_content("https://x.test/p")
    await client.aclose()
