import asyncio

import httpx
import pytest

from deobf_service.downloader import fetch_bytes
from deobf_service.errors import DownloadError


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_fetch_returns_body() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"print('hi')"))
    assert asyncio.run(fetch_bytes("https://cdn.example/f.lua", 1024, client=client)) == b"print('hi')"


def test_http_error_becomes_download_error() -> None:
    client = _client(lambda request: httpx.Response(404))
    with pytest.raises(DownloadError, match="http_404"):
        asyncio.run(fetch_bytes("https://cdn.example/f.lua", 1024, client=client))


def test_transport_error_becomes_download_error() -> None:
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DownloadError):
        asyncio.run(fetch_bytes("https://cdn.example/f.lua", 1024, client=_client(handler)))


def test_oversize_body_rejected() -> None:
    client = _client(lambda request: httpx.Response(200, content=b"x" * 2048))
    with pytest.raises(DownloadError, match="exceeds"):
        asyncio.run(fetch_bytes("https://cdn.example/f.lua", 1024, client=client))
