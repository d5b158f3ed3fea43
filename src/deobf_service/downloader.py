import httpx

from deobf_service.errors import DownloadError


async def fetch_bytes(url: str, max_bytes: int, client: httpx.AsyncClient | None = None, timeout: float = 60) -> bytes:
    """Fetch an attachment body, refusing anything larger than ``max_bytes``."""
    owned = client is None
    if client is None:
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)
    try:
        async with client.stream("GET", url) as r:
            r.raise_for_status()
            chunks: list[bytes] = []
            received = 0
            async for chunk in r.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    raise DownloadError(f"attachment exceeds {max_bytes} bytes")
                chunks.append(chunk)
        return b"".join(chunks)
    except httpx.HTTPStatusError as exc:
        raise DownloadError(f"http_{exc.response.status_code} while downloading attachment") from exc
    except httpx.HTTPError as exc:
        raise DownloadError(f"download failed: {exc}") from exc
    finally:
        if owned:
            await client.aclose()
