"""HTTP client for the release host behind the relay."""

from __future__ import annotations

from typing import AsyncIterator, Optional

import httpx
from opentelemetry import trace

from ..common.settings import RelaySettings


TRACER = trace.get_tracer("edgerelay.upstream")

GITHUB_JSON_MEDIA_TYPE = "application/vnd.github.v3+json"


class UpstreamClient:
    """Issues GET requests to the release host with the relay's identifying user agent.

    Streaming calls return an open ``httpx.Response``; the caller owns it and must
    close it, normally through :func:`iter_body`.
    """

    def __init__(self, settings: RelaySettings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http

    def _headers(self, extra: Optional[dict[str, str]] = None) -> dict[str, str]:
        headers = {"User-Agent": self._settings.user_agent}
        if extra:
            headers.update(extra)
        return headers

    async def open_stream(self, url: str, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        request = self._http.build_request("GET", url, headers=self._headers(headers))
        with TRACER.start_as_current_span("upstream.stream", attributes={"http.url": url}):
            return await self._http.send(request, stream=True, follow_redirects=True)

    async def fetch(self, url: str, headers: Optional[dict[str, str]] = None) -> httpx.Response:
        with TRACER.start_as_current_span("upstream.fetch", attributes={"http.url": url}) as span:
            response = await self._http.get(url, headers=self._headers(headers), follow_redirects=True)
            span.set_attribute("http.status_code", response.status_code)
            return response

    async def open_install_script(self) -> httpx.Response:
        # the script can change at any moment; keep intermediaries from serving a stale copy
        return await self.open_stream(self._settings.script_url, {"Cache-Control": "no-cache"})

    async def fetch_latest_release(self) -> httpx.Response:
        return await self.fetch(self._settings.latest_release_url, {"Accept": GITHUB_JSON_MEDIA_TYPE})

    async def open_download(self, url: str) -> httpx.Response:
        return await self.open_stream(url)

    async def aclose(self) -> None:
        await self._http.aclose()


async def iter_body(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield the upstream body chunk by chunk and always release the connection."""
    try:
        async for chunk in response.aiter_bytes():
            yield chunk
    finally:
        await response.aclose()


def passthrough_length(response: httpx.Response) -> Optional[str]:
    """Upstream Content-Length, unless httpx decoded a content-encoding and changed the size."""
    length = response.headers.get("content-length")
    encoding = response.headers.get("content-encoding", "identity").strip().lower()
    if length is None or not length.strip().isdigit() or encoding not in ("", "identity"):
        return None
    return length.strip()

