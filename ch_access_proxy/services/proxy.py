"""
Proxy service - forwards client requests to ClickHouse with access credentials injected.
"""
from __future__ import annotations

from typing import AsyncIterator, Iterable, List, Tuple

import httpx
from fastapi import Request, Response
from fastapi.responses import PlainTextResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect

from ch_access_proxy.logging import get_logger
from ch_access_proxy.services.proxy_config import ProxyConfig
from ch_access_proxy.services.token_cache import TokenCache

logger = get_logger(__name__)

COOKIE_HEADER = "Cookie"
USER_HEADER = "X-ClickHouse-User"
KEY_HEADER = "X-ClickHouse-Key"

# Never forwarded upstream. The injected headers are listed too so the
# outbound request carries exactly one of each.
STRIPPED_REQUEST_HEADERS = frozenset({
    "proxy-connection", "transfer-encoding", "host", "authorization",
    COOKIE_HEADER.lower(), USER_HEADER.lower(), KEY_HEADER.lower(),
})

# Framing is re-applied by the ASGI server
STRIPPED_RESPONSE_HEADERS = frozenset({"transfer-encoding", "connection", "keep-alive"})

NO_TOKEN_MESSAGE = "Internal Server Error: Could not obtain authorization token."

Headers = List[Tuple[str, str]]


def create_http_client(timeout: float = 30.0) -> httpx.AsyncClient:
    """
    Shared upstream client with httpx's default request headers removed.

    Outbound headers must be exactly what the client sent plus the injected
    ones; httpx would otherwise add Accept, Accept-Encoding, Connection and
    User-Agent to every request.
    """
    client = httpx.AsyncClient(timeout=timeout)
    client.headers.clear()
    return client


def build_upstream_headers(
    inbound: Iterable[Tuple[str, str]],
    config: ProxyConfig,
    token: str,
) -> Headers:
    """
    Build the outbound header list from the client's headers.

    Strip-listed headers are dropped (case-insensitively), everything else is
    kept in order, then Host and the three credential headers are appended.
    """
    headers = [(k, v) for k, v in inbound if k.lower() not in STRIPPED_REQUEST_HEADERS]
    headers.append(("Host", config.target_host))
    headers.append((COOKIE_HEADER, f"{config.cookie_name}={token}"))
    headers.append((USER_HEADER, config.clickhouse_username))
    headers.append((KEY_HEADER, config.clickhouse_password))
    return headers


def filter_response_headers(headers: httpx.Headers) -> List[Tuple[bytes, bytes]]:
    """Raw upstream response headers minus hop-by-hop framing, duplicates preserved."""
    return [
        (k.lower(), v)
        for k, v in headers.raw
        if k.decode("latin-1").lower() not in STRIPPED_RESPONSE_HEADERS
    ]


def request_path_and_query(request: Request) -> str:
    """The inbound path and query string exactly as the client sent them."""
    raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
    # Some servers leave the query attached to raw_path
    path = raw_path.split(b"?", 1)[0].decode("latin-1")
    query = request.scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def _has_body(request: Request) -> bool:
    if "transfer-encoding" in request.headers:
        return True
    content_length = request.headers.get("content-length")
    return bool(content_length) and content_length.strip() != "0"


def _map_upstream_error(error: httpx.RequestError, url: str) -> PlainTextResponse:
    """Map upstream transport errors to plain-text gateway responses."""
    if isinstance(error, httpx.TimeoutException):
        logger.error(f"Timeout proxying request to {url}: {error!r}")
        return PlainTextResponse(f"Gateway Timeout: {error}", status_code=504)

    logger.error(f"Error proxying request to {url}: {error!r}")
    return PlainTextResponse(f"Bad Gateway: {error}", status_code=502)


class Forwarder:
    """
    Relays one client request to the configured upstream.

    Built once at startup with its collaborators; holds no per-request state.
    """

    def __init__(self, config: ProxyConfig, token_cache: TokenCache, client: httpx.AsyncClient):
        self.config = config
        self.token_cache = token_cache
        self.client = client

    async def forward(self, request: Request) -> Response:
        """
        Forward the request with credentials injected and stream the response back.

        Returns:
            A streaming response mirroring upstream's status, headers and body,
            500 if no token could be obtained, 502/504 on transport errors
        """
        token = await self.token_cache.get_token(self.config.cloudflared_app_url)
        if token is None:
            logger.error("No access token available. Aborting request.")
            return PlainTextResponse(NO_TOKEN_MESSAGE, status_code=500)

        url = self.config.upstream_url(request_path_and_query(request))
        headers = build_upstream_headers(request.headers.items(), self.config, token)
        content = request.stream() if _has_body(request) else None

        logger.info(f"Proxying to: {url}")
        upstream_request = self.client.build_request(
            request.method, url, headers=headers, content=content
        )

        try:
            upstream_response = await self.client.send(upstream_request, stream=True)
        except ClientDisconnect:
            logger.warning(f"Client disconnected before {request.method} {url} was relayed")
            return Response(status_code=499)
        except httpx.RequestError as e:
            return _map_upstream_error(e, url)

        logger.debug(f"Upstream responded {upstream_response.status_code} for {url}")
        response = StreamingResponse(
            self._relay_body(upstream_response, url),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        response.raw_headers = filter_response_headers(upstream_response.headers)
        return response

    async def _relay_body(self, upstream_response: httpx.Response, url: str) -> AsyncIterator[bytes]:
        # Headers are already on the wire by the time this runs; re-raising
        # makes the server drop the connection instead of ending it cleanly.
        try:
            async for chunk in upstream_response.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            logger.error(f"Upstream stream from {url} failed mid-response: {e!r}")
            raise
        finally:
            await upstream_response.aclose()
