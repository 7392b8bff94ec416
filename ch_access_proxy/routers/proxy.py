"""
Proxy router - relays every inbound request to ClickHouse.
"""
from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import PlainTextResponse

from ch_access_proxy.logging import get_logger
from ch_access_proxy.state import app_state

logger = get_logger(__name__)

router = APIRouter(tags=["proxy"])


async def proxy(request: Request) -> Response:
    """
    Forward any method and path to the configured upstream.

    Responses:
    - Upstream's status, headers and body, streamed
    - 500 if no access token could be obtained (upstream is not contacted)
    - 502 if upstream could not be reached, 504 if it timed out
    """
    logger.info(f"Received request: {request.method} {request.url.path}")

    if app_state.forwarder is None:
        logger.error("Forwarder not initialized")
        return PlainTextResponse("Internal Server Error: Proxy not initialized.", status_code=500)

    return await app_state.forwarder.forward(request)


# A plain route with no method list matches every method, including
# extension methods such as PROPFIND that api_route would answer with 405
router.add_route("/{path:path}", proxy, include_in_schema=False)
