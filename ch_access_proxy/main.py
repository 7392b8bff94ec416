"""
ClickHouse Access Proxy

Entry point for the FastAPI application. Run with `ch-access-proxy` (reads the
listen port from the YAML config) or `fastapi run ch_access_proxy/main.py`.
"""
from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from functools import partial

import uvicorn
from fastapi import FastAPI
from dotenv import load_dotenv

from ch_access_proxy.logging import configure_logging, get_logger
from ch_access_proxy.state import app_state
from ch_access_proxy.routers import proxy
from ch_access_proxy.services.proxy import Forwarder, create_http_client
from ch_access_proxy.services.proxy_config import load_proxy_config
from ch_access_proxy.services.token_cache import TokenCache, fetch_token
from ch_access_proxy.config import get_config

load_dotenv()

logger = get_logger(__name__)


def _init_config() -> None:
    """Load proxy configuration from file, unless already loaded by run()."""
    if app_state.config is not None:
        return
    config_path = get_config().config_path
    logger.info(f"Loading configuration from: {config_path}")
    app_state.config = load_proxy_config(config_path)
    logger.info("Configuration loaded successfully")


def _log_banner() -> None:
    config = app_state.config
    logger.info(f"Forwarding requests to {config.target_base_url}")
    logger.info(f"Injecting access cookie '{config.cookie_name}' and ClickHouse auth for user: {config.clickhouse_username}")


def _init_http_client() -> None:
    """Initialize shared HTTP client for upstream requests."""
    app_state.http_client = create_http_client(timeout=get_config().upstream_timeout)
    logger.info("HTTP client initialized")


def _init_token_cache() -> None:
    settings = get_config()
    fetch = partial(
        fetch_token,
        binary=settings.cloudflared_path,
        timeout=settings.token_fetch_timeout,
    )
    app_state.token_cache = TokenCache(fetch, app_state.config.token_cache_duration_ms)


def _init_forwarder() -> None:
    app_state.forwarder = Forwarder(app_state.config, app_state.token_cache, app_state.http_client)


async def _prefetch_token() -> None:
    """Warm the token cache; a failure here only means the first request fetches."""
    logger.info("Attempting initial token fetch...")
    token = await app_state.token_cache.get_token(app_state.config.cloudflared_app_url)
    if token:
        logger.info("Initial access token obtained successfully")
    else:
        logger.warning("Could not obtain initial token. Will retry on first request.")


async def _shutdown_http_client() -> None:
    """Close the shared HTTP client."""
    if app_state.http_client:
        await app_state.http_client.aclose()
        logger.info("HTTP client closed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager - handles startup and shutdown."""
    _init_config()
    _log_banner()
    _init_http_client()
    _init_token_cache()
    _init_forwarder()
    await _prefetch_token()

    yield

    logger.info("Shutting down proxy server...")
    await _shutdown_http_client()

# Docs and OpenAPI routes are disabled: every path belongs to upstream
app = FastAPI(
    title="ClickHouse Access Proxy",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

app.include_router(proxy.router)


def run() -> None:
    """Console entry point: validate config, then serve on the configured port."""
    settings = get_config()
    configure_logging(settings.log_level)
    logger.info("ClickHouse Access Proxy starting...")

    try:
        _init_config()
    except ValueError as e:
        logger.error(f"Error loading config: {e}")
        sys.exit(1)

    logger.info(f"Proxy server listening on http://{settings.listen_host}:{app_state.config.listen_port}")
    uvicorn.run(
        app,
        host=settings.listen_host,
        port=app_state.config.listen_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
