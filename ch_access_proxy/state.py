"""
Application state - shared objects initialized at startup.
"""
from __future__ import annotations

import httpx

from ch_access_proxy.services.proxy import Forwarder
from ch_access_proxy.services.proxy_config import ProxyConfig
from ch_access_proxy.services.token_cache import TokenCache


class AppState:
    """
    Application state container.
    Initialized at startup via lifespan, read by the proxy route.
    """

    def __init__(self):
        self.config: ProxyConfig | None = None
        self.http_client: httpx.AsyncClient | None = None
        self.token_cache: TokenCache | None = None
        self.forwarder: Forwarder | None = None


app_state = AppState()
