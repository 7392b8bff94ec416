"""
Shared test fixtures and helpers.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path
from typing import Generator

import pytest
import yaml

from ch_access_proxy.services.proxy_config import ProxyConfig
from ch_access_proxy.services.proxy import Forwarder, create_http_client
from ch_access_proxy.services.token_cache import TokenCache, TokenFetchError
from ch_access_proxy.state import AppState, app_state


TEST_TOKEN = "test-access-token"
APP_URL = "https://db.example.com"


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFetch:
    """Records calls and returns queued results (a token string or an exception)."""

    def __init__(self, *results):
        self.results = list(results) or [TEST_TOKEN]
        self.calls: list[str] = []

    async def __call__(self, app_url: str) -> str:
        self.calls.append(app_url)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def write_script(directory: Path, name: str, body: str) -> str:
    """Write an executable shell script and return its path."""
    path = directory / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


def config_dict(**overrides) -> dict:
    """The raw YAML document for the reference scenario."""
    proxy = {
        "listenPort": 9090,
        "targetHost": "db.example.com",
        "targetPort": 443,
        "targetScheme": "https",
        "cloudflaredAppUrl": APP_URL,
        "clickhouseUsername": "alice",
        "clickhousePassword": "secret",
        "tokenCacheDurationMs": 300000,
        "cookieName": "CF_Authorization",
    }
    proxy.update(overrides)
    return {"proxy": proxy}


@pytest.fixture
def sample_config() -> ProxyConfig:
    """Config for the reference scenario (https://db.example.com:443, alice/secret)."""
    return ProxyConfig(
        listen_port=9090,
        target_host="db.example.com",
        target_port=443,
        target_scheme="https",
        cloudflared_app_url=APP_URL,
        clickhouse_username="alice",
        clickhouse_password="secret",
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_fetch() -> FakeFetch:
    return FakeFetch()


@pytest.fixture
def failing_fetch() -> FakeFetch:
    return FakeFetch(TokenFetchError("cloudflared returned an empty token"))


@pytest.fixture
def temp_config_file(tmp_path) -> str:
    """Create a temporary YAML config file for testing."""
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config_dict()))
    return str(config_path)


@pytest.fixture
def restore_app_state() -> Generator[AppState, None, None]:
    """Snapshot app_state and put it back after the test."""
    original = dict(vars(app_state))

    yield app_state

    for name, value in original.items():
        setattr(app_state, name, value)


@pytest.fixture
def install_forwarder(restore_app_state, sample_config):
    """
    Return a function that wires app_state with a Forwarder around the given fetch.

    The http client must be created after httpx_mock is active, so tests call
    this from inside their own fixtures.
    """
    def _install(fetch, config: ProxyConfig = sample_config) -> Forwarder:
        client = create_http_client()
        cache = TokenCache(fetch, config.token_cache_duration_ms, clock=FakeClock())
        restore_app_state.config = config
        restore_app_state.http_client = client
        restore_app_state.token_cache = cache
        restore_app_state.forwarder = Forwarder(config, cache, client)
        return restore_app_state.forwarder

    return _install


@pytest.fixture
def mock_env(temp_config_file, monkeypatch):
    """Point the settings at the temp config and clear cached settings."""
    monkeypatch.setenv("CONFIG_PATH", temp_config_file)
    monkeypatch.setenv("CLOUDFLARED_PATH", os.devnull)
    from ch_access_proxy.config import get_config
    get_config.cache_clear()
    yield
    get_config.cache_clear()
