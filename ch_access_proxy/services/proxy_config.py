"""
Proxy config service - loads the target and credential settings from YAML.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import yaml


DEFAULT_TOKEN_CACHE_DURATION_MS = 300_000
DEFAULT_COOKIE_NAME = "CF_Authorization"

SUPPORTED_SCHEMES = ("http", "https")

# YAML key -> ProxyConfig field, in the order they are validated
REQUIRED_FIELDS = {
    "listenPort": "listen_port",
    "targetHost": "target_host",
    "targetPort": "target_port",
    "targetScheme": "target_scheme",
    "cloudflaredAppUrl": "cloudflared_app_url",
    "clickhouseUsername": "clickhouse_username",
    "clickhousePassword": "clickhouse_password",
}

OPTIONAL_FIELDS = {
    "tokenCacheDurationMs": ("token_cache_duration_ms", DEFAULT_TOKEN_CACHE_DURATION_MS),
    "cookieName": ("cookie_name", DEFAULT_COOKIE_NAME),
}

_INT_FIELDS = {"listenPort", "targetPort", "tokenCacheDurationMs"}
# Strings that must not be blank. clickhousePassword may be empty (default user).
_NON_EMPTY_FIELDS = {"targetHost", "cloudflaredAppUrl", "clickhouseUsername", "cookieName"}


@dataclass(frozen=True)
class ProxyConfig:
    """Upstream target and the credentials injected into every request."""
    listen_port: int
    target_host: str
    target_port: int
    target_scheme: str
    cloudflared_app_url: str
    clickhouse_username: str
    clickhouse_password: str
    token_cache_duration_ms: int = DEFAULT_TOKEN_CACHE_DURATION_MS
    cookie_name: str = DEFAULT_COOKIE_NAME

    @property
    def target_base_url(self) -> str:
        return f"{self.target_scheme}://{self.target_host}:{self.target_port}"

    def upstream_url(self, path_and_query: str) -> str:
        """Join the inbound path (and query) onto the target, unchanged."""
        if not path_and_query.startswith("/"):
            path_and_query = "/" + path_and_query
        return self.target_base_url + path_and_query


def _validate_value(key: str, value: Any) -> None:
    if key in _INT_FIELDS:
        # bool is an int subclass; `listenPort: true` is not a port
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"Field '{key}' must be an integer, got {value!r}")
        if key in ("listenPort", "targetPort") and not 0 < value < 65536:
            raise ValueError(f"Field '{key}' must be between 1 and 65535, got {value}")
        if key == "tokenCacheDurationMs" and value <= 0:
            raise ValueError(f"Field '{key}' must be positive, got {value}")
        return

    if not isinstance(value, str):
        raise ValueError(f"Field '{key}' must be a string, got {value!r}")
    if key in _NON_EMPTY_FIELDS and not value.strip():
        raise ValueError(f"Field '{key}' must not be empty")
    if key == "targetScheme" and value not in SUPPORTED_SCHEMES:
        raise ValueError(
            f"Field 'targetScheme' must be one of {', '.join(SUPPORTED_SCHEMES)}, got {value!r}"
        )


def parse_proxy_config(data: Any) -> ProxyConfig:
    """
    Build a ProxyConfig from an already-parsed YAML document.

    Raises:
        ValueError: If the proxy section or a required field is missing, or a value is invalid
    """
    if not isinstance(data, dict) or not isinstance(data.get("proxy"), dict):
        raise ValueError("Proxy configuration is missing in the config file.")
    section: Dict[str, Any] = data["proxy"]

    values: Dict[str, Any] = {}
    for key, field_name in REQUIRED_FIELDS.items():
        if key not in section:
            raise ValueError(f"Required field '{key}' is missing from proxy configuration.")
        _validate_value(key, section[key])
        values[field_name] = section[key]

    for key, (field_name, default) in OPTIONAL_FIELDS.items():
        value = section.get(key)
        if value is None:
            value = default
        _validate_value(key, value)
        values[field_name] = value

    return ProxyConfig(**values)


def load_proxy_config(path: str) -> ProxyConfig:
    """
    Load proxy configuration from a YAML file.

    Args:
        path: Path to the config YAML file

    Returns:
        ProxyConfig with defaults applied for optional fields

    Raises:
        ValueError: If config file not found, invalid YAML, or missing/invalid fields
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise ValueError(f"Config file not found: {path}")
    except OSError as e:
        raise ValueError(f"Cannot read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}")

    return parse_proxy_config(data)
