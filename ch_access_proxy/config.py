"""
Process settings from environment variables.

The proxy itself (target, credentials, cache duration) is configured in the
YAML file at ``config_path``; see ``services.proxy_config``.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class AppConfig(BaseSettings):
    config_path: str = "./conf/config.yml"
    listen_host: str = "0.0.0.0"
    cloudflared_path: str = "cloudflared"
    # Seconds before a hung token helper is killed
    token_fetch_timeout: float = 30.0
    # Long-running queries stream for a while, keep this generous
    upstream_timeout: float = 300.0
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_config() -> AppConfig:
    return AppConfig()
