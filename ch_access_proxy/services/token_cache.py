"""
Token cache service - obtains access-gateway tokens from cloudflared and caches them.
"""
from __future__ import annotations

import asyncio
import subprocess
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from ch_access_proxy.logging import get_logger

logger = get_logger(__name__)


class TokenFetchError(Exception):
    """The token helper failed or produced no token."""


async def fetch_token(
    app_url: str,
    *,
    binary: str = "cloudflared",
    timeout: Optional[float] = None,
) -> str:
    """
    Run `cloudflared access token --app=<app_url>` and return the token it prints.

    Args:
        app_url: The access-gateway application URL
        binary: Path or name of the cloudflared executable
        timeout: Seconds to wait for the helper before killing it (None waits forever)

    Returns:
        The token, stripped of surrounding whitespace

    Raises:
        TokenFetchError: If the helper cannot be started, exits non-zero,
                         writes to stderr, prints nothing, or times out
    """
    logger.info("Fetching new token...")
    try:
        process = await asyncio.create_subprocess_exec(
            binary, "access", "token", f"--app={app_url}",
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as e:
        raise TokenFetchError(f"Failed to start {binary}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        _kill(process)
        await process.wait()
        raise TokenFetchError(f"{binary} did not return a token within {timeout}s")
    except asyncio.CancelledError:
        # Caller went away, don't leave the helper running
        _kill(process)
        raise

    error_output = stderr.decode(errors="replace").strip()
    if process.returncode != 0:
        raise TokenFetchError(
            f"{binary} exited with code {process.returncode}: {error_output or 'no output'}"
        )
    if error_output:
        raise TokenFetchError(f"{binary} stderr: {error_output}")

    token = stdout.decode(errors="replace").strip()
    if not token:
        raise TokenFetchError(f"{binary} returned an empty token")

    logger.info("Successfully fetched new token")
    return token


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


@dataclass(frozen=True)
class CachedToken:
    """A token and the clock reading after which it must not be served."""
    value: str
    expires_at: float

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at


FetchFunc = Callable[[str], Awaitable[str]]


class TokenCache:
    """
    Time-bounded cache in front of a slow token fetch.

    The cached token is replaced as a whole CachedToken, never mutated, so a
    reader always sees a consistent value/expiry pair. At most one refresh runs
    at a time: callers arriving while it is in flight await the same task and
    get its outcome, token or None.
    """

    def __init__(
        self,
        fetch: FetchFunc,
        duration_ms: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._duration = duration_ms / 1000
        self._clock = clock
        self._cached: CachedToken | None = None
        self._refresh: asyncio.Task | None = None

    @property
    def cached(self) -> CachedToken | None:
        return self._cached

    def _current(self) -> str | None:
        cached = self._cached
        if cached is not None and cached.is_valid(self._clock()):
            return cached.value
        return None

    def invalidate(self) -> None:
        """Drop the cached token so the next caller fetches a fresh one."""
        self._cached = None

    async def get_token(self, app_url: str) -> str | None:
        """
        Return a valid token, fetching one if the cache is empty or expired.

        Returns None instead of raising when the fetch fails; the cache is
        cleared so the next call tries again.
        """
        token = self._current()
        if token is not None:
            return token

        if self._refresh is None:
            self._refresh = asyncio.get_running_loop().create_task(self._refresh_token(app_url))
        # A caller that goes away must not cancel the refresh others are awaiting
        return await asyncio.shield(self._refresh)

    async def _refresh_token(self, app_url: str) -> str | None:
        logger.info("Cache expired or token needed. Attempting fetch.")
        now = self._clock()
        try:
            token = await self._fetch(app_url)
        except (TokenFetchError, OSError) as e:
            logger.error(f"Could not get token, requests will be rejected until a fetch succeeds: {e}")
            self.invalidate()
            return None
        else:
            self._cached = CachedToken(value=token, expires_at=now + self._duration)
            logger.debug(f"Token cached for {self._duration:.0f}s")
            return token
        finally:
            self._refresh = None
