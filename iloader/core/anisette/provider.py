"""
Anisette header provider.

Fetches device-attestation headers from a remote Anisette server
(omnisette, SideStore's public server, ...). Results are cached per
server URL and concurrent fetches for the same server share a single
in-flight request.

Example:
    provider = AnisetteProvider()
    headers = provider.fetch("ani.sidestore.io")
    request_headers = headers.as_request_headers()
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional

import requests

from iloader.constants import (
    ANISETTE_CACHE_TTL,
    ANISETTE_ENDPOINTS,
    ANISETTE_TIMEOUT,
    APP_NAME,
    VERSION,
)
from iloader.core.anisette.models import AnisetteHeaders
from iloader.exceptions import (
    AnisetteTimeoutError,
    AnisetteUnreachableError,
    MalformedAnisetteResponseError,
)

logger = logging.getLogger(__name__)


def normalize_server_url(server_url: str) -> str:
    """Prefix a scheme when missing and drop any trailing slash."""
    url = server_url.strip()
    if not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url.rstrip("/")


@dataclass
class _CacheEntry:
    headers: AnisetteHeaders
    expires_at: float


class AnisetteProvider:
    """
    Fetches and caches Anisette headers.

    The provider is safe to share between threads. A cache hit never
    touches the network; a miss issues one request per server no matter
    how many callers are waiting for it.

    Args:
        session: requests session used for HTTP calls.
        timeout: Per-request timeout in seconds.
        cache_ttl: Seconds a fetched header set stays valid.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = ANISETTE_TIMEOUT,
        cache_ttl: float = ANISETTE_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        self._inflight: dict[str, Future] = {}

    def fetch(self, server_url: str) -> AnisetteHeaders:
        """
        Get Anisette headers for a server, from cache when still fresh.

        Args:
            server_url: Anisette server host or URL.

        Returns:
            AnisetteHeaders for the server.

        Raises:
            AnisetteUnreachableError: If no endpoint variant returned HTTP 200.
            AnisetteTimeoutError: If every endpoint variant timed out.
            MalformedAnisetteResponseError: If no body held the ten headers.
        """
        url = normalize_server_url(server_url)

        with self._lock:
            entry = self._cache.get(url)
            if entry is not None and self._clock() < entry.expires_at:
                return entry.headers

            future = self._inflight.get(url)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[url] = future

        if not owner:
            logger.debug(f"Waiting for in-flight Anisette fetch from {url}")
            return future.result()

        try:
            headers = self._fetch_remote(url)
        except BaseException as e:
            with self._lock:
                self._inflight.pop(url, None)
            future.set_exception(e)
            raise

        with self._lock:
            self._cache[url] = _CacheEntry(headers, self._clock() + self._cache_ttl)
            self._inflight.pop(url, None)
        future.set_result(headers)
        return headers

    def invalidate(self, server_url: Optional[str] = None) -> None:
        """
        Drop cached headers.

        Args:
            server_url: Server to forget. If None, clears every entry.
        """
        with self._lock:
            if server_url is None:
                self._cache.clear()
            else:
                self._cache.pop(normalize_server_url(server_url), None)
        logger.debug("Anisette cache invalidated")

    def _fetch_remote(self, url: str) -> AnisetteHeaders:
        """Try each endpoint variant until one yields a usable header set."""
        answered = False
        timeouts = 0
        last_reason: Optional[str] = None

        for endpoint in ANISETTE_ENDPOINTS:
            candidate = url + endpoint
            try:
                response = self._session.get(
                    candidate,
                    headers={
                        "Accept": "application/json",
                        "User-Agent": f"{APP_NAME}/{VERSION}",
                    },
                    timeout=self._timeout,
                )
            except requests.Timeout:
                timeouts += 1
                logger.debug(f"Anisette endpoint timed out: {candidate}")
                continue
            except requests.RequestException as e:
                last_reason = type(e).__name__
                logger.debug(f"Anisette endpoint failed: {candidate}: {e}")
                continue

            if response.status_code != 200:
                logger.debug(f"Anisette endpoint {candidate} returned {response.status_code}")
                continue

            answered = True
            try:
                body = response.json()
            except ValueError:
                logger.debug(f"Anisette endpoint {candidate} returned non-JSON body")
                continue

            headers = AnisetteHeaders.from_mapping(body)
            if headers is not None:
                logger.info(f"Fetched Anisette headers from {candidate}")
                return headers

        if answered:
            raise MalformedAnisetteResponseError(url)
        if timeouts == len(ANISETTE_ENDPOINTS):
            raise AnisetteTimeoutError(url, self._timeout)
        raise AnisetteUnreachableError(url, last_reason)
