"""Shared aiohttp client: per-source concurrency, rate windows, 429 cooldown, retries."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

_UNLIMITED = (1_000_000, 1.0)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


def _source_key(source: str) -> str:
    return str(source or "default").strip().lower() or "default"


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._rate_windows: dict[str, deque[float]] = {}
        self._rate_locks: dict[str, asyncio.Lock] = {}
        self._cooldown_until: dict[str, float] = {}
        self.failures: dict[str, int] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector_limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30))
            connector = aiohttp.TCPConnector(limit=connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            default_limit = max(1, int(getattr(config, "HTTP_DEFAULT_CONCURRENCY", 8) or 8))
            sem = asyncio.Semaphore(max(1, int(self._source_limits.get(key, default_limit))))
            self._semaphores[key] = sem
        return sem

    @staticmethod
    def _rate_limit(key: str) -> tuple[int, float]:
        raw = getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}
        limit = raw.get(key)
        if isinstance(limit, tuple) and len(limit) == 2:
            return max(1, int(limit[0])), max(1.0, float(limit[1]))
        return _UNLIMITED

    async def _wait_rate_slot(self, key: str, url: str) -> None:
        max_calls, window_seconds = self._rate_limit(key)
        if (max_calls, window_seconds) == _UNLIMITED:
            return
        lock = self._rate_locks.setdefault(key, asyncio.Lock())
        while True:
            async with lock:
                now = time.monotonic()
                window = self._rate_windows.setdefault(key, deque())
                while window and window[0] <= now - window_seconds:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait_for = max(0.01, (window[0] + window_seconds) - now)
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs url=%s", key, wait_for, url)
            await asyncio.sleep(wait_for)

    async def _wait_cooldown(self, key: str, url: str) -> None:
        while True:
            wait_for = float(self._cooldown_until.get(key, 0.0)) - time.monotonic()
            if wait_for <= 0:
                return
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs url=%s", key, wait_for, url)
            await asyncio.sleep(max(0.01, wait_for))

    def _start_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float((response.headers or {}).get("Retry-After", "") or 0))
        except ValueError:
            retry_after = 0.0
        seconds = max(float(getattr(config, "HTTP_429_COOLDOWN_SECONDS", 90.0) or 0.0), retry_after)
        if seconds <= 0:
            return
        until = time.monotonic() + seconds
        self._cooldown_until[key] = max(float(self._cooldown_until.get(key, 0.0)), until)

    @staticmethod
    def _compute_delay(attempt: int, status: int) -> float:
        base = max(0.05, float(getattr(config, "HTTP_BACKOFF_BASE_SECONDS", 0.5) or 0.5))
        cap = max(base, float(getattr(config, "HTTP_BACKOFF_MAX_SECONDS", 8.0) or 8.0))
        jitter = max(0.0, float(getattr(config, "HTTP_JITTER_SECONDS", 0.25) or 0.0))
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            delay = cap
        return max(0.01, delay + random.uniform(0.0, jitter))

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        """GET ``url`` and decode JSON. Never raises; failures come back as ``HttpResult(ok=False)``."""
        attempts = max(1, int(max_attempts or getattr(config, "HTTP_RETRY_ATTEMPTS", 3) or 3))
        key = _source_key(source)
        sem = self._semaphore(key)
        error = "http_exhausted"
        status = 0
        for attempt in range(1, attempts + 1):
            status = 0
            await self._wait_cooldown(key, url)
            await self._wait_rate_slot(key, url)
            async with sem:
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params, headers=self._headers) as response:
                        status = int(response.status or 0)
                        if status == 200:
                            return HttpResult(ok=True, status=status, data=await response.json())
                        error = f"http_status_{status}"
                        if status == 429:
                            self._start_cooldown(key, response)
                        if status != 429 and not 500 <= status <= 599:
                            break
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    error = f"http_error:{exc}"

            if attempt < attempts:
                delay = self._compute_delay(attempt, status)
                logger.debug(
                    "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                    key,
                    attempt,
                    attempts,
                    status,
                    delay,
                    url,
                )
                await asyncio.sleep(delay)

        self.failures[key] = self.failures.get(key, 0) + 1
        logger.warning("HTTP_FAIL source=%s status=%s error=%s url=%s", key, status, error, url)
        return HttpResult(ok=False, status=status, data=None, error=error)
