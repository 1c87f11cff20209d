#!/usr/bin/env python3
"""
Shared outbound HTTP client.

One ``aiohttp.ClientSession`` is created per run with a browser-like
User-Agent, a cookie jar (some publishers gate articles behind a cookie
handshake) and a per-request timeout. Nothing here is a process singleton.
"""

from asyncio import TimeoutError
from typing import List, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout, CookieJar, TCPConnector

from config import config, get_logger
from errors import FetchError

logger = get_logger("http")

HTTP_OK_MIN = 200
HTTP_OK_MAX = 299


def create_session(user_agent: Optional[str] = None, timeout_seconds: Optional[float] = None) -> ClientSession:
    """Create the per-run client session. Callers own it and must close it."""
    headers = {
        "User-Agent": user_agent or config.USER_AGENT,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
    }
    timeout = ClientTimeout(total=timeout_seconds or config.HTTP_TIMEOUT)
    return ClientSession(
        headers=headers,
        cookie_jar=CookieJar(unsafe=True),
        timeout=timeout,
        connector=TCPConnector(limit_per_host=8),
    )


def format_client_error(error: ClientError) -> str:
    """Describe aiohttp client errors with any available status/errno."""
    parts: List[str] = [error.__class__.__name__]
    status = getattr(error, 'status', None)
    if status is not None:
        parts.append(f"status={status}")
    os_error = getattr(error, 'os_error', None)
    if os_error is not None:
        errno = getattr(os_error, 'errno', None)
        strerror = getattr(os_error, 'strerror', None)
        if errno is not None:
            parts.append(f"errno={errno}")
        if strerror:
            parts.append(str(strerror))
    message = str(error)
    if message:
        parts.append(message)
    return " ".join(parts)


async def get_bytes(session: ClientSession, url: str, timeout_seconds: Optional[float] = None) -> Tuple[int, bytes]:
    """GET ``url`` and return ``(status, body)`` for any status code.

    Transport failures and timeouts are raised as FetchError.
    """
    request_kwargs = {}
    if timeout_seconds:
        request_kwargs['timeout'] = ClientTimeout(total=timeout_seconds)
    logger.debug(f"GET {url}")
    try:
        async with session.get(url, **request_kwargs) as response:
            body = await response.read()
            return response.status, body
    except TimeoutError as e:
        raise FetchError(f"Failed to fetch URL: timed out ({e or 'timeout'})", {"url": url}) from e
    except ClientError as e:
        raise FetchError(f"Failed to fetch URL: {format_client_error(e)}", {"url": url}) from e


async def get_text(session: ClientSession, url: str, timeout_seconds: Optional[float] = None) -> str:
    """GET a landing page and decode it; non-2xx responses raise FetchError."""
    request_kwargs = {}
    if timeout_seconds:
        request_kwargs['timeout'] = ClientTimeout(total=timeout_seconds)
    try:
        async with session.get(url, **request_kwargs) as response:
            if not HTTP_OK_MIN <= response.status <= HTTP_OK_MAX:
                raise FetchError(f"HTTP {response.status}", {"url": url, "status": response.status})
            return await response.text(errors="replace")
    except TimeoutError as e:
        raise FetchError("Timed out", {"url": url}) from e
    except ClientError as e:
        raise FetchError(format_client_error(e), {"url": url}) from e
