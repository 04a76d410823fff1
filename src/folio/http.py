"""Shared HTTP utilities for Folio clients.

Two concerns live here:

- cache-bypassing reads, because the same logical manifest is overwritten
  at one path again and again and any CDN copy may be stale;
- retry-with-backoff for the generative AI APIs, which rate-limit.

Blob reads are never retried here: a failed read surfaces to the caller.
"""

from __future__ import annotations

import time
from urllib.parse import urlsplit, urlunsplit

import httpx

DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0  # seconds

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
}


def base_url(url: str) -> str:
    """Strip query string and fragment (drops any earlier cache-buster)."""
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def fresh_url(url: str) -> str:
    """Return ``url`` with a millisecond ``?v=`` cache-buster."""
    return f"{base_url(url)}?v={int(time.time() * 1000)}"


def get_fresh(url: str, *, timeout: float = DEFAULT_TIMEOUT, **kwargs) -> httpx.Response:
    """GET ``url`` bypassing HTTP/CDN caches.

    Raises:
        httpx.HTTPError: On connection failure or timeout.
    """
    headers = {**NO_CACHE_HEADERS, **kwargs.pop("headers", {})}
    return httpx.get(fresh_url(url), headers=headers, timeout=timeout, **kwargs)


def error_text(resp: httpx.Response) -> str:
    """Body text of a failed response, or the status line when empty."""
    try:
        text = resp.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        text = ""
    return text.strip() or f"{resp.status_code} {resp.reason_phrase}".strip()


def post_with_retry(
    url: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    **kwargs,
) -> httpx.Response:
    """httpx.post with exponential backoff on 429/5xx.

    Args:
        url: Request URL.
        max_retries: Maximum retry attempts (default 3).
        backoff_base: Base delay in seconds (default 1.0). Doubles each retry.
        **kwargs: Passed to httpx.post (json, headers, timeout, etc.).

    Returns:
        The final httpx.Response (may still be an error after all retries).

    Raises:
        httpx.ConnectError, httpx.TimeoutException: On connection failure
            after all retries exhausted.
    """
    kwargs.setdefault("timeout", DEFAULT_TIMEOUT)

    for attempt in range(max_retries + 1):
        try:
            resp = httpx.post(url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException):
            if attempt < max_retries:
                time.sleep(backoff_base * (2 ** attempt))
                continue
            raise

        if resp.status_code == 429 or resp.status_code >= 500:
            if attempt < max_retries:
                wait = backoff_base * (2 ** attempt)
                # Respect Retry-After header
                retry_after = resp.headers.get("retry-after", "")
                if retry_after.isdigit():
                    wait = max(wait, float(retry_after))
                time.sleep(wait)
                continue

        return resp

    return resp  # type: ignore[possibly-undefined]
