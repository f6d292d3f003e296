"""
Remote catalog and partition transport.

Partitions are static files on a raw git host or CDN.  Those hosts answer
bursts of requests (a fresh session zooming into a dense city loads a
dozen partitions at once) with ``429 Too Many Requests`` and the
occasional 5xx, so every GET goes through :func:`fetch_with_retry`.
"""
from __future__ import annotations

import logging
import time
from typing import Optional

import requests

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 20  # seconds
_MAX_RETRY_AFTER = 30.0  # seconds

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


def _retry_after(resp: requests.Response) -> Optional[float]:
    """Seconds from a numeric ``Retry-After`` header, capped."""
    value = resp.headers.get("Retry-After") if resp.headers is not None else None
    try:
        return min(float(value), _MAX_RETRY_AFTER)
    except (TypeError, ValueError):
        return None


def fetch_with_retry(
    url: str,
    *,
    session: Optional[requests.Session] = None,
    timeout: float = _DEFAULT_TIMEOUT,
    retries: int = 2,
    backoff: float = 2.0,
) -> requests.Response:
    """GET a catalog or partition file, retrying transient failures.

    Parameters
    ----------
    url : str
        Absolute URL of ``pointer.json`` or a partition file.
    session : requests.Session, optional
        Connection pool to reuse; the module-level ``requests.get`` is used
        when omitted.
    timeout, retries, backoff
        Per-attempt timeout, extra attempts after the first, and the
        linear backoff step in seconds.

    Connection errors, timeouts, 429 and 5xx are retried.  A 429 or 503
    carrying ``Retry-After`` waits that long instead of the backoff step.
    Other 4xx responses (a partition file missing from the host) raise
    ``requests.HTTPError`` at once.
    """
    get = session.get if session is not None else requests.get
    last_exc: Optional[Exception] = None
    for attempt in range(1, retries + 2):
        wait = backoff * attempt
        try:
            resp = get(url, timeout=timeout)
            if resp.status_code not in RETRYABLE_STATUS:
                resp.raise_for_status()
                return resp
            log.warning("HTTP %d from %s (attempt %d/%d)",
                        resp.status_code, url[:80], attempt, retries + 1)
            last_exc = requests.HTTPError(
                f"HTTP {resp.status_code} from {url[:80]}", response=resp,
            )
            hinted = _retry_after(resp)
            if hinted is not None:
                wait = hinted
        except (requests.ConnectionError, requests.Timeout) as exc:
            last_exc = exc
            log.warning("Network error on %s (attempt %d/%d): %s",
                        url[:80], attempt, retries + 1, exc)

        if attempt <= retries:
            time.sleep(wait)

    raise last_exc or requests.ConnectionError(f"Failed after {retries + 1} attempts")
