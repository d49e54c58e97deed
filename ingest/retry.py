"""
Retry/backoff and rate-limit-aware HTTP helper.
This module centralizes request retry logic so the GitHub gateway only has to map final responses to errors.
"""

import os
import time
import random
import logging
import email.utils
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import requests

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# retry/backoff defaults from environment
DEFAULT_MAX_RETRIES = int(os.getenv("GITFORT_MAX_RETRIES", "3"))
DEFAULT_BACKOFF_BASE = float(os.getenv("GITFORT_BACKOFF_BASE", "0.5"))
_env_jitter = os.getenv("GITFORT_BACKOFF_JITTER")
DEFAULT_BACKOFF_JITTER = float(_env_jitter) if _env_jitter is not None and _env_jitter != "" else None
DEFAULT_MAX_BACKOFF = float(os.getenv("GITFORT_MAX_BACKOFF", "30.0"))

RETRYABLE_STATUSES = (429, 502, 503, 504)

# runtime-overrides
_runtime_max_retries: Optional[int] = None
_runtime_backoff_base: Optional[float] = None
_runtime_backoff_jitter: Optional[float] = None
_runtime_max_backoff: Optional[float] = None


def configure_retry(
    max_retries: Optional[int] = None, backoff_base: Optional[float] = None, backoff_jitter: Optional[float] = None, max_backoff: Optional[float] = None
):
    """Configure retry/backoff defaults at runtime (e.g. from CLI)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    if max_retries is not None:
        _runtime_max_retries = int(max_retries)
    if backoff_base is not None:
        _runtime_backoff_base = float(backoff_base)
    if backoff_jitter is not None:
        _runtime_backoff_jitter = float(backoff_jitter)
    if max_backoff is not None:
        _runtime_max_backoff = float(max_backoff)


def reset_retry_configuration():
    """Drop runtime overrides (used by tests)."""
    global _runtime_max_retries, _runtime_backoff_base, _runtime_backoff_jitter, _runtime_max_backoff
    _runtime_max_retries = _runtime_backoff_base = _runtime_backoff_jitter = _runtime_max_backoff = None


def parse_retry_after(raw_ra: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given either as delta-seconds or as an HTTP date."""
    if not raw_ra:
        return None
    try:
        return max(0.0, float(raw_ra))
    except ValueError:
        pass
    try:
        dt = email.utils.parsedate_to_datetime(raw_ra)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(timezone.utc)).total_seconds())


def _header_number(headers, key: str, cast):
    val = headers.get(key)
    if val is None:
        return None
    try:
        return cast(val)
    except (TypeError, ValueError):
        return None


def parse_rate_headers(resp) -> Dict[str, Any]:
    headers = getattr(resp, 'headers', None) or {}
    return {
        'retry_after': parse_retry_after(headers.get('Retry-After')),
        'remaining': _header_number(headers, 'X-RateLimit-Remaining', int),
        'reset': _header_number(headers, 'X-RateLimit-Reset', float),
    }


def is_rate_limited(resp) -> bool:
    """GitHub signals primary limits with 403/429 + X-RateLimit-Remaining: 0 and secondary limits with Retry-After."""
    status = getattr(resp, 'status_code', 0)
    if status == 429:
        return True
    if status == 403:
        rate = parse_rate_headers(resp)
        return rate['remaining'] == 0 or rate['retry_after'] is not None
    return False


def seconds_until_reset(rate: Dict[str, Any]) -> Optional[float]:
    if rate.get('retry_after') is not None:
        return float(rate['retry_after'])
    if rate.get('reset'):
        return max(0.0, float(rate['reset']) - time.time())
    return None


def _resolve_backoff_params(backoff_base: Optional[float], backoff_jitter: Optional[float], max_backoff: Optional[float]):
    if backoff_base is not None:
        base = float(backoff_base)
    elif _runtime_backoff_base is not None:
        base = float(_runtime_backoff_base)
    else:
        base = float(DEFAULT_BACKOFF_BASE)

    if backoff_jitter is not None:
        jitter = float(backoff_jitter)
    elif _runtime_backoff_jitter is not None:
        jitter = float(_runtime_backoff_jitter)
    elif DEFAULT_BACKOFF_JITTER is not None:
        jitter = float(DEFAULT_BACKOFF_JITTER)
    else:
        jitter = base

    if max_backoff is not None:
        cap = float(max_backoff)
    elif _runtime_max_backoff is not None:
        cap = float(_runtime_max_backoff)
    else:
        cap = float(DEFAULT_MAX_BACKOFF)
    return base, jitter, cap


def _should_retry_response(resp) -> bool:
    status = getattr(resp, 'status_code', 0)
    return status in RETRYABLE_STATUSES or is_rate_limited(resp)


def _compute_wait_seconds(resp, backoff: float, jitter: float) -> float:
    """Wait requested by the server (Retry-After / reset) if any, otherwise exponential backoff; jitter is added on top."""
    requested = seconds_until_reset(parse_rate_headers(resp))
    base_wait = requested if requested is not None else backoff
    return base_wait + random.uniform(0, jitter)


def send_with_retries(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Optional[Dict[str, Any]] = None,
    timeout: float = 10.0,
    max_retries: Optional[int] = None,
    backoff_base: Optional[float] = None,
    backoff_jitter: Optional[float] = None,
    max_backoff: Optional[float] = None,
):
    """
    Perform an HTTP request, retrying transient failures and rate limits with capped exponential backoff.

    Returns the final requests.Response (which may still be an error or rate-limit response: the caller maps it).
    When the server asks for a wait longer than max_backoff the response is returned immediately instead of sleeping.
    Raises UpstreamUnavailable when every attempt failed at the transport level (timeout, connection error).
    """
    base, jitter, cap = _resolve_backoff_params(backoff_base, backoff_jitter, max_backoff)
    if _runtime_max_retries is not None:
        attempts = int(_runtime_max_retries)
    else:
        attempts = int(max_retries if max_retries is not None else DEFAULT_MAX_RETRIES)
    attempts = max(1, attempts)

    backoff = base
    last_exc: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            resp = requests.request(method, url, headers=headers or {}, params=params or {}, json=json_body, timeout=timeout)
        except requests.RequestException as ex:
            last_exc = ex
            logger.warning("%s %s failed (attempt %d/%d): %s", method, url, attempt + 1, attempts, ex)
            if attempt + 1 < attempts:
                time.sleep(min(backoff + random.uniform(0, jitter), cap))
                backoff = min(backoff * 2, cap)
            continue

        if not _should_retry_response(resp) or attempt + 1 >= attempts:
            return resp

        wait = _compute_wait_seconds(resp, backoff, jitter)
        if wait > cap:
            logger.info("%s %s asked to wait %.1fs (cap %.1fs); giving up for this cycle", method, url, wait, cap)
            return resp
        logger.debug("%s %s returned %s; retrying in %.2fs", method, url, resp.status_code, wait)
        time.sleep(wait)
        backoff = min(backoff * 2, cap)

    raise UpstreamUnavailable(f"{method} {url} failed after {attempts} attempt(s): {last_exc}")


__all__ = ["configure_retry", "send_with_retries", "is_rate_limited", "parse_rate_headers", "seconds_until_reset"]
