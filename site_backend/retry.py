"""
Retry helpers with exponential backoff for calls to the storage services.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

import requests

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRIES = 3
DEFAULT_BASE_DELAY = 0.3
DEFAULT_TIMEOUT = 30.0


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): base_delay * 2**attempt."""
    return base_delay * (2**attempt)


def call_with_retry(
    fn: Callable[[], T],
    *,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    description: str = "call",
) -> T:
    """
    Run `fn`, retrying up to `retries` more times when it raises one of `retry_on`.

    The last exception is re-raised once the retries are exhausted.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= retries:
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.info(
                "Retrying %s after %.2fs (%d retries left): %s",
                description,
                delay,
                retries - attempt,
                exc,
            )
            sleep(delay)
            attempt += 1


def request_with_retry(
    method: str,
    url: str,
    *,
    session: Optional[requests.Session] = None,
    retries: int = DEFAULT_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    timeout: float = DEFAULT_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs,
) -> requests.Response:
    """
    Issue an HTTP request, retrying network failures with exponential backoff.

    Only transport errors (`requests.RequestException`) are retried; any HTTP
    response, including 4xx/5xx, is returned to the caller to interpret.
    """
    client = session or requests
    return call_with_retry(
        lambda: client.request(method.upper(), url, timeout=timeout, **kwargs),
        retries=retries,
        base_delay=base_delay,
        retry_on=(requests.RequestException,),
        sleep=sleep,
        description=f"{method.upper()} {_redact(url)}",
    )


def _redact(url: str) -> str:
    # Tokens travel as query parameters for some Edge Config calls.
    head, sep, _ = url.partition("token=")
    return f"{head}{sep}REDACTED" if sep else url
