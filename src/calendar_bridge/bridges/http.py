"""HTTP helpers with retry/backoff and status classification for bridges."""

import logging
import random
import time
from collections.abc import Callable

import httpx

from calendar_bridge.models import CalendarBridgeError
from calendar_bridge.models import ConflictError
from calendar_bridge.models import EventNotFoundError
from calendar_bridge.models import TransientBridgeError
from calendar_bridge.models import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
DEFAULT_TIMEOUT = 30.0


def build_http_client(timeout: float = DEFAULT_TIMEOUT, **kwargs) -> httpx.Client:
    """The shared client injected into every HTTP-backed bridge."""
    return httpx.Client(timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)), **kwargs)


def request_with_retries(
    request_fn: Callable[[], httpx.Response],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    max_delay: float = 4.0,
    retry_statuses: set[int] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        try:
            response = request_fn()
        except httpx.RequestError as exc:
            if attempt >= max_attempts - 1:
                raise
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            if delay:
                sleep(delay)
            continue

        if response.status_code in statuses and attempt < max_attempts - 1:
            delay = min(max_delay, base_delay * (2**attempt))
            if delay:
                delay = delay + random.uniform(0, delay / 2)
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            if delay:
                sleep(delay)
            continue

        return response

    return response


def raise_for_bridge_status(response: httpx.Response, context: str) -> None:
    """Translate an error response into the bridge error taxonomy."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:500]
    if status == 404 or status == 410:
        raise EventNotFoundError(f"{context}: not found")
    if status in DEFAULT_RETRY_STATUSES or status == 408:
        raise TransientBridgeError(f"{context}: HTTP {status}: {detail}")
    if status == 409:
        raise ConflictError(f"{context}: HTTP 409: {detail}")
    if status in (400, 422):
        raise ValidationError(f"{context}: HTTP {status}: {detail}")
    raise CalendarBridgeError(f"{context}: HTTP {status}: {detail}")


def send(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    context: str,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    **kwargs,
) -> httpx.Response:
    """Send one request with retries and raise a bridge error for failures."""
    try:
        response = request_with_retries(
            lambda: client.request(method, url, **kwargs),
            max_attempts=max_attempts,
            base_delay=base_delay,
        )
    except httpx.RequestError as e:
        raise TransientBridgeError(f"{context}: {e.__class__.__name__}: {e}") from e
    raise_for_bridge_status(response, context)
    return response
