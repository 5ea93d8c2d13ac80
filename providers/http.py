from __future__ import annotations

import logging
from typing import Any

import httpx

from .base import ProviderError, ProviderUnavailable

logger = logging.getLogger(__name__)


def send_json(
    client: httpx.Client,
    method: str,
    url: str,
    *,
    provider: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Send a request and decode the JSON body.

    Timeouts, transport failures and non-2xx answers raise ProviderUnavailable;
    a 2xx answer that is not a JSON object raises ProviderError.
    """
    try:
        response = client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        logger.warning("%s %s timed out (%s)", method, url, provider)
        raise ProviderUnavailable(
            code="timeout",
            message=f"{method} {url} timed out",
            provider=provider,
        ) from exc
    except httpx.TransportError as exc:
        logger.warning("%s %s unreachable (%s): %s", method, url, provider, exc)
        raise ProviderUnavailable(
            code="unreachable",
            message=f"{method} {url} unreachable: {exc}",
            provider=provider,
        ) from exc

    if response.status_code >= 300:
        detail = response.text[:500]
        logger.warning("%s %s -> %s (%s): %s", method, url, response.status_code, provider, detail)
        raise ProviderUnavailable(
            code=f"http_{response.status_code}",
            message=detail or response.reason_phrase,
            provider=provider,
        )

    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError(
            code="invalid_response",
            message="response body is not JSON",
            provider=provider,
        ) from exc
    if not isinstance(body, dict):
        raise ProviderError(
            code="invalid_response",
            message="response body is not a JSON object",
            provider=provider,
        )
    return body
