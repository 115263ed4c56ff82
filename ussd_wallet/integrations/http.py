"""
Shared httpx request helper for outbound integrations.

Maps transport errors onto the wallet error taxonomy:
- connect errors/timeouts: the request never reached the peer -> ExternalFailure
- read/write/pool timeouts: the peer may have acted -> ExternalTimeout
- HTTP 4xx/5xx and other transport errors -> ExternalFailure
"""

from typing import Any

import httpx

from ussd_wallet.errors import ExternalFailure, ExternalTimeout
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)


def request_json(
    client: httpx.Client,
    method: str,
    path: str,
    service: str,
    allow_not_found: bool = False,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Send a request and return the decoded JSON body.

    Args:
        client: Configured httpx client (base URL, auth headers, timeout)
        method: HTTP method
        path: Path relative to the client's base URL
        service: Name used in logs and error messages
        allow_not_found: Return an empty dict for 404 instead of raising
        **kwargs: Passed to httpx (json, params, headers)

    Returns:
        Parsed JSON object (empty dict for empty bodies)

    Raises:
        ExternalTimeout: Outcome unknown
        ExternalFailure: Request failed or was rejected
    """
    try:
        response = client.request(method, path, **kwargs)
        response.raise_for_status()
    except (httpx.ConnectError, httpx.ConnectTimeout) as e:
        logger.error("external_connect_failed", service=service, path=path, error=str(e))
        raise ExternalFailure(f"{service} unreachable: {e}") from e
    except httpx.TimeoutException as e:
        logger.error("external_timeout", service=service, path=path, error=str(e))
        raise ExternalTimeout(f"{service} timed out on {path}") from e
    except httpx.HTTPStatusError as e:
        if allow_not_found and e.response.status_code == 404:
            return {}
        logger.error(
            "external_http_error",
            service=service,
            path=path,
            status_code=e.response.status_code,
            body=e.response.text[:500],
        )
        raise ExternalFailure(
            f"{service} returned {e.response.status_code} for {path}"
        ) from e
    except httpx.HTTPError as e:
        logger.error("external_request_failed", service=service, path=path, error=str(e))
        raise ExternalFailure(f"{service} request failed: {e}") from e

    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as e:
        raise ExternalFailure(f"{service} returned a non-JSON body for {path}") from e
    if not isinstance(data, dict):
        return {"data": data}
    return data
