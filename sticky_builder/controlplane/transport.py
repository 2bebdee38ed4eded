"""HTTP transport shared by the control-plane clients.

All httpx failures are translated into ``ControlPlaneError`` here, with an
``ErrorKind`` chosen from the status code or exception type:

- 429 and Connect ``resource_exhausted``: transient, rate limited
- 5xx, Connect ``unavailable``, connection errors and timeouts: transient
- 404 and Connect ``not_found``: denied (no capacity)
- any other 4xx: fatal client error
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sticky_builder.errors import ControlPlaneError
from sticky_builder.types import ErrorKind

logger = logging.getLogger(__name__)

_CONNECT_KINDS = {
    "unavailable": ErrorKind.TRANSIENT,
    "resource_exhausted": ErrorKind.TRANSIENT,
    "deadline_exceeded": ErrorKind.TRANSIENT,
    "aborted": ErrorKind.TRANSIENT,
    "not_found": ErrorKind.DENIED,
}


def _connect_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and isinstance(body.get("code"), str):
        return body["code"]
    return None


def classify_status(response: httpx.Response) -> ControlPlaneError:
    """Build a ControlPlaneError for an unsuccessful response."""
    status = response.status_code
    connect_code = _connect_code(response)

    if connect_code in _CONNECT_KINDS:
        kind = _CONNECT_KINDS[connect_code]
    elif status == 429:
        kind = ErrorKind.TRANSIENT
    elif status >= 500:
        kind = ErrorKind.TRANSIENT
    elif status == 404:
        kind = ErrorKind.DENIED
    else:
        kind = ErrorKind.FATAL

    rate_limited = status == 429 or connect_code == "resource_exhausted"
    detail = connect_code or response.reason_phrase
    return ControlPlaneError(
        f"{response.request.method} {response.request.url} failed: {status} {detail}",
        kind=kind,
        status_code=status,
        rate_limited=rate_limited,
        code="http_error",
    )


def request_json(
    client: httpx.Client,
    method: str,
    url: str,
    payload: dict[str, Any] | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Send a request and return the decoded JSON object.

    Args:
        client: HTTPX client instance.
        method: HTTP method.
        url: URL, relative to the client's base URL.
        payload: Optional JSON body.
        timeout: Optional per-request timeout override.

    Returns:
        Decoded JSON object (empty dict for empty bodies).

    Raises:
        ControlPlaneError: On any transport or HTTP failure.
    """
    kwargs: dict[str, Any] = {}
    if payload is not None:
        kwargs["json"] = payload
    if timeout is not None:
        kwargs["timeout"] = timeout

    try:
        response = client.request(method, url, **kwargs)
        response.raise_for_status()
    except httpx.HTTPStatusError as e:
        raise classify_status(e.response) from e
    except httpx.TimeoutException as e:
        raise ControlPlaneError(
            f"Timeout calling {method} {url}",
            kind=ErrorKind.TRANSIENT,
            code="timeout",
        ) from e
    except httpx.TransportError as e:
        raise ControlPlaneError(
            f"Network error calling {method} {url}: {e}",
            kind=ErrorKind.TRANSIENT,
            code="network_error",
        ) from e

    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError as e:
        raise ControlPlaneError(
            f"Invalid JSON from {method} {url}",
            kind=ErrorKind.FATAL,
            status_code=response.status_code,
            code="invalid_response",
        ) from e
    if not isinstance(data, dict):
        raise ControlPlaneError(
            f"Unexpected response shape from {method} {url}",
            kind=ErrorKind.FATAL,
            status_code=response.status_code,
            code="invalid_response",
        )
    return data


__all__ = ["classify_status", "request_json"]
