"""Shared httpx plumbing that maps HTTP failures onto the ingest error taxonomy."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from ..exceptions import (
    AuthenticationError,
    AuthorizationError,
    ProtocolError,
    ResourceNotFoundError,
    TransientTransportError,
)

USER_AGENT = "relay-ingestor/1.0"
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header given either as seconds or an HTTP date."""
    if value is None:
        return None
    trimmed = value.strip()
    if trimmed == "":
        return None
    if trimmed.isdigit():
        return max(float(trimmed), 0.0)
    try:
        parsed = parsedate_to_datetime(trimmed)
    except (TypeError, ValueError):
        return None
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    delay = (parsed - datetime.now(timezone.utc)).total_seconds()
    return max(delay, 0.0)


def _body_excerpt(response: httpx.Response, limit: int = 200) -> str:
    try:
        text = response.text
    except (UnicodeDecodeError, httpx.ResponseNotRead):
        return ""
    return text[:limit].strip()


def raise_for_status(response: httpx.Response, *, resource: str) -> None:
    """
    Raise the taxonomy error matching a non-2xx response.

    Args:
        response: Completed response
        resource: Human-readable description of what was requested

    Raises:
        AuthenticationError: 401
        AuthorizationError: 403
        ResourceNotFoundError: 404
        TransientTransportError: 408, 425, 429 and 5xx (with ``retry_after``)
        ProtocolError: Any other non-2xx status
    """
    status = response.status_code
    if 200 <= status < 300 or status == 304:
        return

    detail = _body_excerpt(response)
    suffix = f": {detail}" if detail else ""
    if status == 401:
        raise AuthenticationError(f"{resource} rejected the credential (HTTP 401){suffix}")
    if status == 403:
        raise AuthorizationError(f"{resource} denied access (HTTP 403){suffix}")
    if status == 404:
        raise ResourceNotFoundError(f"{resource} was not found (HTTP 404)")
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise TransientTransportError(
            f"{resource} is temporarily unavailable (HTTP {status})",
            retry_after=parse_retry_after(response.headers.get("retry-after")),
        )
    raise ProtocolError(f"{resource} returned unexpected HTTP {status}{suffix}")


def build_client(
    *,
    transport: Any | None = None,
    timeout: float = 15.0,
    base_url: str | None = None,
    headers: dict[str, str] | None = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient honouring an injected transport."""
    client_kwargs: dict[str, Any] = {
        "timeout": timeout,
        "headers": {"User-Agent": USER_AGENT, **(headers or {})},
        "follow_redirects": True,
    }
    if base_url:
        client_kwargs["base_url"] = base_url
    if transport is not None:
        client_kwargs["transport"] = transport
    return httpx.AsyncClient(**client_kwargs)


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    resource: str,
    **kwargs: Any,
) -> httpx.Response:
    """Issue one request; transport failures become ``TransientTransportError``."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as exc:
        raise TransientTransportError(f"{resource} timed out") from exc
    except httpx.HTTPError as exc:
        raise TransientTransportError(f"{resource} request failed: {exc}") from exc
    raise_for_status(response, resource=resource)
    return response


def decode_json(response: httpx.Response, *, resource: str) -> Any:
    """Decode a JSON body; anything undecodable is a ``ProtocolError``."""
    try:
        return response.json()
    except ValueError as exc:
        raise ProtocolError(f"{resource} returned a body that is not JSON") from exc
