"""HTTP client for provider REST APIs.

Wraps ``httpx`` so that every provider call has the same timeout and the
same mapping from HTTP failures onto the engine's error taxonomy::

    http = ProviderHttp(timeout=30)
    resp = await http.get(url, token=access_token, params={"maxResults": 50})

- 401 -> ``TokenExpired``
- 400 ``invalid_grant`` -> ``TokenRevoked``
- 429, 5xx, timeouts, network errors -> ``ProviderUnavailable``
- any other 4xx -> ``ProviderRequestError``
"""

from __future__ import annotations

import logging

import httpx

from app.core.errors import (
    ProviderRequestError,
    ProviderUnavailable,
    TokenExpired,
    TokenRevoked,
)

logger = logging.getLogger(__name__)


def check_response(resp: httpx.Response) -> httpx.Response:
    """Raise the matching engine error for a failed response."""
    status = resp.status_code
    if status < 400:
        return resp

    detail = resp.text[:500]
    if status == 401:
        raise TokenExpired(f"Provider rejected token (401): {detail}")
    if status == 400 and "invalid_grant" in detail:
        raise TokenRevoked(f"Grant revoked: {detail}")
    if status == 429 or status >= 500:
        raise ProviderUnavailable(f"Provider unavailable ({status}): {detail}")
    raise ProviderRequestError(f"Provider request failed ({status}): {detail}", status)


class ProviderHttp:
    """Thin ``httpx`` wrapper shared by the provider adapters."""

    def __init__(
        self,
        timeout: float = 30,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        url: str,
        *,
        token: str | None = None,
        params: dict | None = None,
        json: dict | None = None,
        data: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        h = dict(headers or {})
        if token:
            h["Authorization"] = f"Bearer {token}"
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                resp = await client.request(
                    method, url, params=params, json=json, data=data, headers=h
                )
        except httpx.TimeoutException as e:
            logger.warning("%s %s timed out", method, url)
            raise ProviderUnavailable(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            logger.warning("%s %s failed: %s", method, url, e)
            raise ProviderUnavailable(f"{method} {url} failed: {e}") from e
        return check_response(resp)

    async def get(
        self,
        url: str,
        *,
        token: str | None = None,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        return await self.request("GET", url, token=token, params=params, headers=headers)

    async def post(
        self,
        url: str,
        *,
        token: str | None = None,
        json: dict | None = None,
        data: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        return await self.request(
            "POST", url, token=token, json=json, data=data, headers=headers
        )
