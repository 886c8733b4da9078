"""
HTTP plumbing for OHTTP relays and Payjoin directories.

Thin httpx wrappers: POST an encapsulated `PayjoinRequest` to the relay,
and fetch a directory's OHTTP key configuration through the relay.
All HTTP-level failures surface as `TransportFailure`.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import DEFAULT_HTTP_TIMEOUT
from .errors import TransportFailure
from .ohttp import KEYS_CONTENT_TYPE, OhttpKeys
from .request import PayjoinRequest


logger = logging.getLogger(__name__)

OHTTP_GATEWAY_PATH = "/.well-known/ohttp-gateway"


def _check(response: httpx.Response, what: str) -> bytes:
    if response.status_code != 200:
        raise TransportFailure(
            f"{what} returned HTTP {response.status_code}",
            status_code=response.status_code,
        )
    return response.content


def post(
    request: PayjoinRequest,
    client: Optional[httpx.Client] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> bytes:
    """POST the request body to the relay and return the encapsulated response."""
    logger.info("POST %s (%d bytes)", request.url, len(request.body))
    try:
        if client is not None:
            response = client.post(request.url, content=request.body, headers=request.headers)
        else:
            with httpx.Client(timeout=timeout) as owned:
                response = owned.post(request.url, content=request.body, headers=request.headers)
    except httpx.HTTPError as e:
        raise TransportFailure(f"Relay request failed: {e}") from e
    return _check(response, "Relay")


async def apost(
    request: PayjoinRequest,
    client: Optional[httpx.AsyncClient] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> bytes:
    """Async counterpart of `post`."""
    logger.info("POST %s (%d bytes)", request.url, len(request.body))
    try:
        if client is not None:
            response = await client.post(request.url, content=request.body, headers=request.headers)
        else:
            async with httpx.AsyncClient(timeout=timeout) as owned:
                response = await owned.post(request.url, content=request.body, headers=request.headers)
    except httpx.HTTPError as e:
        raise TransportFailure(f"Relay request failed: {e}") from e
    return _check(response, "Relay")


def fetch_ohttp_keys(
    directory: str,
    relay: Optional[str] = None,
    client: Optional[httpx.Client] = None,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
) -> OhttpKeys:
    """GET the directory's OHTTP key configuration, tunnelled through `relay` as a proxy."""
    url = directory.rstrip("/") + OHTTP_GATEWAY_PATH
    headers = {"Accept": KEYS_CONTENT_TYPE}
    logger.info("Fetching OHTTP keys from %s", url)
    try:
        if client is not None:
            response = client.get(url, headers=headers)
        else:
            with httpx.Client(proxy=relay, timeout=timeout) as owned:
                response = owned.get(url, headers=headers)
    except httpx.HTTPError as e:
        raise TransportFailure(f"Fetching OHTTP keys failed: {e}") from e
    return OhttpKeys.decode(_check(response, "Directory"))
