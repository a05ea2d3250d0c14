# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_rp

"""
Bounded HTTP fetch helpers.

Every network call of the RP goes through :func:`safe_fetch` so that transport failures,
timeouts and oversized bodies surface as :class:`NetworkError`.
"""

import json
from dataclasses import dataclass
from typing import Any

import httpx

from coreason_rp.exceptions import NetworkError, OversizedResponseError
from coreason_rp.utils.logger import logger

DEFAULT_MAX_BYTES = 1_000_000


@dataclass(frozen=True)
class FetchResult:
    """A fully read HTTP response."""

    status_code: int
    headers: httpx.Headers
    content: bytes
    url: str

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "").split(";")[0].strip().lower()

    def json(self) -> Any:
        return json.loads(self.content)


async def safe_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    max_bytes: int = DEFAULT_MAX_BYTES,
    **kwargs: Any,
) -> FetchResult:
    """
    Performs a request and reads the body while enforcing a size limit.

    Args:
        client: The async HTTP client.
        url: The target URL.
        method: The HTTP verb.
        max_bytes: Maximum accepted body size.
        **kwargs: Forwarded to ``httpx.AsyncClient.stream`` (headers, data, params, auth...).

    Returns:
        FetchResult: Status, headers and body. Non-2xx statuses are returned, not raised.

    Raises:
        OversizedResponseError: If the body exceeds ``max_bytes``.
        NetworkError: On timeouts and transport failures.
    """
    try:
        async with client.stream(method, url, **kwargs) as response:
            content_length = response.headers.get("Content-Length")
            if content_length:
                try:
                    if int(content_length) > max_bytes:
                        raise OversizedResponseError(f"Response from {url} too large", url=url)
                except ValueError:
                    pass

            content = bytearray()
            async for chunk in response.aiter_bytes():
                content.extend(chunk)
                if len(content) > max_bytes:
                    raise OversizedResponseError(f"Response from {url} too large", url=url)

            return FetchResult(
                status_code=response.status_code,
                headers=response.headers,
                content=bytes(content),
                url=url,
            )
    except httpx.TimeoutException as e:
        logger.warning(f"Request to {url} timed out")
        raise NetworkError(f"Request to {url} timed out: {e}", url=url) from e
    except httpx.HTTPError as e:
        logger.warning(f"Request to {url} failed: {e}")
        raise NetworkError(f"Request to {url} failed: {e}", url=url) from e


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    max_bytes: int = DEFAULT_MAX_BYTES,
    **kwargs: Any,
) -> Any:
    """
    Fetches and decodes a JSON document, treating any status >= 400 as a failure.

    Raises:
        NetworkError: On transport failures, error statuses or undecodable bodies.
    """
    result = await safe_fetch(client, url, method=method, max_bytes=max_bytes, **kwargs)
    if result.status_code >= 400:
        raise NetworkError(
            f"Unexpected HTTP status {result.status_code} from {url}",
            url=url,
            status_code=result.status_code,
        )
    try:
        return result.json()
    except ValueError as e:
        raise NetworkError(f"Invalid JSON response from {url}: {e}", url=url) from e
