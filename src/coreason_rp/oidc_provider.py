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
OIDC Provider component for issuer discovery, JWKS caching and dynamic client registration.
"""

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlsplit

import anyio
import httpx
from authlib.jose import JsonWebKey
from opentelemetry import trace
from pydantic import ValidationError

from coreason_rp.config import discovery_url_for
from coreason_rp.exceptions import (
    ConfigurationError,
    DiscoveryError,
    ErrorKind,
    NetworkError,
    OversizedResponseError,
    RegistrationError,
)
from coreason_rp.keys import KeySet
from coreason_rp.models import ClientConfig, IssuerMetadata
from coreason_rp.transport import DEFAULT_MAX_BYTES, safe_fetch, safe_json_fetch
from coreason_rp.utils.logger import logger

tracer = trace.get_tracer(__name__)

WEBFINGER_ISSUER_REL = "http://openid.net/specs/connect/1.0/issuer"


class OIDCProvider:
    """
    Fetches and caches the OpenID Provider's configuration and JWKS.

    The cached :class:`KeySet` is replaced wholesale on refresh (copy-and-swap), so a
    validation holding a reference to the previous set never observes a partial update.

    Attributes:
        issuer (str): The issuer identifier, compared exactly with discovered metadata.
        discovery_url (str): The OIDC discovery URL.
        cache_ttl (float): Age in seconds after which a non-forced read refreshes the JWKS.
    """

    def __init__(
        self,
        issuer: str,
        client: httpx.AsyncClient,
        cache_ttl: float = 3600.0,
        max_response_bytes: int = DEFAULT_MAX_BYTES,
        metadata: IssuerMetadata | None = None,
        discovery_url: str | None = None,
    ) -> None:
        """
        Initialize the OIDCProvider.

        Args:
            issuer: The issuer identifier (e.g., https://op.example.com/tenant).
            client: The async HTTP client to use for requests.
            cache_ttl: Time-to-live for the JWKS cache in seconds. Defaults to 3600 (1 hour).
            max_response_bytes: Maximum size of discovery and JWKS documents.
            metadata: Statically configured provider metadata, skipping discovery.
            discovery_url: The discovery document URL. Derived from the issuer when omitted.
        """
        self.issuer = issuer
        self.discovery_url = discovery_url or discovery_url_for(issuer)
        self.client = client
        self.cache_ttl = cache_ttl
        self.max_response_bytes = max_response_bytes
        self._metadata: IssuerMetadata | None = metadata
        self._key_set: KeySet | None = None
        self._epoch = 0
        self._lock: anyio.Lock | None = None

    async def _fetch_json(self, url: str, what: str) -> Any:
        """
        Fetches a JSON document.

        Retries on `NetworkError` up to 3 times with exponential backoff (initial=0.1s, max=1.0s).

        Raises:
            NetworkError: If the request fails after retries.
            OversizedResponseError: Immediately, without retrying.
        """
        attempts = 3
        wait_initial = 0.1
        wait_max = 1.0

        for attempt in range(attempts):
            try:
                return await safe_json_fetch(self.client, url, max_bytes=self.max_response_bytes)
            except NetworkError as e:
                # Do not retry fatal errors
                if isinstance(e, OversizedResponseError):
                    raise

                # If it's the last attempt, wrap and raise
                if attempt == attempts - 1:
                    raise NetworkError(f"Failed to fetch {what} from {url}: {e}", url=url) from e

                sleep_time = min(wait_initial * (2**attempt), wait_max)
                logger.debug(f"Fetching {what} failed (attempt {attempt + 1}), retrying in {sleep_time}s")
                await anyio.sleep(sleep_time)

        raise NetworkError(f"Failed to fetch {what} from {url}")  # pragma: no cover

    async def discover(self) -> IssuerMetadata:
        """
        Fetches ``{issuer}/.well-known/openid-configuration`` and caches it.

        Returns:
            IssuerMetadata: The provider metadata.

        Raises:
            DiscoveryError: If the document is malformed or names a different issuer.
            NetworkError: If fetching fails.
        """
        # Fetch with retries, then validate strictly with pydantic
        data = await self._fetch_json(self.discovery_url, "OIDC configuration")
        if not isinstance(data, dict):
            raise DiscoveryError(f"Invalid OIDC configuration from {self.discovery_url}: expected a JSON object")
        try:
            metadata = IssuerMetadata(**data)
        except ValidationError as e:
            raise DiscoveryError(f"Invalid OIDC configuration from {self.discovery_url}: {e}") from e

        # Exact string comparison, no normalization
        if metadata.issuer != self.issuer:
            logger.warning(f"Discovered issuer {metadata.issuer} does not match {self.issuer}")
            raise DiscoveryError(
                "discovered issuer mismatch",
                kind=ErrorKind.ISSUER_MISMATCH,
                expected=self.issuer,
                got=metadata.issuer,
            )

        logger.info(f"Discovered issuer {metadata.issuer}")
        self._metadata = metadata
        return metadata

    async def get_metadata(self) -> IssuerMetadata:
        """Returns the cached metadata, discovering it on first use."""
        if self._metadata is None:
            return await self.discover()
        return self._metadata

    async def get_issuer(self) -> str:
        metadata = await self.get_metadata()
        return metadata.issuer

    @property
    def key_set(self) -> KeySet | None:
        """The currently cached key set, if any."""
        return self._key_set

    async def _fetch_key_set(self) -> KeySet:
        metadata = await self.get_metadata()
        if not metadata.jwks_uri:
            raise DiscoveryError("OIDC configuration does not contain 'jwks_uri'")

        # Fetch JWKS with retries; KeySet drops entries that do not import as a JWK
        data = await self._fetch_json(metadata.jwks_uri, "JWKS")
        try:
            key_set = KeySet.from_jwks(data, epoch=self._epoch + 1)
        except ValueError as e:
            raise DiscoveryError(f"Invalid JWKS from {metadata.jwks_uri}: {e}") from e
        return key_set

    async def _refresh_key_set_critical_section(self, force_refresh: bool, seen_epoch: int | None) -> KeySet:
        """
        Critical section for refreshing the key set.
        Must be called while holding the lock.
        """
        current = self._key_set
        # Check existing cache validity (Double check inside lock)
        is_cache_valid = current is not None and current.age() < self.cache_ttl

        # Normal cache hit
        if not force_refresh and is_cache_valid:
            return current  # type: ignore[return-value]

        # Another task already rotated past the set the caller saw
        if force_refresh and current is not None and seen_epoch is not None and current.epoch > seen_epoch:
            logger.debug(f"JWKS already refreshed to epoch {current.epoch}, skipping fetch")
            return current

        with tracer.start_as_current_span("refresh_jwks") as span:
            key_set = await self._fetch_key_set()
            span.set_attribute("jwks.keys", len(key_set))
            span.set_attribute("jwks.epoch", key_set.epoch)

        # Swap in the new snapshot
        self._epoch = key_set.epoch
        self._key_set = key_set
        logger.info(f"JWKS refreshed: {len(key_set)} keys, epoch {key_set.epoch}")
        return key_set

    async def get_key_set(self, force_refresh: bool = False, seen_epoch: int | None = None) -> KeySet:
        """
        Returns the JWKS, using the cache if valid.

        Args:
            force_refresh: If True, bypasses the cache and fetches fresh keys.
            seen_epoch: Epoch of the key set the caller found lacking. A forced refresh is
                skipped when the cache has already moved past it.

        Returns:
            KeySet: An immutable key set snapshot.

        Raises:
            DiscoveryError: If the provider metadata or JWKS is malformed.
            NetworkError: If fetching fails.
        """
        # Lazily create the lock inside the running event loop
        if self._lock is None:
            self._lock = anyio.Lock()

        # Double-checked locking (Check 1: No lock)
        if not force_refresh:
            current = self._key_set
            if current is not None and current.age() < self.cache_ttl:
                return current

        # Check 2: under the lock, another task may have refreshed already
        async with self._lock:
            return await self._refresh_key_set_critical_section(force_refresh, seen_epoch)


def _webfinger_target(resource: str) -> tuple[str, str]:
    """
    Normalizes a user input to a WebFinger ``(resource, host)`` pair.

    Supports URLs, ``acct:`` URIs, e-mail style identifiers and bare hosts.
    """
    resource = resource.strip()
    if "://" in resource:
        host = urlsplit(resource).netloc
    elif resource.startswith("acct:"):
        host = resource.rsplit("@", 1)[-1]
    elif "@" in resource:
        host = resource.rsplit("@", 1)[-1]
        resource = f"acct:{resource}"
    else:
        host = resource.split("/", 1)[0]
        resource = f"https://{resource}"
    if not host:
        raise DiscoveryError(f"Cannot determine host for WebFinger resource {resource}")
    return resource, host


async def webfinger(
    resource: str,
    client: httpx.AsyncClient,
    cache_ttl: float = 3600.0,
    max_response_bytes: int = DEFAULT_MAX_BYTES,
) -> OIDCProvider:
    """
    Discovers the issuer for a user identifier through WebFinger and then runs OIDC discovery.

    Args:
        resource: A URL, ``acct:`` URI, e-mail style identifier or host.
        client: The async HTTP client to use for requests.

    Returns:
        OIDCProvider: A provider whose metadata is already discovered.

    Raises:
        DiscoveryError: If no issuer link is returned or the discovered issuer differs from it.
        NetworkError: If fetching fails.
    """
    resource, host = _webfinger_target(resource)
    url = f"https://{host}/.well-known/webfinger"
    data = await safe_json_fetch(
        client,
        url,
        max_bytes=max_response_bytes,
        params={"resource": resource, "rel": WEBFINGER_ISSUER_REL},
        headers={"Accept": "application/json"},
    )

    links = data.get("links") if isinstance(data, dict) else None
    href = None
    if isinstance(links, list):
        for link in links:
            if isinstance(link, dict) and link.get("rel") == WEBFINGER_ISSUER_REL and link.get("href"):
                href = str(link["href"])
                break
    if href is None:
        raise DiscoveryError(f"No issuer found in WebFinger response for {resource}")

    logger.debug(f"WebFinger resolved {resource} to issuer {href}")
    provider = OIDCProvider(href, client, cache_ttl=cache_ttl, max_response_bytes=max_response_bytes)
    await provider.discover()
    return provider


def _public_jwks(jwks: dict[str, Any]) -> dict[str, Any]:
    """Returns the public part of the client's asymmetric keys."""
    keys = []
    for entry in jwks.get("keys", []):
        # Symmetric keys are never published
        if not isinstance(entry, dict) or entry.get("kty") == "oct":
            continue
        keys.append(JsonWebKey.import_key(entry).as_dict(is_private=False))
    return {"keys": keys}


async def register(
    metadata: IssuerMetadata,
    client: httpx.AsyncClient,
    properties: Mapping[str, Any],
    jwks: dict[str, Any] | None = None,
    initial_access_token: str | None = None,
    max_response_bytes: int = DEFAULT_MAX_BYTES,
) -> ClientConfig:
    """
    Registers a client with the provider's registration endpoint.

    Emits an OpenTelemetry span `register_client`.

    Args:
        metadata: The provider metadata, naming the ``registration_endpoint``.
        client: The async HTTP client to use for requests.
        properties: The client metadata to register (``redirect_uris``, ``response_types``...).
        jwks: The client's private JWK set. Its public part is registered unless ``properties``
            already names ``jwks`` or ``jwks_uri``; the private set is kept in the returned config.
        initial_access_token: Bearer token authorizing the registration, if the provider requires one.

    Returns:
        ClientConfig: The registered client, built from the provider's response.

    Raises:
        ConfigurationError: If the provider has no registration endpoint.
        RegistrationError: If the provider rejects the metadata or answers with an invalid client.
        NetworkError: On transport failures and unexpected responses.
    """
    endpoint = metadata.registration_endpoint
    if not endpoint:
        raise ConfigurationError("Provider metadata does not contain 'registration_endpoint'")

    body = dict(properties)
    # Publish the public keys alongside the metadata
    if jwks is not None and "jwks" not in body and "jwks_uri" not in body:
        body["jwks"] = _public_jwks(jwks)

    headers = {"Accept": "application/json"}
    if initial_access_token:
        headers["Authorization"] = f"Bearer {initial_access_token}"

    with tracer.start_as_current_span("register_client") as span:
        result = await safe_fetch(
            client, endpoint, method="POST", max_bytes=max_response_bytes, json=body, headers=headers
        )
        span.set_attribute("http.status_code", result.status_code)

    try:
        payload = result.json()
    except ValueError as e:
        raise NetworkError(
            f"Invalid JSON response from registration endpoint (status {result.status_code})",
            url=endpoint,
            status_code=result.status_code,
        ) from e

    # OAuth error responses carry an error code
    if isinstance(payload, dict) and payload.get("error"):
        logger.warning(f"Client registration rejected: {payload['error']}")
        raise RegistrationError(payload["error"], payload.get("error_description"))
    if result.status_code not in (200, 201) or not isinstance(payload, dict):
        raise NetworkError(
            f"Unexpected response from registration endpoint (status {result.status_code})",
            url=endpoint,
            status_code=result.status_code,
        )

    # The private key set stays with the client
    if jwks is not None:
        payload["jwks"] = jwks
    try:
        registered = ClientConfig(**payload)
    except ValidationError as e:
        raise RegistrationError("invalid_client_metadata", f"Invalid registration response: {e}") from e

    logger.info(f"Registered client {registered.client_id}")
    return registered
