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
Token endpoint client: authorization code exchange and refresh with client authentication.
"""

import base64
import time
from typing import Any
from urllib.parse import quote_plus

import httpx
from authlib.common.encoding import json_loads, to_unicode
from authlib.common.security import generate_token
from authlib.jose import jwt

from coreason_rp.exceptions import ConfigurationError, NetworkError, TokenEndpointError
from coreason_rp.keys import default_alg_for_key
from coreason_rp.models import ClientConfig, IssuerMetadata, TokenEndpointAuthMethod
from coreason_rp.transport import DEFAULT_MAX_BYTES, safe_fetch
from coreason_rp.utils.logger import logger

ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
ASSERTION_LIFETIME = 60


class TokenEndpointClient:
    """
    Calls the OP's token endpoint on behalf of the client.

    Attributes:
        client (ClientConfig): The registered client, including its authentication method.
        metadata (IssuerMetadata): The provider metadata holding ``token_endpoint``.
        http_client (httpx.AsyncClient): The async HTTP client to use for requests.
    """

    def __init__(
        self,
        client: ClientConfig,
        metadata: IssuerMetadata,
        http_client: httpx.AsyncClient,
        max_response_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.client = client
        self.metadata = metadata
        self.http_client = http_client
        self.max_response_bytes = max_response_bytes

    @property
    def endpoint(self) -> str:
        if not self.metadata.token_endpoint:
            raise ConfigurationError("token_endpoint must be configured")
        return self.metadata.token_endpoint

    def _client_assertion(self, alg: str, key: Any, headers: dict[str, Any] | None = None) -> str:
        now = int(time.time())
        claims = {
            "iss": self.client.client_id,
            "sub": self.client.client_id,
            "aud": self.endpoint,
            "jti": generate_token(32),
            "iat": now,
            "exp": now + ASSERTION_LIFETIME,
        }
        header = {"alg": alg, **(headers or {})}
        return to_unicode(jwt.encode(header, claims, key))

    def authenticate(self, data: dict[str, str]) -> dict[str, str]:
        """
        Adds client authentication to a token request.

        Args:
            data: The form body; credentials carried in the body are added to it.

        Returns:
            dict[str, str]: The HTTP headers to send.
        """
        method = self.client.token_endpoint_auth_method
        secret = self.client.secret
        headers: dict[str, str] = {}

        if method == TokenEndpointAuthMethod.CLIENT_SECRET_BASIC:
            # RFC 6749 section 2.3.1: form-urlencode before base64
            credentials = f"{quote_plus(self.client.client_id)}:{quote_plus(secret or '')}"
            headers["Authorization"] = f"Basic {base64.b64encode(credentials.encode('utf-8')).decode('ascii')}"
        elif method == TokenEndpointAuthMethod.CLIENT_SECRET_POST:
            data["client_id"] = self.client.client_id
            data["client_secret"] = secret or ""
        elif method == TokenEndpointAuthMethod.CLIENT_SECRET_JWT:
            data["client_id"] = self.client.client_id
            data["client_assertion_type"] = ASSERTION_TYPE
            data["client_assertion"] = self._client_assertion("HS256", (secret or "").encode("utf-8"))
        elif method == TokenEndpointAuthMethod.PRIVATE_KEY_JWT:
            private_keys = [k for k in self.client.private_jwks() if k.get("use", "sig") == "sig"]
            if not private_keys:
                raise ConfigurationError("private_key_jwt requires a private signing key in the client's jwks")
            key = private_keys[0]
            alg = key.get("alg") or default_alg_for_key(key)
            key_headers = {"kid": key["kid"]} if key.get("kid") else None
            data["client_id"] = self.client.client_id
            data["client_assertion_type"] = ASSERTION_TYPE
            data["client_assertion"] = self._client_assertion(alg, key, key_headers)
        else:
            data["client_id"] = self.client.client_id
        return headers

    async def request(self, data: dict[str, str]) -> dict[str, Any]:
        """
        POSTs a grant to the token endpoint.

        Raises:
            TokenEndpointError: If the OP answers with an OAuth error.
            NetworkError: On transport failures or a non-JSON error body.
        """
        body = dict(data)
        headers = self.authenticate(body)
        headers["Accept"] = "application/json"

        logger.debug(f"Token request: grant_type={body.get('grant_type')}")
        result = await safe_fetch(
            self.http_client,
            self.endpoint,
            method="POST",
            max_bytes=self.max_response_bytes,
            data=body,
            headers=headers,
        )

        try:
            payload = json_loads(result.text)
        except ValueError as e:
            raise NetworkError(
                f"Invalid JSON response from token endpoint (status {result.status_code})",
                url=self.endpoint,
                status_code=result.status_code,
            ) from e

        if isinstance(payload, dict) and payload.get("error"):
            logger.warning(f"Token endpoint error: {payload['error']}")
            raise TokenEndpointError(payload["error"], payload.get("error_description"))
        if result.status_code >= 400 or not isinstance(payload, dict):
            raise NetworkError(
                f"Unexpected response from token endpoint (status {result.status_code})",
                url=self.endpoint,
                status_code=result.status_code,
            )
        return payload

    async def exchange_code(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """Exchanges an authorization code for tokens."""
        return await self.request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str, scope: str | None = None) -> dict[str, Any]:
        """Uses a refresh token to obtain new tokens."""
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scope:
            data["scope"] = scope
        return await self.request(data)
