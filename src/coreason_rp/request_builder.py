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
Construction of OpenID Connect authentication requests.
"""

import json
import time
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from authlib.common.encoding import to_bytes, to_unicode
from authlib.common.security import generate_token
from authlib.jose import JsonWebEncryption, JsonWebToken, jwt

from coreason_rp.exceptions import ConfigurationError
from coreason_rp.keys import KeySet
from coreason_rp.models import AuthorizationRequestState, ClientConfig, IssuerMetadata, requires_nonce
from coreason_rp.oidc_provider import OIDCProvider
from coreason_rp.utils.logger import logger
from coreason_rp.validator import ENC_KEY_BITS, derive_symmetric_key

REQUEST_OBJECT_LIFETIME = 300

# Unsigned request objects
_unsigned = JsonWebToken(["none"])


def ensure_nonce(response_type: str, nonce: str | None) -> None:
    """
    Raises:
        ConfigurationError: If ``response_type`` returns tokens from the authorization endpoint
            and no nonce is given.
    """
    if requires_nonce(response_type) and not nonce:
        raise ConfigurationError("nonce MUST be provided for implicit and hybrid flows", response_type=response_type)


def resolve_redirect_uri(client: ClientConfig, redirect_uri: str | None = None) -> str:
    if redirect_uri:
        return redirect_uri
    default = client.default_redirect_uri()
    if default is None:
        raise ConfigurationError("redirect_uri must be given when several redirect URIs are registered")
    return default


def create_state(
    client: ClientConfig,
    response_type: str = "code",
    redirect_uri: str | None = None,
    nonce: str | None = None,
    state: str | None = None,
    max_age: int | None = None,
) -> AuthorizationRequestState:
    """
    Generates the values an RP keeps between the authorization request and the callback.

    A nonce is generated when the response type requires one and none is given.
    """
    if nonce is None and requires_nonce(response_type):
        nonce = generate_token(32)
    return AuthorizationRequestState(
        state=state or generate_token(32),
        nonce=nonce,
        response_type=response_type,
        redirect_uri=resolve_redirect_uri(client, redirect_uri),
        max_age=max_age,
    )


def _with_openid(scope: str | None) -> str:
    scopes = (scope or "").split()
    if "openid" not in scopes:
        scopes.insert(0, "openid")
    return " ".join(scopes)


def _unsigned_jwt(claims: dict[str, Any]) -> str:
    # alg=none is only accepted by an instance that lists it
    return to_unicode(_unsigned.encode({"alg": "none"}, claims, None))


class AuthorizationRequestBuilder:
    """
    Builds authorization URLs and request objects for a registered client.

    Attributes:
        client (ClientConfig): The registered client.
        metadata (IssuerMetadata): The provider metadata.
        provider (OIDCProvider | None): Key source for encrypting request objects to the OP.
    """

    def __init__(
        self,
        client: ClientConfig,
        metadata: IssuerMetadata,
        provider: OIDCProvider | None = None,
    ) -> None:
        self.client = client
        self.metadata = metadata
        self.provider = provider

    def _redirect_uri(self, redirect_uri: str | None) -> str:
        return resolve_redirect_uri(self.client, redirect_uri)

    def create_state(self, response_type: str = "code", **kwargs: Any) -> AuthorizationRequestState:
        return create_state(self.client, response_type, **kwargs)

    def authorization_params(
        self,
        response_type: str = "code",
        scope: str | None = "openid",
        redirect_uri: str | None = None,
        nonce: str | None = None,
        state: str | None = None,
        claims: dict[str, Any] | str | None = None,
        request_uri: str | None = None,
        request: str | None = None,
        response_mode: str | None = None,
        prompt: str | None = None,
        max_age: int | None = None,
        **extra: Any,
    ) -> dict[str, str]:
        """Returns the authorization request parameters, in insertion order."""
        ensure_nonce(response_type, nonce)

        params: dict[str, Any] = {
            "client_id": self.client.client_id,
            "response_type": response_type,
            "scope": _with_openid(scope),
            "redirect_uri": self._redirect_uri(redirect_uri),
            "state": state,
            "nonce": nonce,
            "response_mode": response_mode,
            "prompt": prompt,
            "max_age": max_age,
            "claims": json.dumps(claims) if isinstance(claims, dict) else claims,
            "request_uri": request_uri,
            "request": request,
        }
        params.update(extra)
        return {k: str(v) for k, v in params.items() if v is not None}

    def authorization_url(self, response_type: str = "code", **kwargs: Any) -> str:
        """
        Builds the URL the end user is redirected to.

        Accepts the parameters of :meth:`authorization_params`. Parameters already present
        in the endpoint's query are preserved.

        Raises:
            ConfigurationError: If a nonce is required and missing, or the redirect URI is
                ambiguous, or the provider has no authorization endpoint.
        """
        params = self.authorization_params(response_type, **kwargs)
        if not self.metadata.authorization_endpoint:
            raise ConfigurationError("authorization_endpoint must be configured")

        parts = urlsplit(self.metadata.authorization_endpoint)
        query = parse_qsl(parts.query, keep_blank_values=True)
        existing = {name for name, _ in query}
        query.extend((name, value) for name, value in params.items() if name not in existing)
        return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))

    async def request_object(self, **params: Any) -> str:
        """
        Builds a request object carrying the authorization parameters.

        The object is signed with ``request_object_signing_alg`` (unsigned for ``none``) and,
        when ``request_object_encryption_alg`` is registered, encrypted to the OP.

        Returns:
            str: The compact JWT (or JWE).
        """
        response_type = params.get("response_type", "code")
        ensure_nonce(response_type, params.get("nonce"))

        now = int(time.time())
        claims: dict[str, Any] = {k: v for k, v in params.items() if v is not None}
        claims.setdefault("response_type", response_type)
        claims["client_id"] = self.client.client_id
        claims["scope"] = _with_openid(claims.get("scope"))
        claims["redirect_uri"] = self._redirect_uri(claims.get("redirect_uri"))
        claims.update(
            {
                "iss": self.client.client_id,
                "aud": self.metadata.issuer,
                "iat": now,
                "exp": now + REQUEST_OBJECT_LIFETIME,
                "jti": generate_token(32),
            }
        )

        alg = self.client.request_object_signing_alg or "none"
        if alg == "none":
            signed = _unsigned_jwt(claims)
        elif alg.startswith("HS"):
            signed = to_unicode(jwt.encode({"alg": alg}, claims, to_bytes(self.client.secret or "")))
        else:
            key = self._signing_key(alg)
            header = {"alg": alg}
            if key.get("kid"):
                header["kid"] = key["kid"]
            signed = to_unicode(jwt.encode(header, claims, key))

        if not self.client.request_object_encryption_alg:
            logger.debug(f"Built request object (alg={alg})")
            return signed
        return await self._encrypt(signed)

    def _signing_key(self, alg: str) -> dict[str, Any]:
        keys = KeySet.from_jwks({"keys": self.client.private_jwks()})
        return keys.resolve(alg)

    async def _encrypt(self, payload: str) -> str:
        alg = self.client.request_object_encryption_alg or ""
        enc = self.client.request_object_encryption_enc or ""
        header: dict[str, Any] = {"alg": alg, "enc": enc, "cty": "JWT"}

        if alg == "dir" or (alg.startswith("A") and alg.endswith("KW")):
            bits = ENC_KEY_BITS.get(enc) if alg == "dir" else int(alg[1:4])
            if bits is None:
                raise ConfigurationError(f"unsupported request object enc {enc}")
            key: Any = derive_symmetric_key(self.client.secret or "", bits)
        else:
            if self.provider is None:
                raise ConfigurationError("encrypting request objects to the OP requires its JWKS")
            key_set = await self.provider.get_key_set()
            key = key_set.resolve(alg, use="enc")
            if key.get("kid"):
                header["kid"] = key["kid"]

        logger.debug(f"Encrypting request object (alg={alg}, enc={enc})")
        return to_unicode(JsonWebEncryption().serialize_compact(header, to_bytes(payload), key))
