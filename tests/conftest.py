# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_rp

import time
from collections.abc import AsyncGenerator, Callable
from typing import Any

import httpx
import pytest
import pytest_asyncio
from authlib.jose import JsonWebKey, jwt

from coreason_rp.models import ClientConfig, IssuerMetadata
from coreason_rp.oidc_provider import OIDCProvider

ISSUER = "https://op.example.com"
CLIENT_ID = "client-123"
CLIENT_SECRET = "a-sufficiently-long-client-secret-for-hs512-signatures-0123456789"
REDIRECT_URI = "https://rp.example.com/cb"


class FakeOP:
    """An OpenID Provider served in-memory through httpx.MockTransport."""

    def __init__(self, issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.keys: list[dict[str, Any]] = []
        self.requests: list[httpx.Request] = []
        self.jwks_fetches = 0
        self.token_status = 200
        self.token_response: dict[str, Any] = {}
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.metadata: dict[str, Any] = {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
            "jwks_uri": f"{issuer}/jwks",
            "response_types_supported": ["code", "id_token", "code id_token", "id_token token"],
            "id_token_signing_alg_values_supported": ["RS256", "HS256", "none"],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path in self.routes:
            return self.routes[path](request)
        if path == "/.well-known/openid-configuration":
            return httpx.Response(200, json=self.metadata)
        if path == "/jwks":
            self.jwks_fetches += 1
            return httpx.Response(200, json={"keys": self.keys})
        if path == "/token":
            return httpx.Response(self.token_status, json=self.token_response)
        return httpx.Response(404)

    def requests_to(self, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def public_jwk(key: Any, **params: Any) -> dict[str, Any]:
    return {**key.as_dict(is_private=False), **params}


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "rsa-1"})


@pytest.fixture(scope="session")
def rsa_key_2() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "rsa-2"})


@pytest.fixture(scope="session")
def ec_key() -> Any:
    return JsonWebKey.generate_key("EC", "P-256", is_private=True, options={"kid": "ec-1"})


@pytest.fixture
def fake_op(rsa_key: Any) -> FakeOP:
    op = FakeOP()
    op.keys = [public_jwk(rsa_key, use="sig", alg="RS256")]
    return op


@pytest_asyncio.fixture
async def http_client(fake_op: FakeOP) -> AsyncGenerator[httpx.AsyncClient, None]:
    async with fake_op.http_client() as client:
        yield client


@pytest.fixture
def provider(fake_op: FakeOP, http_client: httpx.AsyncClient) -> OIDCProvider:
    return OIDCProvider(ISSUER, http_client)


@pytest.fixture
def static_provider(fake_op: FakeOP, http_client: httpx.AsyncClient) -> OIDCProvider:
    return OIDCProvider(ISSUER, http_client, metadata=IssuerMetadata(**fake_op.metadata))


@pytest.fixture
def client_config() -> ClientConfig:
    return ClientConfig(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        redirect_uris=[REDIRECT_URI],
        response_types=["code", "id_token", "code id_token", "id_token token", "code id_token token"],
    )


def id_token_claims(**overrides: Any) -> dict[str, Any]:
    now = int(time.time())
    claims: dict[str, Any] = {
        "iss": ISSUER,
        "sub": "user-42",
        "aud": CLIENT_ID,
        "exp": now + 300,
        "iat": now,
    }
    claims.update(overrides)
    return {k: v for k, v in claims.items() if v is not None}


def sign(claims: dict[str, Any], key: Any, alg: str = "RS256", **headers: Any) -> str:
    header = {"alg": alg, **headers}
    if "kid" not in header and hasattr(key, "as_dict"):
        header["kid"] = key.as_dict()["kid"]
    header = {k: v for k, v in header.items() if v is not None}
    return jwt.encode(header, claims, key).decode("utf-8")


@pytest.fixture
def make_id_token(rsa_key: Any) -> Callable[..., str]:
    def _make(key: Any = None, alg: str = "RS256", headers: dict[str, Any] | None = None, **overrides: Any) -> str:
        return sign(id_token_claims(**overrides), key if key is not None else rsa_key, alg, **(headers or {}))

    return _make
