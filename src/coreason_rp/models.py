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
Data models for the coreason-rp package.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator

DEFAULT_CONTENT_ENCRYPTION = "A128CBC-HS256"

# Response types carrying tokens from the authorization endpoint.
IMPLICIT_RESPONSE_TYPES = frozenset({"id_token", "id_token token"})
HYBRID_RESPONSE_TYPES = frozenset({"code id_token", "code token", "code id_token token"})


def normalize_response_type(response_type: str) -> str:
    """Returns the canonical, space-separated form of a response_type ("token code" -> "code token")."""
    order = {"code": 0, "id_token": 1, "token": 2, "none": 3}
    parts = sorted(set(response_type.split()), key=lambda p: (order.get(p, 99), p))
    return " ".join(parts)


def requires_nonce(response_type: str) -> bool:
    """True for implicit and hybrid response types, where the ID Token travels through the front channel."""
    parts = response_type.split()
    return "token" in parts or "id_token" in parts


class TokenEndpointAuthMethod(StrEnum):
    CLIENT_SECRET_BASIC = "client_secret_basic"
    CLIENT_SECRET_POST = "client_secret_post"
    CLIENT_SECRET_JWT = "client_secret_jwt"
    PRIVATE_KEY_JWT = "private_key_jwt"
    NONE = "none"


class ClientConfig(BaseModel):
    """
    Registered client metadata.

    This model is frozen: it is fixed at registration time and owned by a single RP session.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    client_id: str = Field(..., min_length=1)
    client_secret: SecretStr | None = None
    redirect_uris: frozenset[str]
    response_types: frozenset[str] = frozenset({"code"})
    grant_types: frozenset[str] = frozenset({"authorization_code"})
    token_endpoint_auth_method: TokenEndpointAuthMethod = TokenEndpointAuthMethod.CLIENT_SECRET_BASIC
    id_token_signed_response_alg: str = "RS256"
    id_token_encrypted_response_alg: str | None = None
    id_token_encrypted_response_enc: str | None = None
    userinfo_signed_response_alg: str | None = None
    userinfo_encrypted_response_alg: str | None = None
    userinfo_encrypted_response_enc: str | None = None
    request_object_signing_alg: str | None = None
    request_object_encryption_alg: str | None = None
    request_object_encryption_enc: str | None = None
    jwks: dict[str, Any] | None = Field(default=None, description="The client's own (private) JWK set.")
    jwks_uri: str | None = None

    @model_validator(mode="before")
    @classmethod
    def default_content_encryption(cls, data: Any) -> Any:
        """
        Defaults every ``*_enc`` to A128CBC-HS256 when its ``*_alg`` counterpart is registered.
        """
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for prefix in ("id_token_encrypted_response", "userinfo_encrypted_response", "request_object_encryption"):
            if data.get(f"{prefix}_alg") and not data.get(f"{prefix}_enc"):
                data[f"{prefix}_enc"] = DEFAULT_CONTENT_ENCRYPTION
        return data

    @field_validator("redirect_uris", "response_types", "grant_types", mode="before")
    @classmethod
    def ensure_set(cls, v: Any) -> Any:
        if isinstance(v, str):
            return frozenset({v})
        return v

    @field_validator("response_types", mode="after")
    @classmethod
    def normalize_response_types(cls, v: frozenset[str]) -> frozenset[str]:
        return frozenset(normalize_response_type(rt) for rt in v)

    @field_validator("redirect_uris", mode="after")
    @classmethod
    def require_redirect_uri(cls, v: frozenset[str]) -> frozenset[str]:
        if not v:
            raise ValueError("At least one redirect_uri must be registered.")
        return v

    @model_validator(mode="after")
    def check_key_material(self) -> "ClientConfig":
        """
        Ensures the client holds the secrets/keys its registered algorithms and auth method need.
        """
        hmac_algs = [
            alg
            for alg in (
                self.id_token_signed_response_alg,
                self.userinfo_signed_response_alg,
                self.request_object_signing_alg,
            )
            if alg and alg.startswith("HS")
        ]
        secret_auth = self.token_endpoint_auth_method in (
            TokenEndpointAuthMethod.CLIENT_SECRET_BASIC,
            TokenEndpointAuthMethod.CLIENT_SECRET_POST,
            TokenEndpointAuthMethod.CLIENT_SECRET_JWT,
        )
        if (hmac_algs or secret_auth) and self.client_secret is None:
            raise ValueError("client_secret is required for HMAC algorithms and client_secret_* authentication.")

        if self.token_endpoint_auth_method == TokenEndpointAuthMethod.PRIVATE_KEY_JWT and not self.private_jwks():
            raise ValueError("private_key_jwt authentication requires a private key in 'jwks'.")

        for alg in (self.id_token_encrypted_response_alg, self.userinfo_encrypted_response_alg):
            if alg and alg.startswith(("RSA", "ECDH")) and not self.private_jwks():
                raise ValueError(f"Decrypting {alg} responses requires a private key in 'jwks'.")
        return self

    @property
    def secret(self) -> str | None:
        """The plain client secret, or None."""
        return self.client_secret.get_secret_value() if self.client_secret else None

    def private_jwks(self) -> list[dict[str, Any]]:
        """Returns the private JWKs (those carrying ``d``) of the client's own key set."""
        if not self.jwks:
            return []
        return [k for k in self.jwks.get("keys", []) if isinstance(k, dict) and "d" in k]

    def default_redirect_uri(self) -> str | None:
        if len(self.redirect_uris) == 1:
            return next(iter(self.redirect_uris))
        return None


class IssuerMetadata(BaseModel):
    """
    OpenID Provider configuration from .well-known/openid-configuration.

    Unknown fields are kept so that the full discovery document is available to callers.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: str = Field(..., description="The OIDC issuer URL.")
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    userinfo_endpoint: str | None = None
    jwks_uri: str | None = Field(default=None, description="The URL to the JWKS.")
    registration_endpoint: str | None = None
    end_session_endpoint: str | None = None
    scopes_supported: list[str] | None = None
    response_types_supported: list[str] | None = None
    id_token_signing_alg_values_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None
    claims_parameter_supported: bool = False
    request_uri_parameter_supported: bool = True


class AuthorizationRequestState(BaseModel):
    """
    Correlation values for one authorization attempt. Consumed exactly once by its callback.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str | None = None
    response_type: str = "code"
    redirect_uri: str
    max_age: int | None = None

    @field_validator("response_type", mode="after")
    @classmethod
    def canonical_response_type(cls, v: str) -> str:
        return normalize_response_type(v)


class AuthorizationResponse(BaseModel):
    """
    Parameters extracted from a redirect or a form_post body.

    Parameters that are not modelled explicitly are kept as extra fields.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    code: str | None = None
    id_token: str | None = None
    access_token: str | None = None
    token_type: str | None = None
    expires_in: str | None = None
    scope: str | None = None
    state: str | None = None
    session_state: str | None = None
    error: str | None = None
    error_description: str | None = None
    error_uri: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    @property
    def params(self) -> dict[str, str]:
        """All non-empty parameters as a flat mapping."""
        return {k: v for k, v in self.model_dump().items() if v is not None}


class ValidatedIDToken(BaseModel):
    """
    Claims of an ID Token that passed every validation step.

    Only the validator constructs instances; there is no partially validated form.
    """

    model_config = ConfigDict(frozen=True)

    iss: str
    sub: str
    aud: tuple[str, ...]
    exp: int
    iat: int
    nonce: str | None = None
    at_hash: str | None = None
    c_hash: str | None = None
    azp: str | None = None
    auth_time: int | None = None
    claims: dict[str, Any] = Field(default_factory=dict)
    alg: str
    kid: str | None = None
    raw: str = Field(..., repr=False)

    def __repr__(self) -> str:
        # Subject identifiers are PII
        return f"ValidatedIDToken(iss={self.iss!r}, sub='<REDACTED>', aud={self.aud!r}, alg={self.alg!r}, kid={self.kid!r})"

    def __str__(self) -> str:
        return self.__repr__()


class TokenSet(BaseModel):
    """
    Validated tokens handed back to the caller.

    Attributes:
        access_token (SecretStr | None): The access token. Protected from logging.
        id_token (str | None): The raw ID Token.
        id_token_claims (ValidatedIDToken | None): The validated ID Token.
        refresh_token (SecretStr | None): The refresh token, if issued.
        token_type (str | None): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        expires_at (int | None): Absolute expiry derived from expires_in.
    """

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr | None = None
    id_token: str | None = Field(default=None, repr=False)
    id_token_claims: ValidatedIDToken | None = None
    refresh_token: SecretStr | None = None
    token_type: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None
    scope: str | None = None

    @model_validator(mode="before")
    @classmethod
    def compute_expires_at(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("expires_in") is not None and data.get("expires_at") is None:
            data = dict(data)
            data["expires_at"] = int(time.time()) + int(data["expires_in"])
        return data

    @property
    def claims(self) -> dict[str, Any]:
        return dict(self.id_token_claims.claims) if self.id_token_claims else {}

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= int(time.time())
