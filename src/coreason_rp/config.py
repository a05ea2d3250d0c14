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
Configuration for the coreason-rp package.
"""

from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def discovery_url_for(issuer: str) -> str:
    """Returns the OpenID Provider configuration URL of ``issuer``."""
    return f"{issuer.rstrip('/')}/.well-known/openid-configuration"


class RelyingPartySettings(BaseSettings):
    """
    Runtime settings for a Relying Party.

    Attributes:
        issuer (str): The OpenID Provider issuer identifier. Compared byte-for-byte with
            discovery documents and ``iss`` claims.
        http_timeout (float): Timeout in seconds for every network call made by the RP.
        clock_tolerance (int): Acceptable clock skew in seconds for ``exp``/``iat``/``auth_time``.
        jwks_refresh_threshold (float): Minimum age in seconds of the cached JWKS before a
            key-not-found failure may force a refresh.
        jwks_cache_ttl (float): Age in seconds after which the cached JWKS is refreshed on read.
        max_response_bytes (int): Upper bound for any HTTP response body.
        unsafe_local_dev (bool): Allows plain HTTP issuers for local testing.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_RP_",
        case_sensitive=False,
    )

    unsafe_local_dev: bool = False
    issuer: str
    http_timeout: float = Field(default=5.0, gt=0, description="Timeout in seconds for all OP network operations.")
    clock_tolerance: int = Field(default=5, ge=0)
    jwks_refresh_threshold: float = Field(default=60.0, ge=0)
    jwks_cache_ttl: float = Field(default=3600.0, gt=0)
    max_response_bytes: int = Field(default=1_000_000, gt=0)

    @field_validator("issuer", mode="after")
    @classmethod
    def validate_https(cls, v: str, info: ValidationInfo) -> str:
        """
        Ensures that issuer uses HTTPS, unless strictly opted out for local dev.

        The issuer is otherwise kept verbatim: no trailing slash normalization.
        """
        if not v.startswith(("https://", "http://")):
            raise ValueError("Issuer must be an absolute http(s) URL.")
        if v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v

    @property
    def discovery_url(self) -> str:
        return discovery_url_for(self.issuer)
