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
OpenID Connect Relying Party core: authentication requests, callback handling and ID Token validation.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .config import RelyingPartySettings
from .exceptions import CoreasonRPError, TokenValidationError
from .keys import KeySet
from .manager import RelyingParty
from .models import AuthorizationRequestState, ClientConfig, IssuerMetadata, TokenSet, ValidatedIDToken
from .oidc_provider import OIDCProvider, register, webfinger
from .request_builder import AuthorizationRequestBuilder
from .userinfo import UserInfoClient
from .validator import IDTokenValidator

__all__ = [
    "AuthorizationRequestBuilder",
    "AuthorizationRequestState",
    "ClientConfig",
    "CoreasonRPError",
    "IDTokenValidator",
    "IssuerMetadata",
    "KeySet",
    "OIDCProvider",
    "RelyingParty",
    "RelyingPartySettings",
    "TokenSet",
    "TokenValidationError",
    "UserInfoClient",
    "ValidatedIDToken",
    "register",
    "webfinger",
]
