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
Custom exceptions for the coreason-rp package.

Every error carries a machine-readable ``kind`` (see :class:`ErrorKind`) plus the
structured fields relevant to it (``expected``/``got``, the claim name...). The message
text follows the wording used by OpenID certification tooling but is only a rendering
of those fields.
"""

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    CONFIGURATION = "configuration"
    NETWORK = "network"
    DISCOVERY = "discovery"
    AUTHORIZATION = "authorization"
    STATE_MISMATCH = "state_mismatch"
    MISSING_PARAMETER = "missing_parameter"
    TOKEN_ENDPOINT = "token_endpoint"
    INVALID_TOKEN = "invalid_token"
    MISSING_CLAIM = "missing_claim"
    INVALID_CLAIM = "invalid_claim"
    INVALID_SIGNATURE = "invalid_signature"
    AMBIGUOUS_KEY = "ambiguous_key"
    KEY_NOT_FOUND = "key_not_found"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    TOKEN_EXPIRED = "token_expired"
    AUTH_TIME = "auth_time"
    NONCE_MISMATCH = "nonce_mismatch"
    C_HASH_MISMATCH = "c_hash_mismatch"
    AT_HASH_MISMATCH = "at_hash_mismatch"
    DECRYPTION = "decryption"
    USERINFO = "userinfo"
    SUBJECT_MISMATCH = "subject_mismatch"
    REGISTRATION = "registration"


class CoreasonRPError(Exception):
    """Base exception for all coreason-rp errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, *, kind: ErrorKind | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind
        self.details = details

    @property
    def expected(self) -> Any:
        return self.details.get("expected")

    @property
    def got(self) -> Any:
        return self.details.get("got")


class ConfigurationError(CoreasonRPError):
    """Raised on caller misuse. Always raised before any network I/O."""

    kind = ErrorKind.CONFIGURATION


class NetworkError(CoreasonRPError):
    """Raised on transport failures, timeouts and unexpected HTTP statuses. Retryable by the caller."""

    kind = ErrorKind.NETWORK


class OversizedResponseError(NetworkError):
    """Raised when an HTTP response is too large."""


class DiscoveryError(CoreasonRPError):
    """Raised when issuer discovery fails or yields an issuer other than the one requested."""

    kind = ErrorKind.DISCOVERY


class AuthorizationError(CoreasonRPError):
    """
    Raised when the authorization response carries an OAuth ``error`` (e.g. ``login_required``).
    """

    kind = ErrorKind.AUTHORIZATION

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        state: str | None = None,
        error_uri: str | None = None,
    ) -> None:
        message = f"{error} ({error_description})" if error_description else error
        super().__init__(message, error=error, error_description=error_description, state=state, error_uri=error_uri)
        self.error = error
        self.error_description = error_description
        self.state = state


class StateMismatchError(CoreasonRPError):
    """Raised when the callback ``state`` does not match the one sent."""

    kind = ErrorKind.STATE_MISMATCH

    def __init__(self, expected: str | None, got: str | None) -> None:
        if got is None:
            message = "state missing from the response"
        else:
            message = "state mismatch"
        super().__init__(message, expected=expected, got=got)


class MissingParameterError(CoreasonRPError):
    """Raised when the callback lacks a parameter its response_type demands."""

    kind = ErrorKind.MISSING_PARAMETER

    def __init__(self, name: str) -> None:
        super().__init__(f"{name} missing from response", name=name)
        self.name = name


class TokenEndpointError(CoreasonRPError):
    """Raised when the token endpoint answers with an OAuth error."""

    kind = ErrorKind.TOKEN_ENDPOINT

    def __init__(self, error: str, error_description: str | None = None) -> None:
        message = f"{error} ({error_description})" if error_description else error
        super().__init__(message, error=error, error_description=error_description)
        self.error = error
        self.error_description = error_description


class TokenValidationError(CoreasonRPError):
    """
    Raised when an ID Token (or signed UserInfo) is rejected.
    Subclasses identify the failing check.
    """

    kind = ErrorKind.INVALID_TOKEN


class MissingClaimError(TokenValidationError):
    kind = ErrorKind.MISSING_CLAIM

    def __init__(self, name: str) -> None:
        super().__init__(f"missing required JWT property {name}", name=name)
        self.name = name


class InvalidClaimError(TokenValidationError):
    kind = ErrorKind.INVALID_CLAIM

    def __init__(self, name: str, message: str, **details: Any) -> None:
        super().__init__(message, name=name, **details)
        self.name = name


class InvalidSignatureError(TokenValidationError):
    kind = ErrorKind.INVALID_SIGNATURE

    def __init__(self, message: str = "invalid signature", **details: Any) -> None:
        super().__init__(message, **details)


class AmbiguousKeyError(TokenValidationError):
    kind = ErrorKind.AMBIGUOUS_KEY

    def __init__(self, alg: str, candidates: int) -> None:
        super().__init__("multiple matching keys, kid must be provided", alg=alg, candidates=candidates)


class KeyNotFoundError(TokenValidationError):
    kind = ErrorKind.KEY_NOT_FOUND

    def __init__(self, alg: str, kid: str | None = None) -> None:
        message = "no matching key found in issuer's jwks_uri"
        if kid:
            message = f"{message} (kid: {kid})"
        super().__init__(message, alg=alg, kid=kid)


class IssuerMismatchError(TokenValidationError):
    kind = ErrorKind.ISSUER_MISMATCH

    def __init__(self, expected: str, got: Any) -> None:
        super().__init__("unexpected iss value", expected=expected, got=got)


class AudienceMismatchError(TokenValidationError):
    kind = ErrorKind.AUDIENCE_MISMATCH

    def __init__(self, expected: str, got: Any, message: str = "aud is missing the client_id") -> None:
        super().__init__(message, expected=expected, got=got)


class TokenExpiredError(TokenValidationError):
    kind = ErrorKind.TOKEN_EXPIRED

    def __init__(self, exp: int, now: int) -> None:
        super().__init__(f"id_token expired, now {now}, exp {exp}", exp=exp, now=now)


class AuthTimeError(TokenValidationError):
    kind = ErrorKind.AUTH_TIME

    def __init__(self, auth_time: int, max_age: int, now: int) -> None:
        super().__init__(
            f"too much time has elapsed since the last End-User authentication, max_age {max_age}, "
            f"auth_time: {auth_time}, now {now}",
            auth_time=auth_time,
            max_age=max_age,
            now=now,
        )


class NonceMismatchError(TokenValidationError):
    kind = ErrorKind.NONCE_MISMATCH

    def __init__(self, expected: str | None, got: Any) -> None:
        super().__init__(f"nonce mismatch, expected {expected}, got: {got}", expected=expected, got=got)


class CHashMismatchError(TokenValidationError):
    kind = ErrorKind.C_HASH_MISMATCH

    def __init__(self, expected: str, got: Any) -> None:
        super().__init__("c_hash mismatch", expected=expected, got=got)


class AtHashMismatchError(TokenValidationError):
    kind = ErrorKind.AT_HASH_MISMATCH

    def __init__(self, expected: str, got: Any) -> None:
        super().__init__("at_hash mismatch", expected=expected, got=got)


class DecryptionError(TokenValidationError):
    kind = ErrorKind.DECRYPTION


class UserInfoError(CoreasonRPError):
    """Raised when the UserInfo response cannot be fetched or parsed."""

    kind = ErrorKind.USERINFO


class SubjectMismatchError(UserInfoError):
    kind = ErrorKind.SUBJECT_MISMATCH

    def __init__(self, expected: str, got: Any) -> None:
        super().__init__("userinfo sub mismatch", expected=expected, got=got)


class RegistrationError(CoreasonRPError):
    """Raised when the registration endpoint rejects the client metadata."""

    kind = ErrorKind.REGISTRATION

    def __init__(self, error: str, error_description: str | None = None) -> None:
        message = f"{error} ({error_description})" if error_description else error
        super().__init__(message, error=error, error_description=error_description)
        self.error = error
        self.error_description = error_description
