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
ID Token validation: structure, signature, claims and code/access token bindings.
"""

import hashlib
import hmac
import time
from enum import StrEnum
from typing import Any

from authlib.common.encoding import json_loads, to_bytes, to_unicode, urlsafe_b64decode, urlsafe_b64encode
from authlib.jose import JsonWebEncryption, JsonWebSignature, JWTClaims
from authlib.jose.errors import BadSignatureError, ExpiredTokenError, JoseError
from authlib.jose.errors import InvalidClaimError as JoseInvalidClaimError
from authlib.jose.errors import InvalidTokenError as JoseInvalidTokenError
from cryptography.exceptions import InvalidTag
from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode

from coreason_rp.exceptions import (
    AtHashMismatchError,
    AudienceMismatchError,
    AuthTimeError,
    CHashMismatchError,
    ConfigurationError,
    CoreasonRPError,
    DecryptionError,
    InvalidClaimError,
    InvalidSignatureError,
    IssuerMismatchError,
    KeyNotFoundError,
    MissingClaimError,
    NonceMismatchError,
    TokenExpiredError,
    TokenValidationError,
)
from coreason_rp.keys import KeySet
from coreason_rp.models import ClientConfig, ValidatedIDToken
from coreason_rp.oidc_provider import OIDCProvider
from coreason_rp.utils.logger import logger

tracer = trace.get_tracer(__name__)

REQUIRED_CLAIMS = ("iss", "sub", "aud", "exp", "iat")

_HASHES = {"256": hashlib.sha256, "384": hashlib.sha384, "512": hashlib.sha512}

# Content encryption key sizes in bits
ENC_KEY_BITS = {
    "A128CBC-HS256": 256,
    "A192CBC-HS384": 384,
    "A256CBC-HS512": 512,
    "A128GCM": 128,
    "A192GCM": 192,
    "A256GCM": 256,
}


class ValidationState(StrEnum):
    RECEIVED = "received"
    SIGNATURE_CHECKED = "signature_checked"
    CLAIMS_CHECKED = "claims_checked"
    BINDING_CHECKED = "binding_checked"
    VALID = "valid"
    REJECTED = "rejected"


def half_hash(value: str, alg: str) -> str:
    """
    Computes an ``at_hash``/``c_hash`` value.

    The hash is the one used by the JWS algorithm (SHA-256/384/512 from the alg suffix,
    SHA-512 for EdDSA, SHA-256 for unsigned tokens); the left half of the digest is
    base64url encoded without padding.
    """
    if alg == "EdDSA":
        hash_alg = hashlib.sha512
    else:
        hash_alg = _HASHES.get(alg[-3:], hashlib.sha256)
    digest = hash_alg(value.encode("utf-8")).digest()
    return to_unicode(urlsafe_b64encode(digest[: len(digest) // 2]))


def derive_symmetric_key(secret: str, bits: int) -> bytes:
    """
    Derives a symmetric JWE key from the client secret: the left-truncated SHA-2 hash of
    the secret, SHA-256 up to 256 bits, SHA-384 up to 384 bits, SHA-512 beyond.
    """
    if bits <= 256:
        digest = hashlib.sha256(secret.encode("utf-8")).digest()
    elif bits <= 384:
        digest = hashlib.sha384(secret.encode("utf-8")).digest()
    else:
        digest = hashlib.sha512(secret.encode("utf-8")).digest()
    return digest[: bits // 8]


def decode_segment(segment: str, what: str = "JWT") -> dict[str, Any]:
    try:
        data = json_loads(to_unicode(urlsafe_b64decode(to_bytes(segment))))
    except (ValueError, TypeError) as e:
        raise TokenValidationError(f"{what} is not a valid JWT") from e
    if not isinstance(data, dict):
        raise TokenValidationError(f"{what} is not a valid JWT")
    return data


def split_jwt(token: str, what: str = "JWT") -> tuple[dict[str, Any], dict[str, Any], str]:
    """
    Decodes the header and payload of a compact JWS without verifying it.

    Returns:
        tuple: ``(header, claims, signature_segment)``.

    Raises:
        TokenValidationError: If the token is not a three-segment JWT with JSON header and payload.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenValidationError(f"{what} is not a valid JWT", segments=len(parts))
    return decode_segment(parts[0], what), decode_segment(parts[1], what), parts[2]


def _numeric(claims: dict[str, Any], name: str) -> int:
    value = claims[name]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidClaimError(name, f"JWT {name} claim must be a JSON numeric value", got=value)
    return int(value)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _is_string(claims: JWTClaims, value: Any) -> bool:
    return isinstance(value, str)


class IDTokenClaims(JWTClaims):
    """
    ID Token claims on top of authlib's registered claim validation.

    authlib checks iss, sub, aud, exp, nbf and iat in that order. The OpenID Connect
    checks (aud type, azp, auth_time against max_age, nonce) raise this package's errors.

    ``params`` carries ``client_id``, ``max_age`` and ``nonce`` from the authorization request.
    """

    def validate(self, now: int | None = None, leeway: int = 0) -> None:
        now = int(time.time()) if now is None else now
        super().validate(now=now, leeway=leeway)
        self.validate_auth_time(now, leeway)
        self.validate_nonce()

    def validate_aud(self) -> None:
        aud = self.get("aud")
        audiences = [aud] if isinstance(aud, str) else aud
        if not isinstance(audiences, list) or not all(isinstance(a, str) for a in audiences):
            raise InvalidClaimError("aud", "JWT aud claim must be a string or an array of strings", got=aud)
        super().validate_aud()
        self.validate_azp(audiences)

    def validate_azp(self, audiences: list[str]) -> None:
        client_id = self.params["client_id"]
        # azp is required once the token has several audiences
        if len(audiences) > 1 and "azp" not in self:
            raise MissingClaimError("azp")
        azp = self.get("azp")
        if azp is not None and azp != client_id:
            raise AudienceMismatchError(client_id, azp, message="azp must be the client_id")

    def validate_auth_time(self, now: int, leeway: int) -> None:
        max_age = self.params.get("max_age")
        if max_age is None:
            return
        if "auth_time" not in self:
            raise MissingClaimError("auth_time")
        auth_time = _numeric(self, "auth_time")
        if auth_time + max_age + leeway < now:
            raise AuthTimeError(auth_time, max_age, now)

    def validate_nonce(self) -> None:
        nonce = self.params.get("nonce")
        # Only checked when the authorization request carried one
        if nonce is not None and self.get("nonce") != nonce:
            raise NonceMismatchError(nonce, self.get("nonce"))


class JWTVerifier:
    """
    Verifies JWS and decrypts JWE objects issued by the OP for this client.

    HMAC algorithms use the client secret. Asymmetric algorithms resolve the key from the
    provider's KeySet by ``alg`` and ``kid``; when no key matches and the cached set is older
    than ``jwks_refresh_threshold`` seconds, the set is refreshed once and resolution retried.
    """

    def __init__(self, client: ClientConfig, provider: OIDCProvider, jwks_refresh_threshold: float = 60.0) -> None:
        self.client = client
        self.provider = provider
        self.jwks_refresh_threshold = jwks_refresh_threshold
        self._client_keys = KeySet.from_jwks(client.jwks) if client.jwks else KeySet()

    async def resolve_key(self, alg: str, kid: str | None, span: Span | None = None) -> tuple[Any, str | None]:
        """
        Returns the verification key for ``alg`` and the kid it was selected with.

        Raises:
            AmbiguousKeyError: If several keys match and ``kid`` is None.
            KeyNotFoundError: If no key matches, after the refresh allowed by the staleness policy.
        """
        if alg.startswith("HS"):
            secret = self.client.secret
            if secret is None:
                raise ConfigurationError(f"client_secret is required to verify {alg} signatures")
            return to_bytes(secret), None

        key_set = await self.provider.get_key_set()
        try:
            jwk = key_set.resolve(alg, kid)
        except KeyNotFoundError:
            if not key_set.is_stale(self.jwks_refresh_threshold):
                raise
            logger.info("No matching key in cached JWKS, refreshing JWKS and retrying...")
            if span is not None:
                span.add_event("refreshing_jwks", {"jwks.epoch": key_set.epoch})
            key_set = await self.provider.get_key_set(force_refresh=True, seen_epoch=key_set.epoch)
            jwk = key_set.resolve(alg, kid)
        return jwk, jwk.get("kid")

    async def verify(
        self, token: str, header: dict[str, Any], expected_alg: str, span: Span | None = None
    ) -> str | None:
        """
        Verifies the signature of ``token``.

        Args:
            token: The compact JWS.
            header: Its decoded protected header.
            expected_alg: The only algorithm accepted (``none`` accepts unsigned tokens only).

        Returns:
            str | None: The kid of the verification key.

        Raises:
            InvalidSignatureError: On algorithm mismatch or a signature that does not verify.
        """
        alg = header.get("alg")
        if alg != expected_alg:
            raise InvalidSignatureError(
                f"unexpected JWT alg received, expected {expected_alg}, got: {alg}",
                expected=expected_alg,
                got=alg,
            )

        if alg == "none":
            if token.rsplit(".", 1)[-1] != "":
                raise InvalidSignatureError("unsigned JWT must have an empty signature segment")
            return None

        key, kid = await self.resolve_key(alg, header.get("kid"), span)
        jws = JsonWebSignature(algorithms=[alg])
        try:
            jws.deserialize_compact(token, key)
        except BadSignatureError as e:
            raise InvalidSignatureError(alg=alg, kid=kid) from e
        except (JoseError, ValueError) as e:
            raise InvalidSignatureError(f"invalid signature: {e}", alg=alg, kid=kid) from e
        return kid

    def decrypt(self, token: str, alg: str, enc: str) -> str:
        """
        Decrypts a compact JWE addressed to this client and returns its payload.

        Raises:
            DecryptionError: If the token is not a JWE for ``alg``/``enc`` or cannot be decrypted.
        """
        parts = token.split(".")
        if len(parts) != 5:
            raise DecryptionError("expected an encrypted JWT (JWE)", segments=len(parts))
        header = decode_segment(parts[0], "JWE")
        if header.get("alg") != alg or header.get("enc") != enc:
            raise DecryptionError(
                f"unexpected JWE alg/enc received, expected {alg}/{enc}, got: {header.get('alg')}/{header.get('enc')}",
                expected=(alg, enc),
                got=(header.get("alg"), header.get("enc")),
            )

        key = self._decryption_key(alg, enc, header.get("kid"))
        try:
            data = JsonWebEncryption().deserialize_compact(token, key)
        except (JoseError, InvalidTag, ValueError) as e:
            raise DecryptionError(f"could not decrypt JWE: {e}") from e
        return to_unicode(data["payload"])

    def _decryption_key(self, alg: str, enc: str, kid: str | None) -> Any:
        if alg == "dir" or (alg.startswith("A") and alg.endswith("KW")):
            secret = self.client.secret
            if secret is None:
                raise ConfigurationError(f"client_secret is required to decrypt {alg} JWEs")
            bits = ENC_KEY_BITS.get(enc) if alg == "dir" else int(alg[1:4])
            if bits is None:
                raise DecryptionError(f"unsupported JWE enc {enc}")
            return derive_symmetric_key(secret, bits)
        return self._client_keys.resolve(alg, kid, use="enc")


class IDTokenValidator:
    """
    Validates ID Tokens received from the authorization or token endpoint.

    Validation walks the states of :class:`ValidationState` and stops at the first failing
    check; the states are recorded as OpenTelemetry span events.

    Attributes:
        client (ClientConfig): The registered client.
        provider (OIDCProvider): The OP metadata and key source.
        clock_tolerance (int): Accepted clock skew in seconds.
    """

    def __init__(
        self,
        client: ClientConfig,
        provider: OIDCProvider,
        clock_tolerance: int = 5,
        jwks_refresh_threshold: float = 60.0,
        verifier: JWTVerifier | None = None,
    ) -> None:
        self.client = client
        self.provider = provider
        self.clock_tolerance = clock_tolerance
        self.verifier = verifier or JWTVerifier(client, provider, jwks_refresh_threshold)

    @staticmethod
    def _transition(span: Span, state: ValidationState) -> ValidationState:
        span.add_event(f"id_token.{state}")
        logger.debug(f"ID Token validation state: {state}")
        return state

    async def validate(
        self,
        id_token: str,
        *,
        nonce: str | None = None,
        code: str | None = None,
        access_token: str | None = None,
        max_age: int | None = None,
        require_hash_claims: bool = True,
    ) -> ValidatedIDToken:
        """
        Validates an ID Token.

        Emits an OpenTelemetry span `validate_id_token`.

        Args:
            id_token: The raw (possibly encrypted) ID Token.
            nonce: The nonce sent in the authorization request, if any.
            code: The authorization code returned alongside the token (hybrid flows).
            access_token: The access token returned alongside the token.
            max_age: The max_age sent in the authorization request, if any.
            require_hash_claims: Whether ``c_hash``/``at_hash`` must be present when a code or
                access token is given. True for the authorization endpoint; at the token
                endpoint the hashes are only checked when present.

        Returns:
            ValidatedIDToken: The validated claims.

        Raises:
            TokenValidationError: The subclass naming the failing check.
            NetworkError: If discovery or JWKS retrieval fails.
        """
        with tracer.start_as_current_span("validate_id_token") as span:
            state = self._transition(span, ValidationState.RECEIVED)

            try:
                # Sanitize input
                token = id_token.strip()

                # Decrypt first when the client registered JWE
                if self.client.id_token_encrypted_response_alg:
                    token = self.verifier.decrypt(
                        token,
                        self.client.id_token_encrypted_response_alg,
                        self.client.id_token_encrypted_response_enc or "",
                    )

                # Required claims are checked before the signature
                header, claims, _ = split_jwt(token, "id_token")
                for name in REQUIRED_CLAIMS:
                    if name not in claims:
                        raise MissingClaimError(name)

                # Verify signature, refreshing JWKS once on an unknown kid
                kid = await self.verifier.verify(token, header, self.client.id_token_signed_response_alg, span)
                state = self._transition(span, ValidationState.SIGNATURE_CHECKED)

                # Validate claims against the discovered issuer
                issuer = await self.provider.get_issuer()
                self._check_claims(claims, header, issuer, nonce, max_age)
                state = self._transition(span, ValidationState.CLAIMS_CHECKED)

                # Bind the code and access token to this ID Token
                self._check_bindings(claims, header["alg"], code, access_token, require_hash_claims)
                state = self._transition(span, ValidationState.BINDING_CHECKED)

                aud = claims["aud"]
                validated = ValidatedIDToken(
                    iss=claims["iss"],
                    sub=claims["sub"],
                    aud=(aud,) if isinstance(aud, str) else tuple(aud),
                    exp=int(claims["exp"]),
                    iat=int(claims["iat"]),
                    nonce=_optional_str(claims.get("nonce")),
                    at_hash=_optional_str(claims.get("at_hash")),
                    c_hash=_optional_str(claims.get("c_hash")),
                    azp=_optional_str(claims.get("azp")),
                    auth_time=int(claims["auth_time"]) if "auth_time" in claims else None,
                    claims=claims,
                    alg=header["alg"],
                    kid=kid,
                    raw=token,
                )
                state = self._transition(span, ValidationState.VALID)
                logger.info(f"ID Token validated (alg={validated.alg}, kid={validated.kid})")
                span.set_attribute("id_token.alg", validated.alg)
                span.set_status(Status(StatusCode.OK))
                return validated

            except TokenValidationError as e:
                logger.warning(f"ID Token rejected in state {state}: {e.kind} - {e}")
                self._transition(span, ValidationState.REJECTED)
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except CoreasonRPError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except Exception as e:
                logger.exception("Unexpected error during ID Token validation")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise TokenValidationError(f"Unexpected error during ID Token validation: {e}") from e

    def _check_claims(
        self,
        claims: dict[str, Any],
        header: dict[str, Any],
        issuer: str,
        nonce: str | None,
        max_age: int | None,
    ) -> None:
        client_id = self.client.client_id
        # Define claim options
        claims_options = {
            "iss": {"essential": True, "value": issuer},
            "sub": {"essential": True, "validate": _is_string},
            "aud": {"essential": True, "value": client_id},
            "exp": {"essential": True},
            "nbf": {"essential": False},
            "iat": {"essential": True},
        }
        id_token_claims = IDTokenClaims(
            claims,
            header,
            options=claims_options,
            params={"client_id": client_id, "max_age": max_age, "nonce": nonce},
        )

        now = int(time.time())
        try:
            id_token_claims.validate(now=now, leeway=self.clock_tolerance)
        except ExpiredTokenError as e:
            raise TokenExpiredError(int(claims["exp"]), now) from e
        except JoseInvalidClaimError as e:
            name = e.claim_name
            got = claims.get(name)
            if name == "iss":
                raise IssuerMismatchError(issuer, got) from e
            if name == "aud":
                raise AudienceMismatchError(client_id, got) from e
            if name == "sub":
                raise InvalidClaimError("sub", "JWT sub claim must be a string", got=got) from e
            # Remaining claims fail on their type
            raise InvalidClaimError(name, f"JWT {name} claim must be a JSON numeric value", got=got) from e
        except JoseInvalidTokenError as e:
            # authlib checks nbf before iat and raises the same error for both
            nbf = claims.get("nbf")
            if nbf is not None and nbf > now + self.clock_tolerance:
                raise InvalidClaimError(
                    "nbf", f"id_token not active yet, now {now}, nbf {nbf}", now=now, nbf=nbf
                ) from e
            iat = claims["iat"]
            raise InvalidClaimError(
                "iat", f"id_token issued in the future, now {now}, iat {iat}", now=now, iat=iat
            ) from e

    @staticmethod
    def _check_bindings(
        claims: dict[str, Any],
        alg: str,
        code: str | None,
        access_token: str | None,
        required: bool,
    ) -> None:
        bindings = (
            ("c_hash", code, CHashMismatchError),
            ("at_hash", access_token, AtHashMismatchError),
        )
        for name, value, error_cls in bindings:
            if value is None:
                continue
            actual = claims.get(name)
            if actual is None:
                if required:
                    raise MissingClaimError(name)
                continue
            expected = half_hash(value, alg)
            if not hmac.compare_digest(to_bytes(str(actual)), to_bytes(expected)):
                raise error_cls(expected, actual)
