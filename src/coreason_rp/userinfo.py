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
UserInfo retrieval and validation, including aggregated and distributed claims.
"""

import re
from collections.abc import Mapping
from typing import Any

import httpx
from authlib.common.encoding import json_loads
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_rp.exceptions import (
    ConfigurationError,
    CoreasonRPError,
    SubjectMismatchError,
    TokenValidationError,
    UserInfoError,
)
from coreason_rp.models import ClientConfig, TokenSet
from coreason_rp.oidc_provider import OIDCProvider
from coreason_rp.transport import DEFAULT_MAX_BYTES, FetchResult, safe_fetch
from coreason_rp.utils.logger import logger
from coreason_rp.validator import JWTVerifier, split_jwt

tracer = trace.get_tracer(__name__)

_WWW_AUTHENTICATE_ERROR = re.compile(r'error="([^"]*)"')


def _www_authenticate_error(result: FetchResult) -> str | None:
    match = _WWW_AUTHENTICATE_ERROR.search(result.headers.get("WWW-Authenticate", ""))
    return match.group(1) if match else None


class UserInfoClient:
    """
    Fetches claims from the OP's UserInfo endpoint.

    Attributes:
        client (ClientConfig): The registered client.
        provider (OIDCProvider): The OP metadata and key source.
        http_client (httpx.AsyncClient): Client used for UserInfo and distributed claim requests.
    """

    def __init__(
        self,
        client: ClientConfig,
        provider: OIDCProvider,
        http_client: httpx.AsyncClient,
        verifier: JWTVerifier | None = None,
        max_response_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.client = client
        self.provider = provider
        self.http_client = http_client
        self.verifier = verifier or JWTVerifier(client, provider)
        self.max_response_bytes = max_response_bytes

    async def fetch(
        self,
        token_set: TokenSet | str,
        *,
        via: str = "header",
        verb: str = "get",
        expected_sub: str | None = None,
    ) -> dict[str, Any]:
        """
        Requests the UserInfo endpoint with the access token of ``token_set``.

        Emits an OpenTelemetry span `fetch_userinfo`.

        Args:
            token_set: The TokenSet returned by the callback, or a bare access token.
            via: Where the access token is sent: ``header``, ``body`` (POST only) or ``query``.
            verb: ``get`` or ``post``.
            expected_sub: The subject the response must carry. Defaults to the ``sub`` of the
                TokenSet's ID Token; without either the subject is not compared.

        Returns:
            dict[str, Any]: The UserInfo claims.

        Raises:
            ConfigurationError: On an unusable via/verb combination or missing access token.
            UserInfoError: On a failed request, an unparsable body or a missing ``sub``.
            SubjectMismatchError: If ``sub`` differs from the expected subject.
            TokenValidationError: If a signed or encrypted response fails verification.
        """
        with tracer.start_as_current_span("fetch_userinfo") as span:
            try:
                access_token = self._access_token(token_set)
                if expected_sub is None and isinstance(token_set, TokenSet) and token_set.id_token_claims:
                    expected_sub = token_set.id_token_claims.sub

                metadata = await self.provider.get_metadata()
                if not metadata.userinfo_endpoint:
                    raise ConfigurationError("userinfo_endpoint must be configured")

                method, kwargs = self._request(access_token, via, verb)
                span.set_attribute("userinfo.via", via)
                span.set_attribute("http.method", method)
                result = await safe_fetch(
                    self.http_client,
                    metadata.userinfo_endpoint,
                    method=method,
                    max_bytes=self.max_response_bytes,
                    **kwargs,
                )
                if result.status_code >= 400:
                    error = _www_authenticate_error(result)
                    raise UserInfoError(
                        f"userinfo request failed with status {result.status_code}"
                        + (f": {error}" if error else ""),
                        status_code=result.status_code,
                        error=error,
                    )

                claims = await self._parse(result, metadata.issuer)
                if "sub" not in claims:
                    raise UserInfoError("sub missing from userinfo response")
                if expected_sub is not None and claims["sub"] != expected_sub:
                    raise SubjectMismatchError(expected_sub, claims["sub"])

                span.set_status(Status(StatusCode.OK))
                return claims

            except (UserInfoError, TokenValidationError) as e:
                logger.warning(f"UserInfo rejected: {e.kind} - {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except CoreasonRPError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    @staticmethod
    def _access_token(token_set: TokenSet | str) -> str:
        if isinstance(token_set, str):
            return token_set
        if token_set.access_token is None:
            raise ConfigurationError("access_token not present in TokenSet")
        return token_set.access_token.get_secret_value()

    @staticmethod
    def _request(access_token: str, via: str, verb: str) -> tuple[str, dict[str, Any]]:
        method = verb.upper()
        if method not in ("GET", "POST"):
            raise ConfigurationError(f"unsupported userinfo verb {verb}")

        headers = {"Accept": "application/json, application/jwt"}
        kwargs: dict[str, Any] = {"headers": headers}
        if via == "header":
            headers["Authorization"] = f"Bearer {access_token}"
        elif via == "body":
            if method != "POST":
                raise ConfigurationError("can only send the access token in the body with the POST verb")
            kwargs["data"] = {"access_token": access_token}
        elif via == "query":
            kwargs["params"] = {"access_token": access_token}
        else:
            raise ConfigurationError(f"unsupported userinfo via {via}")
        return method, kwargs

    async def _parse(self, result: FetchResult, issuer: str) -> dict[str, Any]:
        body = result.text.strip()
        signed_alg = self.client.userinfo_signed_response_alg
        encrypted_alg = self.client.userinfo_encrypted_response_alg

        if encrypted_alg:
            body = self.verifier.decrypt(body, encrypted_alg, self.client.userinfo_encrypted_response_enc or "")

        if signed_alg:
            header, claims, _ = split_jwt(body, "userinfo")
            await self.verifier.verify(body, header, signed_alg)
            if "iss" in claims and claims["iss"] != issuer:
                raise UserInfoError("unexpected iss value in userinfo", expected=issuer, got=claims["iss"])
            if "aud" in claims:
                aud = claims["aud"]
                audiences = [aud] if isinstance(aud, str) else aud
                if self.client.client_id not in audiences:
                    raise UserInfoError("aud is missing the client_id", expected=self.client.client_id, got=aud)
            return claims

        try:
            claims = json_loads(body)
        except ValueError as e:
            raise UserInfoError(f"userinfo response is not valid JSON: {e}") from e
        if not isinstance(claims, dict):
            raise UserInfoError("userinfo response must be a JSON object")
        return claims

    async def _decode_source_jwt(self, token: str, source_name: str) -> dict[str, Any]:
        header, claims, _ = split_jwt(token, f"claim source {source_name}")
        alg = header.get("alg")
        if not isinstance(alg, str) or not alg:
            raise TokenValidationError(f"claim source {source_name} has no alg", source=source_name)

        # Only sources issued by the OP can be verified with its keys
        issuer = await self.provider.get_issuer()
        if alg != "none" and claims.get("iss") == issuer:
            await self.verifier.verify(token, header, alg)
        else:
            logger.warning(f"Claims from source {source_name} accepted without signature verification")
        return claims

    @staticmethod
    def _assign(
        target: dict[str, Any],
        claim_names: dict[str, Any],
        source_name: str,
        source_claims: Mapping[str, Any],
    ) -> None:
        for claim, name in list(claim_names.items()):
            if name != source_name:
                continue
            if claim not in source_claims:
                raise UserInfoError(f'expected claim "{claim}" in "{source_name}"', claim=claim, source=source_name)
            target[claim] = source_claims[claim]
            del claim_names[claim]

    @staticmethod
    def _finish(target: dict[str, Any], claim_names: dict[str, Any], claim_sources: dict[str, Any]) -> dict[str, Any]:
        target.pop("_claim_names", None)
        target.pop("_claim_sources", None)
        if claim_names:
            target["_claim_names"] = claim_names
        if claim_sources:
            target["_claim_sources"] = claim_sources
        return target

    @staticmethod
    def _indirections(claims: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]] | None:
        claim_names = claims.get("_claim_names")
        claim_sources = claims.get("_claim_sources")
        if not isinstance(claim_names, dict) or not isinstance(claim_sources, dict):
            return None
        return dict(claim_names), dict(claim_sources)

    async def unpack_aggregated_claims(self, claims: Mapping[str, Any]) -> dict[str, Any]:
        """
        Replaces claims delivered inline as signed JWTs (``_claim_sources.<name>.JWT``).

        Sources issued by the OP are signature-checked with its keys; sources from other
        issuers are decoded without verification.
        """
        indirections = self._indirections(claims)
        if indirections is None:
            return dict(claims)
        claim_names, claim_sources = indirections

        result = dict(claims)
        for source_name, source in list(claim_sources.items()):
            if not isinstance(source, dict) or "JWT" not in source:
                continue
            decoded = await self._decode_source_jwt(source["JWT"], source_name)
            self._assign(result, claim_names, source_name, decoded)
            del claim_sources[source_name]
        return self._finish(result, claim_names, claim_sources)

    async def fetch_distributed_claims(
        self, claims: Mapping[str, Any], tokens: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        """
        Resolves claims referenced through ``_claim_sources.<name>.endpoint``.

        Args:
            claims: UserInfo (or ID Token) claims holding the indirections.
            tokens: Access tokens per source name, used when a source carries none.

        Returns:
            dict[str, Any]: The claims with the distributed ones filled in.
        """
        indirections = self._indirections(claims)
        if indirections is None:
            return dict(claims)
        claim_names, claim_sources = indirections

        result = dict(claims)
        for source_name, source in list(claim_sources.items()):
            if not isinstance(source, dict) or "endpoint" not in source:
                continue
            access_token = source.get("access_token") or (tokens or {}).get(source_name)
            headers = {"Accept": "application/jwt, application/json"}
            if access_token:
                headers["Authorization"] = f"Bearer {access_token}"

            fetched = await safe_fetch(
                self.http_client, source["endpoint"], headers=headers, max_bytes=self.max_response_bytes
            )
            if fetched.status_code >= 400:
                raise UserInfoError(
                    f"distributed claims source {source_name} responded with status {fetched.status_code}",
                    status_code=fetched.status_code,
                    source=source_name,
                )

            body = fetched.text.strip()
            if fetched.content_type == "application/json":
                try:
                    decoded = json_loads(body)
                except ValueError as e:
                    raise UserInfoError(f"distributed claims source {source_name} returned invalid JSON") from e
            else:
                decoded = await self._decode_source_jwt(body, source_name)
            if not isinstance(decoded, dict):
                raise UserInfoError(f"distributed claims source {source_name} must return a JSON object")

            self._assign(result, claim_names, source_name, decoded)
            del claim_sources[source_name]
        return self._finish(result, claim_names, claim_sources)
