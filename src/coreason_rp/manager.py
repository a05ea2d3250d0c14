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
RelyingParty component orchestrating the authentication flows.
"""

from collections.abc import Mapping
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.trace import Status, StatusCode

from coreason_rp.config import RelyingPartySettings
from coreason_rp.exceptions import CoreasonRPError, InvalidClaimError, MissingParameterError, StateMismatchError
from coreason_rp.models import (
    AuthorizationRequestState,
    AuthorizationResponse,
    ClientConfig,
    IssuerMetadata,
    TokenSet,
    ValidatedIDToken,
)
from coreason_rp.oidc_provider import OIDCProvider
from coreason_rp.request_builder import AuthorizationRequestBuilder, create_state, ensure_nonce
from coreason_rp.response_parser import callback_params, ensure_success
from coreason_rp.token_endpoint import TokenEndpointClient
from coreason_rp.userinfo import UserInfoClient
from coreason_rp.utils.logger import logger
from coreason_rp.validator import IDTokenValidator

tracer = trace.get_tracer(__name__)


class RelyingParty:
    """
    Async implementation of an OpenID Connect Relying Party.
    Handles resources via async context manager.
    """

    def __init__(
        self,
        client: ClientConfig,
        settings: RelyingPartySettings,
        metadata: IssuerMetadata | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the RelyingParty.

        Args:
            client: The registered client.
            settings: The RP settings (issuer, timeouts, key cache policy).
            metadata: Statically configured provider metadata. Discovered when omitted.
            http_client: External async client (optional). One is created, and closed on exit, otherwise.
        """
        self.client = client
        self.settings = settings
        self._internal_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=settings.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._http)

        self.provider = OIDCProvider(
            settings.issuer,
            self._http,
            cache_ttl=settings.jwks_cache_ttl,
            max_response_bytes=settings.max_response_bytes,
            metadata=metadata,
            discovery_url=settings.discovery_url,
        )
        self.validator = IDTokenValidator(
            client,
            self.provider,
            clock_tolerance=settings.clock_tolerance,
            jwks_refresh_threshold=settings.jwks_refresh_threshold,
        )
        self.userinfo_client = UserInfoClient(
            client,
            self.provider,
            self._http,
            verifier=self.validator.verifier,
            max_response_bytes=settings.max_response_bytes,
        )

    async def __aenter__(self) -> "RelyingParty":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._internal_client:
            await self._http.aclose()

    async def discover(self) -> IssuerMetadata:
        """Fetches the provider configuration, replacing any cached metadata."""
        return await self.provider.discover()

    async def _builder(self) -> AuthorizationRequestBuilder:
        return AuthorizationRequestBuilder(self.client, await self.provider.get_metadata(), self.provider)

    async def _token_client(self) -> TokenEndpointClient:
        return TokenEndpointClient(
            self.client,
            await self.provider.get_metadata(),
            self._http,
            max_response_bytes=self.settings.max_response_bytes,
        )

    def create_state(self, response_type: str = "code", **kwargs: Any) -> AuthorizationRequestState:
        """Generates state (and nonce when required) for a new authorization request."""
        return create_state(self.client, response_type, **kwargs)

    async def authorization_url(self, response_type: str = "code", **kwargs: Any) -> str:
        """
        Builds the authorization URL, discovering the provider first if needed.

        Raises:
            ConfigurationError: If the response type requires a nonce and none is given.
                Raised before any network call.
        """
        ensure_nonce(response_type, kwargs.get("nonce"))
        builder = await self._builder()
        return builder.authorization_url(response_type, **kwargs)

    async def request_object(self, **params: Any) -> str:
        """Builds a signed (and optionally encrypted) request object."""
        ensure_nonce(params.get("response_type", "code"), params.get("nonce"))
        builder = await self._builder()
        return await builder.request_object(**params)

    @staticmethod
    def callback_params(source: str | bytes | Mapping[str, Any]) -> AuthorizationResponse:
        """Extracts the authorization response from a redirect URL, a form_post body or a mapping."""
        return callback_params(source)

    async def callback(
        self,
        params: AuthorizationResponse | str | bytes | Mapping[str, Any],
        checks: AuthorizationRequestState,
        correlation_id: str | None = None,
    ) -> TokenSet:
        """
        Completes an authorization response.

        Emits an OpenTelemetry span `authorization_callback`.

        Args:
            params: The authorization response, or the redirect URL / form_post body carrying it.
            checks: The values stored when the request was made.
            correlation_id: Identifier bound to every log record of this flow.

        Returns:
            TokenSet: The validated tokens.

        Raises:
            AuthorizationError: If the OP returned an error.
            StateMismatchError: If the state differs from ``checks.state``.
            MissingParameterError: If the response lacks a parameter the response type implies.
            TokenValidationError: If an ID Token fails validation.
            TokenEndpointError: If the code exchange is refused.
        """
        log = logger.bind(correlation_id=correlation_id) if correlation_id else logger
        response_types = set(checks.response_type.split())

        with tracer.start_as_current_span("authorization_callback") as span:
            span.set_attribute("oidc.response_type", checks.response_type)
            try:
                response = params if isinstance(params, AuthorizationResponse) else callback_params(params)
                ensure_success(response)

                if response.state != checks.state:
                    raise StateMismatchError(checks.state, response.state)

                if "code" in response_types and not response.code:
                    raise MissingParameterError("code")
                if "id_token" in response_types and not response.id_token:
                    raise MissingParameterError("id_token")
                if "token" in response_types and not response.access_token:
                    raise MissingParameterError("access_token")

                front_channel: ValidatedIDToken | None = None
                if response.id_token:
                    log.debug("Validating front-channel ID Token")
                    front_channel = await self.validator.validate(
                        response.id_token,
                        nonce=checks.nonce,
                        code=response.code,
                        access_token=response.access_token,
                        max_age=checks.max_age,
                    )

                if not response.code:
                    token_set = TokenSet(
                        access_token=response.access_token,
                        id_token=response.id_token,
                        id_token_claims=front_channel,
                        token_type=response.token_type,
                        expires_in=response.expires_in,
                        scope=response.scope,
                    )
                else:
                    log.debug("Exchanging authorization code")
                    token_client = await self._token_client()
                    tokens = await token_client.exchange_code(response.code, checks.redirect_uri)
                    token_set = await self._token_set(tokens, nonce=checks.nonce, max_age=checks.max_age)
                    if (
                        front_channel is not None
                        and token_set.id_token_claims is not None
                        and token_set.id_token_claims.sub != front_channel.sub
                    ):
                        raise InvalidClaimError(
                            "sub",
                            "sub mismatch between the authorization and token endpoint ID Tokens",
                            expected=front_channel.sub,
                            got=token_set.id_token_claims.sub,
                        )

                log.info(f"Authorization response accepted (response_type={checks.response_type})")
                span.set_status(Status(StatusCode.OK))
                return token_set

            except CoreasonRPError as e:
                log.warning(f"Authorization response rejected: {e.kind} - {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

    async def _token_set(
        self,
        tokens: dict[str, Any],
        nonce: str | None = None,
        max_age: int | None = None,
        require_id_token: bool = True,
    ) -> TokenSet:
        id_token = tokens.get("id_token")
        claims: ValidatedIDToken | None = None
        if id_token:
            claims = await self.validator.validate(
                id_token,
                nonce=nonce,
                access_token=tokens.get("access_token"),
                max_age=max_age,
                require_hash_claims=False,
            )
        elif require_id_token:
            raise MissingParameterError("id_token")

        return TokenSet(
            access_token=tokens.get("access_token"),
            id_token=id_token,
            id_token_claims=claims,
            refresh_token=tokens.get("refresh_token"),
            token_type=tokens.get("token_type"),
            expires_in=tokens.get("expires_in"),
            scope=tokens.get("scope"),
        )

    async def refresh(self, token_set: TokenSet) -> TokenSet:
        """
        Refreshes a TokenSet.

        A refreshed ID Token must carry the subject of the original one.

        Raises:
            MissingParameterError: If ``token_set`` holds no refresh token.
        """
        if token_set.refresh_token is None:
            raise MissingParameterError("refresh_token")

        token_client = await self._token_client()
        tokens = await token_client.refresh(token_set.refresh_token.get_secret_value())
        refreshed = await self._token_set(tokens, require_id_token=False)

        original = token_set.id_token_claims
        if original is not None and refreshed.id_token_claims is not None:
            if refreshed.id_token_claims.sub != original.sub:
                raise InvalidClaimError(
                    "sub",
                    "sub mismatch between the original and refreshed ID Tokens",
                    expected=original.sub,
                    got=refreshed.id_token_claims.sub,
                )

        if refreshed.refresh_token is None:
            refreshed = refreshed.model_copy(update={"refresh_token": token_set.refresh_token})
        return refreshed

    async def userinfo(self, token_set: TokenSet | str, via: str = "header", verb: str = "get") -> dict[str, Any]:
        """Fetches the UserInfo claims for ``token_set``. See :meth:`UserInfoClient.fetch`."""
        return await self.userinfo_client.fetch(token_set, via=via, verb=verb)

    async def unpack_aggregated_claims(self, claims: Mapping[str, Any]) -> dict[str, Any]:
        return await self.userinfo_client.unpack_aggregated_claims(claims)

    async def fetch_distributed_claims(
        self, claims: Mapping[str, Any], tokens: Mapping[str, str] | None = None
    ) -> dict[str, Any]:
        return await self.userinfo_client.fetch_distributed_claims(claims, tokens)
