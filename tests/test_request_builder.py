# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_rp

import json
from typing import Any
from urllib.parse import parse_qs, urlsplit

import pytest
from authlib.common.encoding import json_loads, to_unicode, urlsafe_b64decode
from authlib.jose import JsonWebEncryption, JsonWebKey, JsonWebSignature, jwt

from coreason_rp.exceptions import ConfigurationError
from coreason_rp.models import ClientConfig, IssuerMetadata
from coreason_rp.oidc_provider import OIDCProvider
from coreason_rp.request_builder import AuthorizationRequestBuilder, create_state, ensure_nonce
from coreason_rp.response_parser import parse_callback

from conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, REDIRECT_URI, FakeOP, public_jwk

NONCE_REQUIRED = ["id_token", "id_token token", "code id_token", "code token", "code id_token token", "token"]


@pytest.fixture
def metadata() -> IssuerMetadata:
    return IssuerMetadata(**FakeOP().metadata)


@pytest.fixture
def builder(client_config: ClientConfig, metadata: IssuerMetadata) -> AuthorizationRequestBuilder:
    return AuthorizationRequestBuilder(client_config, metadata)


def query_of(url: str) -> dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


def decode_segment(segment: str) -> dict[str, Any]:
    return json_loads(to_unicode(urlsafe_b64decode(segment.encode())))


class TestNonceRequirement:
    @pytest.mark.parametrize("response_type", NONCE_REQUIRED)
    def test_missing_nonce(self, builder: AuthorizationRequestBuilder, response_type: str) -> None:
        with pytest.raises(ConfigurationError, match="nonce MUST be provided for implicit and hybrid flows"):
            builder.authorization_url(response_type)

    @pytest.mark.parametrize("response_type", NONCE_REQUIRED)
    def test_ensure_nonce(self, response_type: str) -> None:
        with pytest.raises(ConfigurationError):
            ensure_nonce(response_type, None)
        ensure_nonce(response_type, "n")

    def test_code_flow_without_nonce(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url("code", state="s"))
        assert "nonce" not in params

    def test_code_flow_with_nonce(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url("code", nonce="n"))
        assert params["nonce"] == "n"


class TestAuthorizationUrl:
    def test_parameters(self, builder: AuthorizationRequestBuilder) -> None:
        url = builder.authorization_url("code id_token", nonce="n-1", state="s-1", prompt="login", max_age=300)
        assert url.startswith(f"{ISSUER}/authorize?")

        params = query_of(url)
        assert params == {
            "client_id": CLIENT_ID,
            "response_type": "code id_token",
            "scope": "openid",
            "redirect_uri": REDIRECT_URI,
            "state": "s-1",
            "nonce": "n-1",
            "prompt": "login",
            "max_age": "300",
        }

    def test_openid_scope_is_added(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url(scope="profile email"))
        assert params["scope"] == "openid profile email"

    def test_openid_scope_not_duplicated(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url(scope="email openid"))
        assert params["scope"] == "email openid"

    def test_claims_are_serialized(self, builder: AuthorizationRequestBuilder) -> None:
        claims = {
            "userinfo": {"email": {"essential": True}, "name": None},
            "id_token": {"auth_time": {"essential": True}, "acr": {"values": ["urn:mace:incommon:iap:silver"]}},
        }
        params = query_of(builder.authorization_url(claims=claims))
        assert json.loads(params["claims"]) == claims

    def test_request_uri_and_request_pass_through(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url(request_uri="https://rp.example.com/req.jwt", request="a.b."))
        assert params["request_uri"] == "https://rp.example.com/req.jwt"
        assert params["request"] == "a.b."

    def test_extra_parameters(self, builder: AuthorizationRequestBuilder) -> None:
        params = query_of(builder.authorization_url(ui_locales="fr-CA", login_hint="joe@example.com"))
        assert params["ui_locales"] == "fr-CA"
        assert params["login_hint"] == "joe@example.com"

    def test_existing_endpoint_query_is_preserved(self, client_config: ClientConfig) -> None:
        metadata = IssuerMetadata(issuer=ISSUER, authorization_endpoint=f"{ISSUER}/authorize?tenant=t1")
        url = AuthorizationRequestBuilder(client_config, metadata).authorization_url(state="s")
        params = query_of(url)
        assert params["tenant"] == "t1"
        assert params["state"] == "s"

    def test_ambiguous_redirect_uri(self, metadata: IssuerMetadata) -> None:
        client = ClientConfig(
            client_id=CLIENT_ID,
            token_endpoint_auth_method="none",
            redirect_uris=[REDIRECT_URI, "https://rp.example.com/other"],
        )
        builder = AuthorizationRequestBuilder(client, metadata)

        with pytest.raises(ConfigurationError):
            builder.authorization_url()
        url = builder.authorization_url(redirect_uri="https://rp.example.com/other")
        assert query_of(url)["redirect_uri"] == "https://rp.example.com/other"

    def test_missing_authorization_endpoint(self, client_config: ClientConfig) -> None:
        builder = AuthorizationRequestBuilder(client_config, IssuerMetadata(issuer=ISSUER))
        with pytest.raises(ConfigurationError):
            builder.authorization_url()

    @pytest.mark.parametrize(
        "response_type, expected",
        [
            ("code", {"response_type": "code", "state": "st"}),
            ("id_token", {"response_type": "id_token", "state": "st", "nonce": "nn"}),
            ("id_token token", {"response_type": "id_token token", "state": "st", "nonce": "nn"}),
            ("code id_token", {"response_type": "code id_token", "state": "st", "nonce": "nn"}),
            ("code id_token token", {"response_type": "code id_token token", "state": "st", "nonce": "nn"}),
        ],
    )
    def test_url_parsed_back_by_callback_parser(
        self, builder: AuthorizationRequestBuilder, response_type: str, expected: dict[str, str]
    ) -> None:
        nonce = expected.get("nonce")
        url = builder.authorization_url(response_type, state="st", nonce=nonce)

        from_query = parse_callback(url)
        from_fragment = parse_callback(url.replace("?", "#", 1))

        for parsed in (from_query, from_fragment):
            params = parsed.params
            assert {k: params[k] for k in expected} == expected
            assert parsed.state == "st"


class TestCreateState:
    def test_code_flow(self, client_config: ClientConfig) -> None:
        state = create_state(client_config)
        assert state.nonce is None
        assert state.redirect_uri == REDIRECT_URI
        assert len(state.state) >= 32

    @pytest.mark.parametrize("response_type", NONCE_REQUIRED)
    def test_nonce_generated(self, client_config: ClientConfig, response_type: str) -> None:
        state = create_state(client_config, response_type)
        assert state.nonce

    def test_values_are_unique(self, client_config: ClientConfig) -> None:
        states = {create_state(client_config, "id_token").nonce for _ in range(20)}
        assert len(states) == 20

    def test_response_type_normalized(self, builder: AuthorizationRequestBuilder) -> None:
        state = builder.create_state("token id_token code", max_age=60)
        assert state.response_type == "code id_token token"
        assert state.max_age == 60


class TestRequestObject:
    @pytest.mark.asyncio
    async def test_unsigned(self, builder: AuthorizationRequestBuilder) -> None:
        token = await builder.request_object(state="s", scope="profile")
        header, payload, signature = token.split(".")

        assert signature == ""
        assert decode_segment(header) == {"alg": "none", "typ": "JWT"}
        claims = decode_segment(payload)
        assert claims["iss"] == CLIENT_ID
        assert claims["aud"] == ISSUER
        assert claims["client_id"] == CLIENT_ID
        assert claims["response_type"] == "code"
        assert claims["scope"] == "openid profile"
        assert claims["redirect_uri"] == REDIRECT_URI
        assert claims["exp"] - claims["iat"] == 300
        assert claims["jti"]

    @pytest.mark.asyncio
    async def test_unsigned_verifies_with_alg_none(self, builder: AuthorizationRequestBuilder) -> None:
        token = await builder.request_object(state="s")

        data = JsonWebSignature(algorithms=["none"]).deserialize_compact(token, None)
        assert data["header"]["alg"] == "none"
        assert json_loads(to_unicode(data["payload"]))["state"] == "s"

    @pytest.mark.asyncio
    async def test_nonce_required(self, builder: AuthorizationRequestBuilder) -> None:
        with pytest.raises(ConfigurationError):
            await builder.request_object(response_type="id_token")

    @pytest.mark.asyncio
    async def test_hs256(self, client_config: ClientConfig, metadata: IssuerMetadata) -> None:
        config = client_config.model_copy(update={"request_object_signing_alg": "HS256"})
        token = await AuthorizationRequestBuilder(config, metadata).request_object(state="s")

        claims = jwt.decode(token, CLIENT_SECRET.encode())
        assert claims["state"] == "s"
        assert claims.header["alg"] == "HS256"

    @pytest.mark.asyncio
    async def test_rs256_with_client_key(self, metadata: IssuerMetadata) -> None:
        client_key = JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "client-sig"})
        client = ClientConfig(
            client_id=CLIENT_ID,
            redirect_uris=[REDIRECT_URI],
            token_endpoint_auth_method="private_key_jwt",
            request_object_signing_alg="RS256",
            jwks={"keys": [client_key.as_dict(is_private=True)]},
        )
        token = await AuthorizationRequestBuilder(client, metadata).request_object(state="s", nonce="n")

        claims = jwt.decode(token, public_jwk(client_key))
        assert claims.header["kid"] == "client-sig"
        assert claims["nonce"] == "n"

    @pytest.mark.asyncio
    async def test_encrypted_to_op(
        self, client_config: ClientConfig, static_provider: OIDCProvider, fake_op: FakeOP, metadata: IssuerMetadata
    ) -> None:
        op_enc_key = JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": "op-enc"})
        fake_op.keys.append(public_jwk(op_enc_key, use="enc"))
        config = client_config.model_copy(
            update={"request_object_encryption_alg": "RSA-OAEP", "request_object_encryption_enc": "A128CBC-HS256"}
        )

        token = await AuthorizationRequestBuilder(config, metadata, static_provider).request_object(state="s")
        assert token.count(".") == 4

        decrypted = JsonWebEncryption().deserialize_compact(
            token, {**op_enc_key.as_dict(is_private=True), "use": "enc"}
        )
        assert decrypted["header"]["kid"] == "op-enc"
        inner = to_unicode(decrypted["payload"])
        assert decode_segment(inner.split(".")[1])["state"] == "s"

    @pytest.mark.asyncio
    async def test_encryption_needs_provider(self, client_config: ClientConfig, metadata: IssuerMetadata) -> None:
        config = client_config.model_copy(
            update={"request_object_encryption_alg": "RSA-OAEP", "request_object_encryption_enc": "A128CBC-HS256"}
        )
        with pytest.raises(ConfigurationError):
            await AuthorizationRequestBuilder(config, metadata).request_object(state="s")
