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
from typing import Any

import pytest
from authlib.jose import JsonWebKey
from pydantic import ValidationError

from coreason_rp.models import (
    AuthorizationRequestState,
    AuthorizationResponse,
    ClientConfig,
    IssuerMetadata,
    TokenEndpointAuthMethod,
    TokenSet,
    ValidatedIDToken,
    normalize_response_type,
    requires_nonce,
)

from conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, REDIRECT_URI


def private_jwks() -> dict[str, Any]:
    key = JsonWebKey.generate_key("EC", "P-256", is_private=True, options={"kid": "client-ec"})
    public = key.as_dict(is_private=False)
    return {"keys": [key.as_dict(is_private=True), public]}


@pytest.mark.parametrize(
    "value, expected",
    [
        ("code", "code"),
        ("id_token code", "code id_token"),
        ("token id_token code", "code id_token token"),
        ("token  id_token", "id_token token"),
    ],
)
def test_normalize_response_type(value: str, expected: str) -> None:
    assert normalize_response_type(value) == expected


@pytest.mark.parametrize(
    "response_type, expected",
    [
        ("code", False),
        ("none", False),
        ("id_token", True),
        ("id_token token", True),
        ("code id_token", True),
        ("code token", True),
    ],
)
def test_requires_nonce(response_type: str, expected: bool) -> None:
    assert requires_nonce(response_type) is expected


class TestClientConfig:
    def test_minimal(self) -> None:
        config = ClientConfig(client_id=CLIENT_ID, client_secret=CLIENT_SECRET, redirect_uris=REDIRECT_URI)
        assert config.redirect_uris == frozenset({REDIRECT_URI})
        assert config.response_types == frozenset({"code"})
        assert config.token_endpoint_auth_method == TokenEndpointAuthMethod.CLIENT_SECRET_BASIC
        assert config.id_token_signed_response_alg == "RS256"
        assert config.secret == CLIENT_SECRET
        assert config.default_redirect_uri() == REDIRECT_URI

    def test_secret_hidden_from_repr(self) -> None:
        config = ClientConfig(client_id=CLIENT_ID, client_secret=CLIENT_SECRET, redirect_uris=REDIRECT_URI)
        assert CLIENT_SECRET not in repr(config)

    def test_response_types_normalized(self) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=REDIRECT_URI,
            response_types=["id_token code", "token id_token"],
        )
        assert config.response_types == frozenset({"code id_token", "id_token token"})

    def test_redirect_uri_required(self) -> None:
        with pytest.raises(ValidationError, match="redirect_uri"):
            ClientConfig(client_id=CLIENT_ID, client_secret=CLIENT_SECRET, redirect_uris=[])

    def test_ambiguous_default_redirect_uri(self) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=[REDIRECT_URI, "https://rp.example.com/other"],
        )
        assert config.default_redirect_uri() is None

    def test_secret_required_for_secret_auth(self) -> None:
        with pytest.raises(ValidationError, match="client_secret is required"):
            ClientConfig(client_id=CLIENT_ID, redirect_uris=REDIRECT_URI)

    def test_public_client(self) -> None:
        config = ClientConfig(client_id=CLIENT_ID, redirect_uris=REDIRECT_URI, token_endpoint_auth_method="none")
        assert config.secret is None

    def test_secret_required_for_hmac_alg(self) -> None:
        with pytest.raises(ValidationError):
            ClientConfig(
                client_id=CLIENT_ID,
                redirect_uris=REDIRECT_URI,
                token_endpoint_auth_method="none",
                id_token_signed_response_alg="HS256",
            )

    def test_private_key_jwt_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="private_key_jwt"):
            ClientConfig(client_id=CLIENT_ID, redirect_uris=REDIRECT_URI, token_endpoint_auth_method="private_key_jwt")

    def test_private_jwks(self) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            redirect_uris=REDIRECT_URI,
            token_endpoint_auth_method="private_key_jwt",
            jwks=private_jwks(),
        )
        keys = config.private_jwks()
        assert len(keys) == 1
        assert "d" in keys[0]

    def test_asymmetric_decryption_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="RSA-OAEP"):
            ClientConfig(
                client_id=CLIENT_ID,
                client_secret=CLIENT_SECRET,
                redirect_uris=REDIRECT_URI,
                id_token_encrypted_response_alg="RSA-OAEP",
            )

    @pytest.mark.parametrize("prefix", ["id_token_encrypted_response", "userinfo_encrypted_response"])
    def test_content_encryption_default(self, prefix: str) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=REDIRECT_URI,
            **{f"{prefix}_alg": "dir"},
        )
        assert getattr(config, f"{prefix}_enc") == "A128CBC-HS256"

    def test_request_object_encryption_default(self) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=REDIRECT_URI,
            request_object_encryption_alg="A128KW",
        )
        assert config.request_object_encryption_enc == "A128CBC-HS256"

    def test_explicit_enc_kept(self) -> None:
        config = ClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=REDIRECT_URI,
            id_token_encrypted_response_alg="dir",
            id_token_encrypted_response_enc="A256GCM",
        )
        assert config.id_token_encrypted_response_enc == "A256GCM"

    def test_frozen(self) -> None:
        config = ClientConfig(client_id=CLIENT_ID, client_secret=CLIENT_SECRET, redirect_uris=REDIRECT_URI)
        with pytest.raises(ValidationError):
            config.client_id = "other"  # type: ignore[misc]


def test_issuer_metadata_keeps_unknown_fields() -> None:
    metadata = IssuerMetadata(issuer=ISSUER, frontchannel_logout_supported=True)
    assert metadata.model_extra == {"frontchannel_logout_supported": True}
    assert metadata.request_uri_parameter_supported is True
    assert metadata.claims_parameter_supported is False


def test_request_state_normalizes_response_type() -> None:
    state = AuthorizationRequestState(state="s", nonce="n", response_type="id_token code", redirect_uri=REDIRECT_URI)
    assert state.response_type == "code id_token"


class TestAuthorizationResponse:
    def test_params_include_extras(self) -> None:
        response = AuthorizationResponse(code="c", state="s", iss=ISSUER)
        assert response.params == {"code": "c", "state": "s", "iss": ISSUER}
        assert response.is_error is False

    def test_error(self) -> None:
        response = AuthorizationResponse(error="login_required")
        assert response.is_error is True


class TestTokenSet:
    def test_expires_at_from_expires_in(self) -> None:
        before = int(time.time())
        token_set = TokenSet(access_token="at", expires_in=3600)
        assert token_set.expires_at is not None
        assert before + 3600 <= token_set.expires_at <= int(time.time()) + 3600
        assert token_set.expired is False

    def test_expired(self) -> None:
        assert TokenSet(access_token="at", expires_at=int(time.time()) - 1).expired is True
        assert TokenSet(access_token="at").expired is False

    def test_tokens_hidden_from_repr(self) -> None:
        token_set = TokenSet(access_token="secret-at", refresh_token="secret-rt")
        assert "secret-at" not in repr(token_set)
        assert "secret-rt" not in repr(token_set)

    def test_claims(self) -> None:
        now = int(time.time())
        claims = ValidatedIDToken(
            iss=ISSUER,
            sub="user-42",
            aud=(CLIENT_ID,),
            exp=now + 60,
            iat=now,
            alg="RS256",
            raw="a.b.c",
            claims={"sub": "user-42", "email": "joe@example.com"},
        )
        assert TokenSet(id_token_claims=claims).claims["email"] == "joe@example.com"
        assert TokenSet().claims == {}


def test_validated_id_token_redacts_subject() -> None:
    now = int(time.time())
    token = ValidatedIDToken(
        iss=ISSUER, sub="user-42", aud=(CLIENT_ID,), exp=now + 60, iat=now, alg="RS256", raw="a.b.c"
    )
    assert "user-42" not in repr(token)
    assert "user-42" not in str(token)
    assert "a.b.c" not in repr(token)
