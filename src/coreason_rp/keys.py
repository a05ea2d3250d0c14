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
JSON Web Key Set handling: key selection by algorithm, use and kid.
"""

import time
from typing import Any

from authlib.jose import JsonWebKey
from authlib.jose.rfc7517 import AsymmetricKey
from pydantic import BaseModel, ConfigDict, Field

from coreason_rp.exceptions import AmbiguousKeyError, ConfigurationError, KeyNotFoundError
from coreason_rp.utils.logger import logger

_EC_CURVES = {
    "ES256": "P-256",
    "ES384": "P-384",
    "ES512": "P-521",
    "ES256K": "secp256k1",
}

_KEY_OPS = {
    "sig": frozenset({"sign", "verify"}),
    "enc": frozenset({"encrypt", "decrypt", "wrapKey", "unwrapKey", "deriveKey"}),
}


def key_type_for_alg(alg: str) -> tuple[str, str | None]:
    """
    Maps a JWS or JWE algorithm to the JWK ``kty`` (and EC curve, if fixed) able to process it.

    Raises:
        ConfigurationError: If the algorithm is not supported.
    """
    if alg.startswith(("RS", "PS")) or alg.startswith("RSA"):
        return "RSA", None
    if alg in _EC_CURVES:
        return "EC", _EC_CURVES[alg]
    if alg.startswith("ECDH-ES"):
        return "EC", None
    if alg in ("EdDSA", "Ed25519", "Ed448"):
        return "OKP", None
    if alg.startswith("HS") or alg == "dir" or alg.startswith("A"):
        return "oct", None
    raise ConfigurationError(f"unsupported algorithm {alg}", alg=alg)


def default_alg_for_key(jwk: dict[str, Any]) -> str:
    """The signing algorithm to use with a JWK that does not declare one."""
    if jwk.get("alg"):
        return str(jwk["alg"])
    kty = jwk.get("kty")
    if kty == "RSA":
        return "RS256"
    if kty == "EC":
        for alg, crv in _EC_CURVES.items():
            if crv == jwk.get("crv"):
                return alg
    if kty == "OKP":
        return "EdDSA"
    raise ConfigurationError(f"cannot infer a signing algorithm for key type {kty}", kty=kty)


def _imports_as_jwk(entry: Any) -> bool:
    if not isinstance(entry, dict) or not entry.get("kty"):
        return False
    try:
        key = JsonWebKey.import_key(entry)
        # Asymmetric key material is parsed lazily, load it now
        if isinstance(key, AsymmetricKey):
            key.get_public_key()
    except (KeyError, TypeError, ValueError):
        return False
    return True


class KeySet(BaseModel):
    """
    An immutable snapshot of a JWK Set.

    A refresh never mutates a KeySet: it produces a new one with a higher ``epoch``.

    Attributes:
        keys (tuple[dict[str, Any], ...]): The JWK entries in document order.
        fetched_at (float): Unix time at which the set was retrieved.
        epoch (int): Refresh counter of the owning cache.
    """

    model_config = ConfigDict(frozen=True)

    keys: tuple[dict[str, Any], ...] = ()
    fetched_at: float = Field(default_factory=time.time)
    epoch: int = 0

    @classmethod
    def from_jwks(cls, jwks: Any, epoch: int = 0, fetched_at: float | None = None) -> "KeySet":
        """
        Builds a KeySet from a ``{"keys": [...]}`` document.

        Each entry is imported with authlib; entries that do not import as a JWK are
        dropped with a warning.

        Raises:
            ValueError: If the document is not a JWK Set.
        """
        if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
            raise ValueError("Invalid JSON Web Key Set: expected an object with a 'keys' array")
        keys = []
        for index, entry in enumerate(jwks["keys"]):
            if _imports_as_jwk(entry):
                keys.append(dict(entry))
            else:
                kid = entry.get("kid") if isinstance(entry, dict) else None
                logger.warning(f"Skipping invalid JWK at index {index} (kid={kid})")
        return cls(keys=tuple(keys), epoch=epoch, fetched_at=time.time() if fetched_at is None else fetched_at)

    def __len__(self) -> int:
        return len(self.keys)

    def age(self, now: float | None = None) -> float:
        return (time.time() if now is None else now) - self.fetched_at

    def is_stale(self, threshold: float, now: float | None = None) -> bool:
        return self.age(now) > threshold

    def candidates(self, alg: str, kid: str | None = None, use: str = "sig") -> list[dict[str, Any]]:
        """Returns every key able to process ``alg`` for ``use``, narrowed by ``kid`` when given."""
        kty, crv = key_type_for_alg(alg)
        allowed_ops = _KEY_OPS.get(use, frozenset())
        matches = []
        for jwk in self.keys:
            if jwk.get("kty") != kty:
                continue
            if crv is not None and jwk.get("crv") != crv:
                continue
            if jwk.get("use") and jwk["use"] != use:
                continue
            if jwk.get("alg") and jwk["alg"] != alg:
                continue
            key_ops = jwk.get("key_ops")
            if isinstance(key_ops, list) and not allowed_ops.intersection(key_ops):
                continue
            if kid is not None and jwk.get("kid") != kid:
                continue
            matches.append(jwk)
        return matches

    def resolve(self, alg: str, kid: str | None = None, use: str = "sig") -> dict[str, Any]:
        """
        Selects the single key to use for ``alg``.

        Without a ``kid`` the key is selected by uniqueness.

        Raises:
            KeyNotFoundError: If no key matches.
            AmbiguousKeyError: If several keys match and no ``kid`` was given.
        """
        matches = self.candidates(alg, kid=kid, use=use)
        if not matches:
            raise KeyNotFoundError(alg, kid)
        if len(matches) > 1 and kid is None:
            raise AmbiguousKeyError(alg, len(matches))
        return matches[0]
