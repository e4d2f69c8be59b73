"""
JSON Web Key Set handling.

Parses JWK sets with PyJWT, selects signing keys, exports the public half of a
key set and verifies token signatures against it.

Author: SmartAuth Team
Date: 2026-10-19
"""

import json
import logging
from hashlib import sha256
from typing import Any, Dict, Iterator, List, Optional

import jwt
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from smartauth.exceptions import (
    InvalidKeySetError,
    InvalidSignatureError,
    NoSigningKeyError,
    UnknownKeyIdError,
)

logger = logging.getLogger(__name__)

# JWK members that carry private or secret key material
PRIVATE_MEMBERS = frozenset({"d", "p", "q", "dp", "dq", "qi", "oth", "k"})

VERIFICATION_ALGORITHMS = [
    "RS256", "RS384", "RS512",
    "PS256", "PS384", "PS512",
    "ES256", "ES384", "ES512",
]

# Claims checks are left to the caller; only the signature is verified here.
SIGNATURE_ONLY_OPTIONS = {
    "verify_signature": True,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iat": False,
    "verify_aud": False,
    "verify_iss": False,
}


class KeySet:
    """
    Parsed JSON Web Key Set.

    Accepts either a ``{"keys": [...]}`` document or a single bare JWK.
    Keys PyJWT cannot use (e.g. encryption-only keys) are skipped; entries
    that are not JSON objects make the whole set invalid.
    """

    def __init__(self, jwks: Dict[str, Any]):
        if not isinstance(jwks, dict):
            raise InvalidKeySetError("Key set must be a JSON object")

        if "keys" in jwks:
            raw_keys = jwks["keys"]
            if not isinstance(raw_keys, list):
                raise InvalidKeySetError("'keys' member must be a list")
        elif "kty" in jwks:
            raw_keys = [jwks]
        else:
            raise InvalidKeySetError("Key set has neither 'keys' nor 'kty'")

        self._raw: List[Dict[str, Any]] = []
        self._keys: List[jwt.PyJWK] = []
        for raw in raw_keys:
            if not isinstance(raw, dict):
                raise InvalidKeySetError(f"Key set entry is not a JSON object: {raw!r}")
            try:
                parsed = jwt.PyJWK(raw)
            except jwt.PyJWTError as e:
                logger.warning(f"Skipping unusable key kid={raw.get('kid')}: {e}")
                continue
            self._raw.append(raw)
            self._keys.append(parsed)

    def __len__(self) -> int:
        return len(self._keys)

    def __iter__(self) -> Iterator[jwt.PyJWK]:
        return iter(self._keys)

    def get(self, kid: str) -> Optional[jwt.PyJWK]:
        """Return the key with the given id, or None."""
        for key in self._keys:
            if key.key_id == kid:
                return key
        return None

    def signing_key(self, kid: Optional[str] = None) -> jwt.PyJWK:
        """
        Select the key used to sign outgoing assertions.

        Args:
            kid: Explicit key id. When omitted, the first private key whose
                 ``use`` is ``sig`` (or unspecified) is chosen.

        Raises:
            UnknownKeyIdError: If ``kid`` is not in the set
            NoSigningKeyError: If no private signature key is available
        """
        if kid is not None:
            key = self.get(kid)
            if key is None:
                raise UnknownKeyIdError(kid)
            if not _is_private(key):
                raise NoSigningKeyError(f"Key {kid} has no private material")
            return key

        for key in self._keys:
            if key.public_key_use in (None, "sig") and _is_private(key):
                return key
        raise NoSigningKeyError("Key set contains no private signature key")

    def public_jwks(self) -> Dict[str, Any]:
        """Return the key set with all private material removed."""
        keys = []
        for raw in self._raw:
            if raw.get("kty") == "oct":
                continue
            keys.append({k: v for k, v in raw.items() if k not in PRIVATE_MEMBERS})
        return {"keys": keys}

    def verify(self, token: str) -> Dict[str, Any]:
        """
        Verify a compact JWS against this key set and return its claims.

        Only the signature is checked; ``exp`` and the other registered claims
        are not validated.

        Raises:
            InvalidSignatureError: If no key in the set verifies the token
        """
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as e:
            raise InvalidSignatureError(f"Malformed token: {e}") from e

        kid = header.get("kid")
        if kid is not None:
            key = self.get(kid)
            if key is None:
                raise InvalidSignatureError(f"No key matches token kid: {kid}")
            candidates = [key]
        else:
            candidates = list(self._keys)

        last_error: Optional[Exception] = None
        for key in candidates:
            try:
                return jwt.decode(
                    token,
                    _verification_key(key),
                    algorithms=VERIFICATION_ALGORITHMS,
                    options=SIGNATURE_ONLY_OPTIONS,
                )
            except (jwt.PyJWTError, TypeError, ValueError) as e:
                last_error = e

        raise InvalidSignatureError(
            f"Token signature verification failed: {last_error or 'no candidate keys'}"
        )

    @classmethod
    def generate(
        cls,
        kid: Optional[str] = None,
        key_size: int = 2048,
        alg: str = "RS384",
    ) -> Dict[str, Any]:
        """
        Generate a private JWKS holding a single RSA signing key.

        The key id defaults to a thumbprint of the public key.
        """
        logger.info(f"Generating {key_size}-bit RSA signing key")

        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
            backend=default_backend()
        )
        jwk = json.loads(RSAAlgorithm.to_jwk(private_key))

        if kid is None:
            public_pem = private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            )
            kid = sha256(public_pem).hexdigest()[:16]

        jwk.pop("key_ops", None)
        jwk.update({"kid": kid, "use": "sig", "alg": alg})
        return {"keys": [jwk]}


def _is_private(key: jwt.PyJWK) -> bool:
    return hasattr(key.key, "private_bytes")


def _verification_key(key: jwt.PyJWK) -> Any:
    if _is_private(key):
        return key.key.public_key()
    return key.key
