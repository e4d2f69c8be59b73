"""
JWT client assertions for the client-credentials grant.

Author: SmartAuth Team
Date: 2026-10-19
"""

import logging
import time
import uuid
from typing import Callable, Optional

import jwt

from smartauth.keys import KeySet

logger = logging.getLogger(__name__)

ASSERTION_ALGORITHM = "RS384"
ASSERTION_LIFETIME = 300  # seconds


def generate_assertion(
    keystore: KeySet,
    client_id: str,
    audience: str,
    kid: Optional[str] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """
    Build a signed JWT authenticating ``client_id`` to ``audience``.

    Args:
        keystore: Local key set holding the private signing key
        client_id: Identifier of this client on the remote server
        audience: Token endpoint the assertion is presented to
        kid: Key id to sign with, defaults to the first signature key
        clock: Source of the current time in epoch seconds

    Returns:
        Compact serialized JWS

    Raises:
        NoSigningKeyError: If no signature key is available
        UnknownKeyIdError: If ``kid`` is not in the key set
    """
    key = keystore.signing_key(kid)

    claims = {
        "sub": client_id,
        "iss": client_id,
        "aud": audience,
        "exp": int(clock()) + ASSERTION_LIFETIME,
        "jti": str(uuid.uuid4()),
    }

    headers = {"kid": key.key_id} if key.key_id else None
    token = jwt.encode(
        claims,
        key.key,
        algorithm=ASSERTION_ALGORITHM,
        headers=headers,
    )

    logger.debug(f"Signed client assertion for client_id={client_id}, aud={audience}, kid={key.key_id}")
    return token
