"""
Bearer Token Validator for resource servers.

Validates access tokens either locally, by checking the signature against
the issuer's key set, or remotely through the issuer's introspection
endpoint.

Author: SmartAuth Team
Date: 2026-10-19
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from smartauth.exceptions import (
    IntrospectionError,
    InvalidKeySetError,
    InvalidSignatureError,
    KeyFetchError,
    NoKeysConfiguredError,
)
from smartauth.keys import KeySet
from smartauth.models import IntrospectionResult, ServerMetadata

logger = logging.getLogger(__name__)


class TokenValidator:
    """
    Validates bearer tokens presented to a resource server.

    Supports:
    - Signature verification against an inline JWKS or one fetched from a jwks_uri
    - Token introspection (RFC 7662 style)

    Local validation checks the signature only. Expiry, audience and issuer
    checks are left to the caller.
    """

    def __init__(
        self,
        jwks: Optional[Dict[str, Any]] = None,
        jwks_uri: Optional[str] = None,
        introspection_endpoint: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize token validator.

        Args:
            jwks: Inline key set of the token issuer
            jwks_uri: URL of the issuer's key set, fetched once on first use
            introspection_endpoint: URL of the issuer's introspection endpoint
            http_client: Shared httpx client; one is created and owned if omitted
        """
        self.jwks = jwks
        self.jwks_uri = jwks_uri
        self.introspection_endpoint = introspection_endpoint

        self._http = http_client if http_client is not None else httpx.AsyncClient()
        self._owns_http = http_client is None

        self._keystore: Optional[KeySet] = None
        self._keystore_lock = asyncio.Lock()

        logger.info(
            f"TokenValidator initialized (inline_jwks={jwks is not None}, "
            f"jwks_uri={jwks_uri}, introspection={introspection_endpoint})"
        )

    @classmethod
    def from_metadata(
        cls,
        metadata: ServerMetadata,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "TokenValidator":
        """Create a validator for tokens issued by a discovered server."""
        return cls(
            jwks=metadata.jwks,
            jwks_uri=metadata.jwks_uri,
            introspection_endpoint=metadata.introspection_endpoint,
            http_client=http_client,
        )

    async def __aenter__(self) -> "TokenValidator":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    @property
    def has_keys(self) -> bool:
        """Whether local validation is configured at all."""
        return self.jwks is not None or self.jwks_uri is not None

    async def get_keystore(self) -> Optional[KeySet]:
        """
        Resolve the verification key set once and cache it.

        Returns:
            The key set, or None when neither jwks nor jwks_uri is configured

        Raises:
            KeyFetchError: If the key set cannot be fetched or parsed
        """
        if self._keystore is not None:
            return self._keystore

        async with self._keystore_lock:
            if self._keystore is not None:
                return self._keystore

            if self.jwks is not None:
                jwks = self.jwks
            elif self.jwks_uri is not None:
                jwks = await self.retrieve_jwks(self.jwks_uri)
            else:
                return None

            try:
                self._keystore = KeySet(jwks)
            except InvalidKeySetError as e:
                raise KeyFetchError(f"Invalid verification key set: {e.message}") from e
            return self._keystore

    async def retrieve_jwks(self, url: str) -> Dict[str, Any]:
        """Fetch a key set from a URL."""
        logger.info(f"Fetching verification keys from {url}")
        try:
            response = await self._http.get(url)
        except httpx.HTTPError as e:
            raise KeyFetchError(f"Failed to fetch keys from {url}: {e}") from e

        if not response.is_success:
            raise KeyFetchError(f"Key fetch from {url} returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise KeyFetchError(f"Invalid key set from {url}: {e}") from e

    async def validate_local(self, token: str) -> Dict[str, Any]:
        """
        Verify the token signature against the resolved key set.

        Returns:
            The token's claims

        Raises:
            NoKeysConfiguredError: If no key set is configured
            InvalidSignatureError: If the signature does not verify or the
                                   configured key set cannot be resolved
        """
        try:
            keystore = await self.get_keystore()
        except KeyFetchError as e:
            raise InvalidSignatureError(f"Verification keys unavailable: {e.message}") from e
        if keystore is None:
            raise NoKeysConfiguredError()

        claims = keystore.verify(token)
        logger.debug(f"Token signature verified for sub={claims.get('sub')}")
        return claims

    async def validate_remote(self, token: str) -> IntrospectionResult:
        """
        Ask the issuer's introspection endpoint about the token.

        Returns:
            The introspection result; an inactive token yields
            ``IntrospectionResult.inactive()`` rather than an error

        Raises:
            IntrospectionError: If no endpoint is configured or the call fails
        """
        endpoint = self.introspection_endpoint
        if not endpoint:
            raise IntrospectionError("No introspection endpoint configured")

        try:
            response = await self._http.post(
                endpoint,
                data={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise IntrospectionError(f"Failed to reach {endpoint}: {e}") from e

        if not response.is_success:
            raise IntrospectionError(
                f"Introspection at {endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            body = response.json()
            if not isinstance(body, dict):
                raise ValueError("introspection response is not a JSON object")
            active = body.get("active") is True
            if not active:
                logger.info("Introspection reported token inactive")
                return IntrospectionResult.inactive()
            return IntrospectionResult.model_validate(body)
        except (ValueError, ValidationError) as e:
            raise IntrospectionError(
                f"Invalid introspection response from {endpoint}: {e}",
                status_code=response.status_code,
                body=response.text,
            ) from e

    async def validate(self, token: str) -> IntrospectionResult:
        """
        Validate a token with whichever mechanism is configured.

        Local signature verification is preferred when keys are configured;
        otherwise the introspection endpoint is used. Local success is
        reported as an active result carrying the token claims.
        """
        if self.has_keys:
            claims = await self.validate_local(token)
            return IntrospectionResult.model_validate({**claims, "active": True})
        return await self.validate_remote(token)
