"""
SMART Backend Services Token Client.

Obtains access tokens from remote authorization servers with the OAuth2
client-credentials grant, authenticating with signed JWT assertions.

Author: SmartAuth Team
Date: 2026-10-19
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from smartauth.assertion import generate_assertion
from smartauth.exceptions import (
    DiscoveryError,
    InvalidKeySetError,
    KeyFetchError,
    NoClientError,
    RegistrationError,
    TokenRequestError,
)
from smartauth.keys import KeySet
from smartauth.logging_config import log_with_context
from smartauth.models import (
    AccessToken,
    ClientOptions,
    ClientRegistration,
    RegistrationRequest,
    ServerMetadata,
)
from smartauth.store import CredentialStore, InMemoryCredentialStore

logger = logging.getLogger(__name__)

SMART_CONFIGURATION_PATH = "/.well-known/smart-configuration"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class TokenClient:
    """
    Backend services client for a single local identity.

    Tracks any number of remote servers through a CredentialStore:
    - discovers server metadata and public keys
    - self-registers where the server allows it
    - requests and caches access tokens
    - verifies tokens the servers hand back

    Usage:
        async with TokenClient(jwks) as client:
            await client.add_server("https://ehr.example.org")
            token = await client.request_access_token("https://ehr.example.org")
    """

    def __init__(
        self,
        jwks: Dict[str, Any],
        store: Optional[CredentialStore] = None,
        options: Optional[ClientOptions] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the client.

        Args:
            jwks: This client's private key set used for signing requests
            store: Persistence for server configuration and tokens,
                   an in-memory store when omitted
            options: Signing key id, scopes, client name and jwks_uri
            http_client: Shared httpx client; one is created and owned if omitted
            clock: Source of the current time in epoch seconds
        """
        self.jwks = jwks
        self.store = store if store is not None else InMemoryCredentialStore()
        self.options = options or ClientOptions()
        self.clock = clock

        self._http = http_client if http_client is not None else httpx.AsyncClient()
        self._owns_http = http_client is None

        self._keystore: Optional[KeySet] = None
        self._server_keystores: Dict[str, KeySet] = {}
        self._token_locks: Dict[str, asyncio.Lock] = {}
        self._registration_locks: Dict[str, asyncio.Lock] = {}
        self._keystore_locks: Dict[str, asyncio.Lock] = {}
        self._discovery_locks: Dict[str, asyncio.Lock] = {}

    async def __aenter__(self) -> "TokenClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.aclose()

    @property
    def signing_key_id(self) -> Optional[str]:
        return self.options.signing_key_id

    @property
    def scopes(self) -> str:
        """Scopes requested from remote servers by default."""
        return self.options.scopes

    # ========== Key Sets ==========

    def get_keystore(self) -> KeySet:
        """Get the local key set holding this client's signing keys."""
        if self._keystore is None:
            self._keystore = KeySet(self.jwks)
            logger.debug(f"Loaded local key set with {len(self._keystore)} key(s)")
        return self._keystore

    async def get_server_keystore(self, server: str) -> KeySet:
        """
        Get the key set a remote server signs its tokens with.

        Uses keys from the store first (explicitly cached, or embedded in the
        server metadata), otherwise fetches them from the server's jwks_uri.
        The parsed key set is cached for the lifetime of this client.
        """
        keystore = self._server_keystores.get(server)
        if keystore is not None:
            return keystore

        lock = self._keystore_locks.setdefault(server, asyncio.Lock())
        async with lock:
            keystore = self._server_keystores.get(server)
            if keystore is not None:
                return keystore

            server_keys = await self.store.get_server_keys(server)
            if server_keys is None:
                server_keys = await self.load_server_keys(server)
            keystore = self._parse_server_keys(server, server_keys)
            self._server_keystores[server] = keystore
            return keystore

    def _parse_server_keys(self, server: str, jwks: Dict[str, Any]) -> KeySet:
        try:
            return KeySet(jwks)
        except InvalidKeySetError as e:
            raise KeyFetchError(f"Server {server} published an invalid key set: {e.message}") from e

    # ========== Server Configuration ==========

    async def add_server(
        self, server: str, metadata: Optional[ServerMetadata] = None
    ) -> ServerMetadata:
        """
        Add a server to this client.

        If metadata is provided it is stored as the server's configuration
        without any network call. Otherwise the configuration is discovered
        from the server and its public keys are loaded.

        Raises:
            DiscoveryError: If the configuration cannot be retrieved
            KeyFetchError: If the server keys cannot be retrieved; the
                           discovered configuration is kept
        """
        await self.store.add_server(server)
        if metadata is not None:
            await self.store.put_server_metadata(server, metadata)
            logger.info(f"Added server {server} with supplied configuration")
            return metadata
        return await self.load_server_configuration(server)

    async def load_server_configuration(self, server: str) -> ServerMetadata:
        """
        Load the SMART configuration from the server's well-known URI and
        store it, then load the server's public keys.
        """
        url = server.rstrip("/") + SMART_CONFIGURATION_PATH
        logger.info(f"Discovering SMART configuration at {url}")

        try:
            response = await self._http.get(url)
        except httpx.HTTPError as e:
            raise DiscoveryError(f"Failed to reach {url}: {e}") from e

        if not response.is_success:
            raise DiscoveryError(
                f"Discovery at {url} returned HTTP {response.status_code}"
            )

        try:
            metadata = ServerMetadata.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise DiscoveryError(f"Invalid SMART configuration from {url}: {e}") from e

        await self.store.put_server_metadata(server, metadata)
        await self.load_server_keys(server)
        return metadata

    async def load_server_keys(self, server: str) -> Dict[str, Any]:
        """
        Fetch and store the server's public keys from its jwks_uri.

        Raises:
            KeyFetchError: If the server has no jwks_uri or the fetch fails
        """
        metadata = await self.store.get_server_metadata(server)
        if metadata is None or not metadata.jwks_uri:
            raise KeyFetchError(f"No jwks_uri known for server {server}")

        try:
            response = await self._http.get(metadata.jwks_uri)
        except httpx.HTTPError as e:
            raise KeyFetchError(f"Failed to fetch keys from {metadata.jwks_uri}: {e}") from e

        if not response.is_success:
            raise KeyFetchError(
                f"Key fetch from {metadata.jwks_uri} returned HTTP {response.status_code}"
            )

        try:
            jwks = response.json()
        except ValueError as e:
            raise KeyFetchError(f"Invalid key set from {metadata.jwks_uri}: {e}") from e

        keystore = self._parse_server_keys(server, jwks)
        await self.store.put_server_keys(server, jwks)
        # an explicit reload replaces any parsed key set
        self._server_keystores[server] = keystore
        logger.info(f"Loaded {len(keystore)} key(s) for server {server}")
        return jwks

    async def get_or_discover_server_metadata(self, server: str) -> ServerMetadata:
        """
        Return the stored configuration for the server, discovering it first
        if the server is unknown.

        Discovery runs at most once per server even with concurrent callers.
        A failed key fetch after discovery is tolerated, since the stored
        configuration is all a token request needs.

        Raises:
            DiscoveryError: If the configuration cannot be retrieved
        """
        metadata = await self.store.get_server_metadata(server)
        if metadata is not None:
            return metadata

        lock = self._discovery_locks.setdefault(server, asyncio.Lock())
        async with lock:
            metadata = await self.store.get_server_metadata(server)
            if metadata is not None:
                return metadata

            await self.store.add_server(server)
            try:
                return await self.load_server_configuration(server)
            except KeyFetchError as e:
                metadata = await self.store.get_server_metadata(server)
                if metadata is None:
                    raise
                logger.warning(f"Discovered {server} but could not load its keys: {e.message}")
                return metadata

    async def add_server_metadata(self, server: str, metadata: ServerMetadata) -> None:
        await self.store.put_server_metadata(server, metadata)

    async def get_server_metadata(self, server: str) -> Optional[ServerMetadata]:
        return await self.store.get_server_metadata(server)

    async def add_client_registration(
        self, server: str, registration: ClientRegistration
    ) -> None:
        """Add a client registration provisioned out-of-band."""
        await self.store.put_client_registration(server, registration)

    async def get_client_registration(self, server: str) -> Optional[ClientRegistration]:
        return await self.store.get_client_registration(server)

    async def get_access_token(self, server: str) -> Optional[AccessToken]:
        """Get the cached access token for the server, expired or not."""
        return await self.store.get_access_token(server)

    async def add_access_token(self, server: str, token: AccessToken) -> None:
        await self.store.put_access_token(server, token)

    async def clear_tokens(self, server: Optional[str] = None) -> None:
        await self.store.clear_tokens(server)

    # ========== Registration ==========

    def registration_metadata(self) -> RegistrationRequest:
        """
        Build the payload sent to a server for dynamic client registration.

        Sends the jwks_uri when one is configured, otherwise the public half
        of the local key set.
        """
        if self.options.jwks_uri:
            return RegistrationRequest(
                client_name=self.options.client_name,
                jwks_uri=self.options.jwks_uri,
            )
        return RegistrationRequest(
            client_name=self.options.client_name,
            jwks=self.get_keystore().public_jwks(),
        )

    async def register(self, server: str) -> Optional[ClientRegistration]:
        """
        Perform dynamic client registration on the server.

        Returns the existing registration unchanged if there is one. Returns
        None if the server does not offer registration.

        Raises:
            DiscoveryError: If the server is unknown and discovery fails
            RegistrationError: If the registration request fails
        """
        registration = await self.store.get_client_registration(server)
        if registration is not None:
            return registration

        lock = self._registration_locks.setdefault(server, asyncio.Lock())
        async with lock:
            registration = await self.store.get_client_registration(server)
            if registration is not None:
                return registration

            metadata = await self.get_or_discover_server_metadata(server)
            if not metadata.registration_endpoint:
                logger.info(f"Registration not enabled at server {server}")
                return None

            endpoint = metadata.registration_endpoint
            payload = self.registration_metadata().model_dump(exclude_none=True)
            logger.info(f"Registering client at {endpoint}")

            try:
                response = await self._http.post(endpoint, json=payload)
            except httpx.HTTPError as e:
                raise RegistrationError(f"Failed to reach {endpoint}: {e}") from e

            body = _response_body(response)
            if not response.is_success:
                raise RegistrationError(
                    f"Registration at {endpoint} returned HTTP {response.status_code}",
                    status_code=response.status_code,
                    body=body,
                )

            try:
                registration = ClientRegistration.model_validate(body)
            except ValidationError as e:
                raise RegistrationError(
                    f"Invalid registration response from {endpoint}: {e}",
                    status_code=response.status_code,
                    body=body,
                ) from e

            await self.store.put_client_registration(server, registration)
            logger.info(f"Registered with {server} as client_id={registration.client_id}")
            return registration

    # ========== Tokens ==========

    def generate_assertion(
        self, client_id: str, audience: str, key_id: Optional[str] = None
    ) -> str:
        """
        Generate a signed JWT used for authenticating to a token endpoint.

        Args:
            client_id: The identifier of the client on the remote server
            audience: The token url of the server the JWT is created for
            key_id: The key to sign with, defaults to the configured signing key
        """
        return generate_assertion(
            self.get_keystore(),
            client_id,
            audience,
            kid=key_id if key_id is not None else self.signing_key_id,
            clock=self.clock,
        )

    async def request_access_token(
        self,
        server: str,
        key_id: Optional[str] = None,
        scopes: Optional[str] = None,
    ) -> AccessToken:
        """
        Request an access token from a remote server.

        A cached token is returned unchanged while it is unexpired. Otherwise
        the client discovers the server if it is unknown, registers itself if
        needed and exchanges a signed assertion for a new token, which is
        cached.

        Args:
            server: The base url of the server to request a token from
            key_id: The key used to sign the token request
            scopes: The scopes to request, defaults to the client's scopes

        Raises:
            DiscoveryError: If the server is unknown and discovery fails
            NoClientError: If no client registration exists or can be obtained
            RegistrationError: If self-registration fails
            TokenRequestError: If the token endpoint rejects the request
        """
        token = await self.store.get_access_token(server)
        if token is not None and token.is_fresh(self.clock()):
            logger.debug(f"Reusing cached access token for {server}")
            return token

        lock = self._token_locks.setdefault(server, asyncio.Lock())
        async with lock:
            # another caller may have refreshed the token while we waited
            token = await self.store.get_access_token(server)
            if token is not None and token.is_fresh(self.clock()):
                return token

            metadata = await self.get_or_discover_server_metadata(server)

            registration = await self.store.get_client_registration(server)
            if registration is None and metadata.registration_endpoint:
                registration = await self.register(server)
            if registration is None:
                raise NoClientError(server)

            return await self._exchange_token(
                server,
                metadata,
                registration,
                key_id if key_id is not None else self.signing_key_id,
                scopes if scopes is not None else self.scopes,
            )

    async def _exchange_token(
        self,
        server: str,
        metadata: ServerMetadata,
        registration: ClientRegistration,
        key_id: Optional[str],
        scopes: str,
    ) -> AccessToken:
        endpoint = metadata.token_endpoint
        if not endpoint:
            raise TokenRequestError(f"Server {server} advertises no token endpoint")

        assertion = self.generate_assertion(registration.client_id, endpoint, key_id)
        params = {
            "client_assertion": assertion,
            "client_assertion_type": "",
            "grant_type": "client_credentials",
            "scopes": scopes,
        }
        logger.info(f"Requesting access token from {endpoint} for scopes={scopes}")

        try:
            response = await self._http.post(
                endpoint,
                data=params,
                headers={"Content-Type": FORM_CONTENT_TYPE},
            )
        except httpx.HTTPError as e:
            raise TokenRequestError(f"Failed to reach {endpoint}: {e}") from e

        body = _response_body(response)
        if not response.is_success:
            raise TokenRequestError(
                f"Token request to {endpoint} returned HTTP {response.status_code}",
                status_code=response.status_code,
                body=body,
            )

        if not isinstance(body, dict):
            raise TokenRequestError(
                f"Token response from {endpoint} is not a JSON object",
                status_code=response.status_code,
                body=body,
            )

        try:
            token = AccessToken.model_validate({**body, "issued_at": self.clock()})
        except ValidationError as e:
            raise TokenRequestError(
                f"Invalid token response from {endpoint}: {e}",
                status_code=response.status_code,
                body=body,
            ) from e

        await self.store.put_access_token(server, token)
        log_with_context(
            logger,
            logging.INFO,
            f"Cached access token for {server}",
            server=server,
            token_type=token.token_type,
            expires_in=token.expires_in,
            scope=token.scope,
        )
        return token

    async def request_token(self, server: str) -> AccessToken:
        """
        Return any cached token for the server, requesting one only when
        nothing is cached.

        Unlike request_access_token this does not look at expiry: a stale
        cached token is returned as-is.
        """
        token = await self.store.get_access_token(server)
        if token is not None:
            return token
        return await self.request_access_token(server)

    async def validate_received_token(self, server: str, token: str) -> Dict[str, Any]:
        """
        Verify the signature of a token issued by the server.

        Expiry and other claims are not checked.

        Returns:
            The token's claims

        Raises:
            KeyFetchError: If the server keys are unavailable
            InvalidSignatureError: If the signature does not verify
        """
        keystore = await self.get_server_keystore(server)
        return keystore.verify(token)
