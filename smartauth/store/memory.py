"""
In-Memory Credential Store.

Dictionary-backed store, the default when no other backend is configured.
Records are immutable pydantic models, so they are shared with callers
without copying.

Author: SmartAuth Team
Date: 2026-10-19
"""

import asyncio
import copy
from typing import Any, Dict, List, Optional

from smartauth.models import AccessToken, ClientRegistration, ServerMetadata
from smartauth.store.base import CredentialStore


class InMemoryCredentialStore(CredentialStore):
    """
    In-memory credential store.

    Storage structure:
        servers:        [server, ...]
        server_config:  {server: ServerMetadata}
        client_config:  {server: ClientRegistration}
        access_tokens:  {server: AccessToken}
        server_keys:    {server: jwks dict}

    Limitations:
    - Data lost on process restart
    """

    def __init__(self):
        self._servers: List[str] = []
        self._server_config: Dict[str, ServerMetadata] = {}
        self._client_config: Dict[str, ClientRegistration] = {}
        self._access_tokens: Dict[str, AccessToken] = {}
        self._server_keys: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def add_server(self, server: str) -> None:
        async with self._lock:
            if server not in self._servers:
                self._servers.append(server)

    async def list_servers(self) -> List[str]:
        async with self._lock:
            return list(self._servers)

    async def put_server_metadata(self, server: str, metadata: ServerMetadata) -> None:
        async with self._lock:
            self._server_config[server] = metadata

    async def get_server_metadata(self, server: str) -> Optional[ServerMetadata]:
        async with self._lock:
            return self._server_config.get(server)

    async def put_client_registration(
        self, server: str, registration: ClientRegistration
    ) -> None:
        async with self._lock:
            self._client_config[server] = registration

    async def get_client_registration(self, server: str) -> Optional[ClientRegistration]:
        async with self._lock:
            return self._client_config.get(server)

    async def put_access_token(self, server: str, token: AccessToken) -> None:
        async with self._lock:
            self._access_tokens[server] = token

    async def get_access_token(self, server: str) -> Optional[AccessToken]:
        async with self._lock:
            return self._access_tokens.get(server)

    async def put_server_keys(self, server: str, jwks: Dict[str, Any]) -> None:
        # JWKS dicts are mutable, keep a private copy
        value = copy.deepcopy(jwks)
        async with self._lock:
            self._server_keys[server] = value

    async def get_server_keys(self, server: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            keys = self._server_keys.get(server)
            if keys is None:
                metadata = self._server_config.get(server)
                if metadata is not None:
                    keys = metadata.jwks
            return copy.deepcopy(keys)

    async def clear_tokens(self, server: Optional[str] = None) -> None:
        async with self._lock:
            if server is None:
                self._access_tokens = {}
            else:
                self._access_tokens.pop(server, None)
