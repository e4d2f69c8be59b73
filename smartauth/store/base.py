"""
Abstract Credential Store Interface.

Defines the contract every credential persistence backend must fulfill so
the in-memory, file-based or any external store can be swapped without
touching the token lifecycle.

Author: SmartAuth Team
Date: 2026-10-19
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from smartauth.models import AccessToken, ClientRegistration, ServerMetadata


class CredentialStore(ABC):
    """
    Abstract base class for per-server credential persistence.

    Every record is keyed by the remote server's base URL:
    - server metadata (discovered SMART configuration)
    - client registration (this client's identity on the server)
    - cached access token
    - cached server public keys (raw JWKS)

    Implementations replace whole values on every write; readers never see
    a partially updated record.
    """

    @abstractmethod
    async def add_server(self, server: str) -> None:
        """
        Record a server base URL.

        Adding an already known server is a no-op.
        """
        pass

    @abstractmethod
    async def list_servers(self) -> List[str]:
        """Return all known server base URLs in insertion order."""
        pass

    @abstractmethod
    async def put_server_metadata(self, server: str, metadata: ServerMetadata) -> None:
        """Store the SMART configuration for a server."""
        pass

    @abstractmethod
    async def get_server_metadata(self, server: str) -> Optional[ServerMetadata]:
        """Return the stored SMART configuration, or None."""
        pass

    @abstractmethod
    async def put_client_registration(
        self, server: str, registration: ClientRegistration
    ) -> None:
        """Store this client's registration on a server."""
        pass

    @abstractmethod
    async def get_client_registration(self, server: str) -> Optional[ClientRegistration]:
        """Return the stored client registration, or None."""
        pass

    @abstractmethod
    async def put_access_token(self, server: str, token: AccessToken) -> None:
        """Cache an access token for a server, replacing any previous one."""
        pass

    @abstractmethod
    async def get_access_token(self, server: str) -> Optional[AccessToken]:
        """Return the cached access token regardless of expiry, or None."""
        pass

    @abstractmethod
    async def put_server_keys(self, server: str, jwks: Dict[str, Any]) -> None:
        """Cache a server's public key set."""
        pass

    @abstractmethod
    async def get_server_keys(self, server: str) -> Optional[Dict[str, Any]]:
        """
        Return the cached public key set for a server.

        Falls back to the key set embedded in the server metadata when no
        keys were cached explicitly.
        """
        pass

    @abstractmethod
    async def clear_tokens(self, server: Optional[str] = None) -> None:
        """
        Drop cached access tokens.

        Args:
            server: Server whose token is dropped; None clears every token
        """
        pass

    async def close(self) -> None:
        """Release backend resources. Default is a no-op."""
        return None
