"""
SmartAuth: SMART on FHIR backend services client

Signs JWT client assertions, exchanges them for access tokens, registers
clients dynamically and validates bearer tokens.
"""

__version__ = "0.1.0"

from .client import TokenClient
from .validator import TokenValidator
from .keys import KeySet
from .models import (
    AccessToken,
    ClientOptions,
    ClientRegistration,
    IntrospectionResult,
    RegistrationRequest,
    ServerMetadata,
)
from .store import CredentialStore, InMemoryCredentialStore, JSONFileCredentialStore
from .exceptions import (
    SmartAuthError,
    DiscoveryError,
    KeyFetchError,
    InvalidKeySetError,
    NoSigningKeyError,
    UnknownKeyIdError,
    InvalidSignatureError,
    NoKeysConfiguredError,
    NoClientError,
    RegistrationError,
    TokenRequestError,
    IntrospectionError,
    StoreError,
)

__all__ = [
    "__version__",
    # Roles
    "TokenClient",
    "TokenValidator",
    "KeySet",
    # Models
    "AccessToken",
    "ClientOptions",
    "ClientRegistration",
    "IntrospectionResult",
    "RegistrationRequest",
    "ServerMetadata",
    # Stores
    "CredentialStore",
    "InMemoryCredentialStore",
    "JSONFileCredentialStore",
    # Exceptions
    "SmartAuthError",
    "DiscoveryError",
    "KeyFetchError",
    "InvalidKeySetError",
    "NoSigningKeyError",
    "UnknownKeyIdError",
    "InvalidSignatureError",
    "NoKeysConfiguredError",
    "NoClientError",
    "RegistrationError",
    "TokenRequestError",
    "IntrospectionError",
    "StoreError",
]
