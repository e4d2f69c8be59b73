"""
Exceptions for the SMART backend services client.

Author: SmartAuth Team
Date: 2026-10-19
"""

from typing import Any, Optional


class SmartAuthError(Exception):
    """Base exception for all client and validator errors."""

    def __init__(self, message: str, error_code: str = "SmartAuthError"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


class DiscoveryError(SmartAuthError):
    """Raised when a server's SMART configuration cannot be retrieved."""

    def __init__(self, message: str = "Server discovery failed"):
        super().__init__(message, "DiscoveryFailed")


class KeyFetchError(SmartAuthError):
    """Raised when a remote JWKS cannot be retrieved."""

    def __init__(self, message: str = "Failed to fetch key set"):
        super().__init__(message, "KeyFetchFailed")


class InvalidKeySetError(SmartAuthError):
    """Raised when a JWKS document cannot be parsed into usable keys."""

    def __init__(self, message: str = "Invalid key set"):
        super().__init__(message, "InvalidKeySet")


class NoSigningKeyError(SmartAuthError):
    """Raised when the local key set holds no key usable for signing."""

    def __init__(self, message: str = "No signing key available"):
        super().__init__(message, "NoSigningKey")


class UnknownKeyIdError(SmartAuthError):
    """Raised when a requested key id is absent from the local key set."""

    def __init__(self, kid: str):
        self.kid = kid
        super().__init__(f"Unknown key id: {kid}", "UnknownKeyId")


class InvalidSignatureError(SmartAuthError):
    """Raised when a token signature cannot be verified."""

    def __init__(self, message: str = "Invalid token signature"):
        super().__init__(message, "InvalidSignature")


class NoKeysConfiguredError(InvalidSignatureError):
    """Raised when local validation is attempted without any keys configured."""

    def __init__(self, message: str = "No verification keys configured"):
        super().__init__(message)
        self.error_code = "NoKeysConfigured"


class NoClientError(SmartAuthError):
    """
    Raised when no client registration exists for a server and none can be
    obtained through self-registration.

    This is a setup problem and is never retried.
    """

    def __init__(self, server: str):
        self.server = server
        super().__init__(
            f"Client information not found for server: {server}",
            "NoClient"
        )


class UpstreamError(SmartAuthError):
    """Base for errors that carry an upstream HTTP status and body."""

    def __init__(
        self,
        message: str,
        error_code: str,
        status_code: Optional[int] = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message, error_code)


class RegistrationError(UpstreamError):
    """Raised when dynamic client registration fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message, "RegistrationFailed", status_code, body)


class TokenRequestError(UpstreamError):
    """Raised when the token endpoint rejects or fails a token exchange."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message, "TokenRequestFailed", status_code, body)


class IntrospectionError(UpstreamError):
    """Raised when the introspection endpoint cannot be queried."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message, "IntrospectionFailed", status_code, body)


class StoreError(SmartAuthError):
    """Raised when the credential store cannot read or write its state."""

    def __init__(self, message: str = "Credential store operation failed"):
        super().__init__(message, "StoreFailed")
