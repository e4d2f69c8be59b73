"""
Data models for the SMART backend services client.

Pydantic records for server metadata, client registrations, cached access
tokens and introspection results. Records that mirror remote JSON keep any
extra fields the server sent.

Author: SmartAuth Team
Date: 2026-10-19
"""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ServerMetadata(BaseModel):
    """Discovered OAuth/SMART configuration of a remote server."""

    model_config = ConfigDict(extra="allow", frozen=True)

    issuer: Optional[str] = None
    token_endpoint: Optional[str] = None
    registration_endpoint: Optional[str] = None
    jwks_uri: Optional[str] = None
    introspection_endpoint: Optional[str] = None
    jwks: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Inline key set, used when the server publishes no jwks_uri"
    )


class ClientRegistration(BaseModel):
    """This client's identity as known to a remote server."""

    model_config = ConfigDict(extra="allow", frozen=True)

    client_id: str
    client_name: Optional[str] = None


class AccessToken(BaseModel):
    """Access token returned by a token endpoint, stamped with issue time."""

    model_config = ConfigDict(extra="allow", frozen=True)

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None
    issued_at: float
    scope: Optional[str] = None

    @property
    def expires_at(self) -> Optional[float]:
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in

    def is_fresh(self, now: float) -> bool:
        """
        Check whether the token may still be used.

        A token expiring exactly at ``now`` is expired. Tokens without
        ``expires_in`` are never considered fresh.
        """
        expires_at = self.expires_at
        return expires_at is not None and expires_at > now


class RegistrationRequest(BaseModel):
    """Dynamic client registration payload."""

    model_config = ConfigDict(frozen=True)

    client_name: Optional[str] = None
    token_endpoint_auth_method: str = "client_credentials"
    jwks: Optional[Dict[str, Any]] = None
    jwks_uri: Optional[str] = None

    @model_validator(mode="after")
    def check_key_source(self) -> "RegistrationRequest":
        """Exactly one of jwks or jwks_uri is sent."""
        if (self.jwks is None) == (self.jwks_uri is None):
            raise ValueError("Exactly one of jwks or jwks_uri must be set")
        return self


class IntrospectionResult(BaseModel):
    """Token introspection response."""

    model_config = ConfigDict(extra="allow", frozen=True)

    active: bool

    @classmethod
    def inactive(cls) -> "IntrospectionResult":
        return cls(active=False)

    @property
    def claims(self) -> Dict[str, Any]:
        """Claims reported alongside the active flag."""
        return dict(self.model_extra or {})


class ClientOptions(BaseModel):
    """Behavioural options for a TokenClient."""

    model_config = ConfigDict(frozen=True)

    signing_key_id: Optional[str] = None
    scopes: str = "system/*.read"
    client_name: Optional[str] = None
    jwks_uri: Optional[str] = Field(
        default=None,
        description="Published location of this client's public keys, sent instead of inline keys"
    )
