"""
Credential Store Module.

Persists per-server metadata, client registrations, server keys and cached
access tokens behind a single interface.

Author: SmartAuth Team
Date: 2026-10-19
"""

from .base import CredentialStore
from .memory import InMemoryCredentialStore
from .json_file import JSONFileCredentialStore
from .factory import create_store

__all__ = [
    # Abstract interface
    "CredentialStore",
    # Implementations
    "InMemoryCredentialStore",
    "JSONFileCredentialStore",
    # Factory
    "create_store",
]
