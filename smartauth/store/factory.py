"""
Credential store factory.

Author: SmartAuth Team
Date: 2026-10-19
"""

import logging
from typing import Optional

from smartauth.config import StoreConfig, StoreType
from smartauth.store.base import CredentialStore
from smartauth.store.json_file import JSONFileCredentialStore
from smartauth.store.memory import InMemoryCredentialStore

logger = logging.getLogger(__name__)


def create_store(config: Optional[StoreConfig] = None) -> CredentialStore:
    """
    Create a credential store from configuration.

    Args:
        config: Store configuration, defaults to an in-memory store

    Raises:
        ValueError: If the store type is not supported
    """
    config = config or StoreConfig()
    store_type = StoreType(config.type)

    if store_type == StoreType.MEMORY:
        logger.debug("Using in-memory credential store")
        return InMemoryCredentialStore()

    if store_type == StoreType.FILE:
        logger.debug(f"Using JSON file credential store at {config.file_path}")
        return JSONFileCredentialStore(config.file_path, pretty_json=config.pretty_json)

    raise ValueError(f"Unsupported store type: {config.type}")
