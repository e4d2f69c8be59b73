"""
JSON File Credential Store

Human-readable file-based store so registrations and cached tokens survive
process restarts (used by the command-line interface).

Author: SmartAuth Team
Date: 2026-10-19
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from smartauth.exceptions import StoreError
from smartauth.models import AccessToken, ClientRegistration, ServerMetadata
from smartauth.store.base import CredentialStore

ModelT = TypeVar("ModelT", bound=BaseModel)

SECTIONS = ("server_config", "client_config", "access_tokens", "server_keys")


class JSONFileCredentialStore(CredentialStore):
    """
    Credential store persisted as a single JSON document.

    **File Structure**:
    ```
    {
      "servers": ["https://ehr.example.org", ...],
      "server_config": {server: {...}},
      "client_config": {server: {...}},
      "access_tokens": {server: {...}},
      "server_keys": {server: {"keys": [...]}}
    }
    ```

    The file is re-read on every access so several processes can share it.
    Writes go to a temp file that is then renamed over the target.
    The file holds access tokens; it is created with mode 0600.
    """

    def __init__(self, path: str, pretty_json: bool = True):
        self._path = Path(path).expanduser()
        self._pretty_json = pretty_json
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _empty(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {"servers": []}
        for section in SECTIONS:
            doc[section] = {}
        return doc

    def _read(self) -> Dict[str, Any]:
        if not self._path.exists():
            return self._empty()

        try:
            with open(self._path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read credential file {self._path}: {e}") from e

        if not isinstance(data, dict):
            raise StoreError(f"Credential file {self._path} does not hold a JSON object")

        doc = self._empty()
        doc.update(data)
        if not isinstance(doc["servers"], list):
            raise StoreError(f"Section 'servers' in {self._path} must be a list")
        for section in SECTIONS:
            if not isinstance(doc[section], dict):
                raise StoreError(f"Section '{section}' in {self._path} must be an object")
        return doc

    def _write(self, doc: Dict[str, Any]) -> None:
        temp_path = self._path.with_suffix(".tmp")

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2 if self._pretty_json else None)
                f.flush()
                os.fsync(f.fileno())

            temp_path.replace(self._path)

        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise StoreError(f"Failed to write credential file {self._path}: {e}") from e

    async def _put(self, section: str, server: str, value: Any) -> None:
        async with self._lock:
            doc = self._read()
            doc[section][server] = value
            self._write(doc)

    async def _get(self, section: str, server: str) -> Any:
        async with self._lock:
            return self._read()[section].get(server)

    def _load_model(self, model: Type[ModelT], data: Optional[Dict[str, Any]]) -> Optional[ModelT]:
        if data is None:
            return None
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise StoreError(f"Corrupt {model.__name__} record in {self._path}: {e}") from e

    async def add_server(self, server: str) -> None:
        async with self._lock:
            doc = self._read()
            if server not in doc["servers"]:
                doc["servers"].append(server)
                self._write(doc)

    async def list_servers(self) -> List[str]:
        async with self._lock:
            return list(self._read()["servers"])

    async def put_server_metadata(self, server: str, metadata: ServerMetadata) -> None:
        await self._put("server_config", server, metadata.model_dump(mode="json", exclude_none=True))

    async def get_server_metadata(self, server: str) -> Optional[ServerMetadata]:
        return self._load_model(ServerMetadata, await self._get("server_config", server))

    async def put_client_registration(
        self, server: str, registration: ClientRegistration
    ) -> None:
        await self._put("client_config", server, registration.model_dump(mode="json", exclude_none=True))

    async def get_client_registration(self, server: str) -> Optional[ClientRegistration]:
        return self._load_model(ClientRegistration, await self._get("client_config", server))

    async def put_access_token(self, server: str, token: AccessToken) -> None:
        await self._put("access_tokens", server, token.model_dump(mode="json", exclude_none=True))

    async def get_access_token(self, server: str) -> Optional[AccessToken]:
        return self._load_model(AccessToken, await self._get("access_tokens", server))

    async def put_server_keys(self, server: str, jwks: Dict[str, Any]) -> None:
        await self._put("server_keys", server, jwks)

    async def get_server_keys(self, server: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            doc = self._read()
        keys = doc["server_keys"].get(server)
        if keys is None:
            keys = (doc["server_config"].get(server) or {}).get("jwks")
        return keys

    async def clear_tokens(self, server: Optional[str] = None) -> None:
        async with self._lock:
            doc = self._read()
            if server is None:
                doc["access_tokens"] = {}
            else:
                doc["access_tokens"].pop(server, None)
            self._write(doc)
