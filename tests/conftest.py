"""
Shared fixtures for SmartAuth tests.

Remote authorization servers are simulated with httpx.MockTransport so no
test touches the network.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import jwt
import pytest

from smartauth.client import TokenClient
from smartauth.keys import KeySet

SERVER = "https://example.org"

Route = Callable[[httpx.Request], httpx.Response]


class FakeClock:
    """Controllable replacement for time.time."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockAuthServer:
    """
    Canned HTTP responses keyed by (method, url), with a request log.

    Unknown routes answer 404.
    """

    def __init__(self):
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.requests: List[httpx.Request] = []

    def add(
        self,
        method: str,
        url: str,
        status: int = 200,
        json: Any = None,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
    ) -> None:
        self.routes[(method.upper(), url)] = handler or (lambda request: httpx.Response(status, json=json))

    def fail(self, method: str, url: str) -> None:
        """Make a route raise a transport-level error."""
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)
        self.add(method, url, handler=handler)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, str(request.url)))
        if route is None:
            return httpx.Response(404, json={"error": "not_found"})
        return route(request)

    def count(self, method: str, url: str) -> int:
        return sum(
            1 for r in self.requests
            if r.method == method.upper() and str(r.url) == url
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


def sign_token(jwks: Dict[str, Any], claims: Dict[str, Any], algorithm: str = "RS256") -> str:
    """Sign claims with the first signing key of a private key set."""
    key = KeySet(jwks).signing_key()
    return jwt.encode(claims, key.key, algorithm=algorithm, headers={"kid": key.key_id})


@pytest.fixture(scope="session")
def client_jwks() -> Dict[str, Any]:
    return KeySet.generate(kid="client-key")


@pytest.fixture(scope="session")
def server_jwks() -> Dict[str, Any]:
    return KeySet.generate(kid="server-key")


@pytest.fixture(scope="session")
def other_jwks() -> Dict[str, Any]:
    return KeySet.generate(kid="other-key")


@pytest.fixture
def smart_config() -> Dict[str, Any]:
    return {
        "token_endpoint": f"{SERVER}/auth/token",
        "registration_endpoint": f"{SERVER}/auth/register",
        "jwks_uri": f"{SERVER}/jwks",
        "introspection_endpoint": f"{SERVER}/auth/introspect",
    }


@pytest.fixture
def registered_client() -> Dict[str, Any]:
    return {"client_id": "abc123"}


@pytest.fixture
def token_response() -> Dict[str, Any]:
    return {"access_token": "xyz", "token_type": "Bearer", "expires_in": 300}


@pytest.fixture
def auth_server(smart_config, server_jwks, registered_client, token_response) -> MockAuthServer:
    server = MockAuthServer()
    server.add("GET", f"{SERVER}/.well-known/smart-configuration", json=smart_config)
    server.add("GET", f"{SERVER}/jwks", json=KeySet(server_jwks).public_jwks())
    server.add("POST", f"{SERVER}/auth/register", json=registered_client)
    server.add("POST", f"{SERVER}/auth/token", json=token_response)
    return server


@pytest.fixture
async def http_client(auth_server):
    async with httpx.AsyncClient(transport=auth_server.transport()) as client:
        yield client


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def token_client(client_jwks, http_client, clock) -> TokenClient:
    return TokenClient(client_jwks, http_client=http_client, clock=clock)
