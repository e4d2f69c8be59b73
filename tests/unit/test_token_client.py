"""
Tests for TokenClient.
"""

import asyncio
import json
from urllib.parse import parse_qs

import httpx
import jwt
import pytest

from smartauth.client import TokenClient
from smartauth.exceptions import (
    DiscoveryError,
    InvalidSignatureError,
    KeyFetchError,
    NoClientError,
    NoSigningKeyError,
    RegistrationError,
    TokenRequestError,
    UnknownKeyIdError,
)
from smartauth.keys import KeySet
from smartauth.models import AccessToken, ClientOptions, ClientRegistration, ServerMetadata
from smartauth.store import InMemoryCredentialStore

from conftest import SERVER, sign_token

DISCOVERY_URL = f"{SERVER}/.well-known/smart-configuration"
JWKS_URL = f"{SERVER}/jwks"
REGISTER_URL = f"{SERVER}/auth/register"
TOKEN_URL = f"{SERVER}/auth/token"


def form(request: httpx.Request) -> dict:
    return {k: v[0] for k, v in parse_qs(request.content.decode(), keep_blank_values=True).items()}


class TestClientSetup:
    """Construction and manual configuration."""

    def test_creates_in_memory_store_by_default(self, client_jwks):
        client = TokenClient(client_jwks, http_client=httpx.AsyncClient())
        assert isinstance(client.store, InMemoryCredentialStore)

    def test_default_scopes(self, token_client):
        assert token_client.scopes == "system/*.read"

    def test_keystore_parsed_once(self, token_client):
        assert token_client.get_keystore() is token_client.get_keystore()

    @pytest.mark.asyncio
    async def test_add_server_metadata_manually(self, token_client, auth_server):
        metadata = ServerMetadata()
        await token_client.add_server_metadata("http://test.com", metadata)

        assert await token_client.get_server_metadata("http://test.com") == metadata
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_add_client_registration_manually(self, token_client):
        registration = ClientRegistration(client_id="manual")
        await token_client.add_client_registration("http://test.com", registration)

        assert await token_client.get_client_registration("http://test.com") == registration

    @pytest.mark.asyncio
    async def test_owned_http_client_closed(self, client_jwks):
        async with TokenClient(client_jwks) as client:
            http = client._http
        assert http.is_closed


class TestAddServer:
    """Discovery and key loading."""

    @pytest.mark.asyncio
    async def test_discovers_configuration_and_keys(self, token_client, auth_server, smart_config, server_jwks):
        metadata = await token_client.add_server(SERVER)

        assert metadata == ServerMetadata(**smart_config)
        assert await token_client.get_server_metadata(SERVER) == metadata
        assert await token_client.store.get_server_keys(SERVER) == KeySet(server_jwks).public_jwks()
        assert await token_client.store.list_servers() == [SERVER]
        assert auth_server.count("GET", DISCOVERY_URL) == 1
        assert auth_server.count("GET", JWKS_URL) == 1

    @pytest.mark.asyncio
    async def test_supplied_metadata_skips_network(self, token_client, auth_server, smart_config):
        metadata = ServerMetadata(**smart_config)
        result = await token_client.add_server(SERVER, metadata)

        assert result == metadata
        assert await token_client.get_server_metadata(SERVER) == metadata
        assert await token_client.store.get_server_keys(SERVER) is None
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_discovery_http_error(self, token_client, auth_server):
        auth_server.add("GET", DISCOVERY_URL, status=500, json={"error": "boom"})

        with pytest.raises(DiscoveryError):
            await token_client.add_server(SERVER)
        assert await token_client.get_server_metadata(SERVER) is None

    @pytest.mark.asyncio
    async def test_discovery_transport_error(self, token_client, auth_server):
        auth_server.fail("GET", DISCOVERY_URL)

        with pytest.raises(DiscoveryError) as exc_info:
            await token_client.add_server(SERVER)
        assert isinstance(exc_info.value.__cause__, httpx.ConnectError)

    @pytest.mark.asyncio
    async def test_key_fetch_failure_keeps_metadata(self, token_client, auth_server, smart_config):
        auth_server.add("GET", JWKS_URL, status=503)

        with pytest.raises(KeyFetchError):
            await token_client.add_server(SERVER)

        assert await token_client.get_server_metadata(SERVER) == ServerMetadata(**smart_config)
        assert await token_client.store.get_server_keys(SERVER) is None

    @pytest.mark.asyncio
    async def test_malformed_key_set_not_stored(self, token_client, auth_server):
        auth_server.add("GET", JWKS_URL, json={"keys": ["not-a-jwk"]})

        with pytest.raises(KeyFetchError):
            await token_client.add_server(SERVER)

        assert await token_client.store.get_server_keys(SERVER) is None


class TestRegister:
    """Dynamic client registration."""

    @pytest.mark.asyncio
    async def test_register_once(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        first = await token_client.register(SERVER)
        second = await token_client.register(SERVER)

        assert first.client_id == "abc123"
        assert second is first
        assert auth_server.count("POST", REGISTER_URL) == 1
        assert await token_client.get_client_registration(SERVER) == first

    @pytest.mark.asyncio
    async def test_registration_payload_contains_public_keys_only(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.register(SERVER)

        request = auth_server.requests[-1]
        payload = json.loads(request.content)
        assert payload["token_endpoint_auth_method"] == "client_credentials"
        assert "jwks_uri" not in payload
        [key] = payload["jwks"]["keys"]
        assert key["kid"] == "client-key"
        assert "d" not in key and "p" not in key and "q" not in key

    @pytest.mark.asyncio
    async def test_registration_payload_uses_jwks_uri(self, client_jwks, http_client, auth_server, smart_config):
        options = ClientOptions(client_name="My Backend", jwks_uri="https://client.example/jwks")
        client = TokenClient(client_jwks, options=options, http_client=http_client)
        await client.add_server(SERVER, ServerMetadata(**smart_config))
        await client.register(SERVER)

        payload = json.loads(auth_server.requests[-1].content)
        assert payload == {
            "client_name": "My Backend",
            "token_endpoint_auth_method": "client_credentials",
            "jwks_uri": "https://client.example/jwks",
        }

    @pytest.mark.asyncio
    async def test_no_registration_endpoint(self, token_client, auth_server):
        await token_client.add_server(SERVER, ServerMetadata(token_endpoint=TOKEN_URL))

        assert await token_client.register(SERVER) is None
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_existing_registration_returned(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        manual = ClientRegistration(client_id="out-of-band")
        await token_client.add_client_registration(SERVER, manual)

        assert await token_client.register(SERVER) == manual
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_registration_rejected(self, token_client, auth_server, smart_config):
        auth_server.add("POST", REGISTER_URL, status=400, json={"error": "invalid_client_metadata"})
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        with pytest.raises(RegistrationError) as exc_info:
            await token_client.register(SERVER)

        assert exc_info.value.status_code == 400
        assert exc_info.value.body == {"error": "invalid_client_metadata"}
        assert await token_client.get_client_registration(SERVER) is None

    @pytest.mark.asyncio
    async def test_registration_response_without_client_id(self, token_client, auth_server, smart_config):
        auth_server.add("POST", REGISTER_URL, json={"client_name": "nameless"})
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        with pytest.raises(RegistrationError):
            await token_client.register(SERVER)

    @pytest.mark.asyncio
    async def test_unknown_server_discovered_first(self, token_client, auth_server):
        registration = await token_client.register(SERVER)

        assert registration.client_id == "abc123"
        urls = [(r.method, str(r.url)) for r in auth_server.requests]
        assert urls == [("GET", DISCOVERY_URL), ("GET", JWKS_URL), ("POST", REGISTER_URL)]

    @pytest.mark.asyncio
    async def test_undiscoverable_server(self, token_client, auth_server):
        with pytest.raises(DiscoveryError):
            await token_client.register("https://nowhere.example")
        assert auth_server.count("POST", REGISTER_URL) == 0

    @pytest.mark.asyncio
    async def test_concurrent_register_posts_once(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        results = await asyncio.gather(*(token_client.register(SERVER) for _ in range(5)))

        assert {r.client_id for r in results} == {"abc123"}
        assert auth_server.count("POST", REGISTER_URL) == 1


class TestGenerateAssertion:
    """JWT client assertion construction."""

    def test_claims_and_header(self, token_client, client_jwks, clock):
        assertion = token_client.generate_assertion("client-1", TOKEN_URL)

        header = jwt.get_unverified_header(assertion)
        assert header["alg"] == "RS384"
        assert header["kid"] == "client-key"

        claims = KeySet(client_jwks).verify(assertion)
        assert claims["sub"] == "client-1"
        assert claims["iss"] == "client-1"
        assert claims["aud"] == TOKEN_URL
        assert claims["exp"] == int(clock.now) + 300
        assert claims["jti"]

    def test_fresh_jti_per_assertion(self, token_client):
        first = jwt.decode(token_client.generate_assertion("c", "aud"), options={"verify_signature": False})
        second = jwt.decode(token_client.generate_assertion("c", "aud"), options={"verify_signature": False})
        assert first["jti"] != second["jti"]

    def test_explicit_key_id(self, token_client):
        assertion = token_client.generate_assertion("c", "aud", key_id="client-key")
        assert jwt.get_unverified_header(assertion)["kid"] == "client-key"

    def test_configured_signing_key_id(self, client_jwks, http_client):
        client = TokenClient(
            client_jwks,
            options=ClientOptions(signing_key_id="missing"),
            http_client=http_client,
        )
        with pytest.raises(UnknownKeyIdError):
            client.generate_assertion("c", "aud")

    def test_unknown_key_id(self, token_client):
        with pytest.raises(UnknownKeyIdError) as exc_info:
            token_client.generate_assertion("c", "aud", key_id="nope")
        assert exc_info.value.kid == "nope"

    def test_public_keys_cannot_sign(self, client_jwks, http_client):
        client = TokenClient(KeySet(client_jwks).public_jwks(), http_client=http_client)
        with pytest.raises(NoSigningKeyError):
            client.generate_assertion("c", "aud")


class TestRequestAccessToken:
    """The token lifecycle."""

    @pytest.mark.asyncio
    async def test_end_to_end(self, token_client, auth_server, clock):
        token = await token_client.request_access_token(SERVER)

        assert token.access_token == "xyz"
        assert token.token_type == "Bearer"
        assert token.expires_in == 300
        assert token.issued_at == clock.now
        assert token.model_dump(exclude_none=True) == {
            "access_token": "xyz",
            "token_type": "Bearer",
            "expires_in": 300,
            "issued_at": clock.now,
        }
        assert auth_server.count("POST", REGISTER_URL) == 1
        assert auth_server.count("POST", TOKEN_URL) == 1

        traffic = len(auth_server.requests)
        again = await token_client.request_access_token(SERVER)
        assert again is token
        assert len(auth_server.requests) == traffic
        assert [(r.method, str(r.url)) for r in auth_server.requests] == [
            ("GET", DISCOVERY_URL),
            ("GET", JWKS_URL),
            ("POST", REGISTER_URL),
            ("POST", TOKEN_URL),
        ]
        assert await token_client.store.list_servers() == [SERVER]

    @pytest.mark.asyncio
    async def test_fresh_cached_token_reused_without_network(self, token_client, auth_server, clock):
        cached = AccessToken(access_token="cached", expires_in=300, issued_at=clock.now - 100)
        await token_client.add_access_token(SERVER, cached)

        assert await token_client.request_access_token(SERVER) == cached
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_token_expiring_now_is_refreshed(self, token_client, auth_server, smart_config, clock):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.add_client_registration(SERVER, ClientRegistration(client_id="abc123"))
        await token_client.add_access_token(
            SERVER, AccessToken(access_token="old", expires_in=300, issued_at=clock.now - 300)
        )

        token = await token_client.request_access_token(SERVER)

        assert token.access_token == "xyz"
        assert auth_server.count("POST", TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_token_one_second_before_expiry_is_reused(self, token_client, auth_server, clock):
        cached = AccessToken(access_token="old", expires_in=300, issued_at=clock.now - 299)
        await token_client.add_access_token(SERVER, cached)

        assert await token_client.request_access_token(SERVER) == cached
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_token_reused_until_expiry(self, token_client, auth_server, clock):
        await token_client.add_server(SERVER)
        first = await token_client.request_access_token(SERVER)

        clock.advance(299)
        assert await token_client.request_access_token(SERVER) is first

        clock.advance(1)
        second = await token_client.request_access_token(SERVER)
        assert second is not first
        assert second.issued_at == clock.now
        assert auth_server.count("POST", TOKEN_URL) == 2

    @pytest.mark.asyncio
    async def test_self_registers_before_token_request(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        await token_client.request_access_token(SERVER)

        urls = [(r.method, str(r.url)) for r in auth_server.requests]
        assert urls == [("POST", REGISTER_URL), ("POST", TOKEN_URL)]
        assert (await token_client.get_client_registration(SERVER)).client_id == "abc123"

    @pytest.mark.asyncio
    async def test_no_client_and_no_registration_endpoint(self, token_client, auth_server):
        await token_client.add_server(SERVER, ServerMetadata(token_endpoint=TOKEN_URL))

        with pytest.raises(NoClientError) as exc_info:
            await token_client.request_access_token(SERVER)

        assert exc_info.value.server == SERVER
        assert auth_server.count("POST", TOKEN_URL) == 0

    @pytest.mark.asyncio
    async def test_undiscoverable_server(self, token_client, auth_server):
        with pytest.raises(DiscoveryError):
            await token_client.request_access_token("https://nowhere.example")

        assert await token_client.get_server_metadata("https://nowhere.example") is None
        assert auth_server.count("POST", TOKEN_URL) == 0

    @pytest.mark.asyncio
    async def test_server_key_failure_does_not_block_token(self, token_client, auth_server, smart_config):
        auth_server.add("GET", JWKS_URL, status=500)

        token = await token_client.request_access_token(SERVER)

        assert token.access_token == "xyz"
        assert await token_client.get_server_metadata(SERVER) == ServerMetadata(**smart_config)

    @pytest.mark.asyncio
    async def test_server_without_jwks_uri(self, token_client, auth_server, smart_config):
        config = {k: v for k, v in smart_config.items() if k != "jwks_uri"}
        auth_server.add("GET", DISCOVERY_URL, json=config)

        token = await token_client.request_access_token(SERVER)

        assert token.access_token == "xyz"
        assert auth_server.count("GET", JWKS_URL) == 0

    @pytest.mark.asyncio
    async def test_concurrent_requests_discover_once(self, token_client, auth_server):
        tokens = await asyncio.gather(*(token_client.request_access_token(SERVER) for _ in range(5)))

        assert {t.access_token for t in tokens} == {"xyz"}
        assert auth_server.count("GET", DISCOVERY_URL) == 1
        assert auth_server.count("POST", TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_token_request_form(self, token_client, auth_server, smart_config, client_jwks):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.add_client_registration(SERVER, ClientRegistration(client_id="abc123"))

        await token_client.request_access_token(SERVER, scopes="system/Patient.read")

        request = auth_server.requests[-1]
        assert request.headers["content-type"] == "application/x-www-form-urlencoded"
        body = form(request)
        assert body["grant_type"] == "client_credentials"
        assert body["client_assertion_type"] == ""
        assert body["scopes"] == "system/Patient.read"

        claims = KeySet(client_jwks).verify(body["client_assertion"])
        assert claims["sub"] == claims["iss"] == "abc123"
        assert claims["aud"] == TOKEN_URL

    @pytest.mark.asyncio
    async def test_default_scopes_sent(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.request_access_token(SERVER)

        assert form(auth_server.requests[-1])["scopes"] == "system/*.read"

    @pytest.mark.asyncio
    async def test_token_endpoint_rejects(self, token_client, auth_server, smart_config):
        auth_server.add("POST", TOKEN_URL, status=401, json={"error": "invalid_client"})
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        with pytest.raises(TokenRequestError) as exc_info:
            await token_client.request_access_token(SERVER)

        assert exc_info.value.status_code == 401
        assert exc_info.value.body == {"error": "invalid_client"}
        assert auth_server.count("POST", TOKEN_URL) == 1
        assert await token_client.get_access_token(SERVER) is None

    @pytest.mark.asyncio
    async def test_token_endpoint_unreachable(self, token_client, auth_server, smart_config):
        auth_server.fail("POST", TOKEN_URL)
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        with pytest.raises(TokenRequestError) as exc_info:
            await token_client.request_access_token(SERVER)

        assert exc_info.value.status_code is None
        assert auth_server.count("POST", TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_exchange_once(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        tokens = await asyncio.gather(*(token_client.request_access_token(SERVER) for _ in range(5)))

        assert {t.access_token for t in tokens} == {"xyz"}
        assert auth_server.count("POST", REGISTER_URL) == 1
        assert auth_server.count("POST", TOKEN_URL) == 1


class TestRequestToken:
    """
    request_token returns any cached token, even an expired one, while
    request_access_token only reuses unexpired tokens. Both behaviours are
    intentional and pinned here.
    """

    @pytest.mark.asyncio
    async def test_stale_token_returned_by_request_token_only(self, token_client, auth_server, smart_config, clock):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.add_client_registration(SERVER, ClientRegistration(client_id="abc123"))
        stale = AccessToken(access_token="stale", expires_in=300, issued_at=clock.now - 3600)
        await token_client.add_access_token(SERVER, stale)

        assert await token_client.request_token(SERVER) == stale
        assert auth_server.requests == []

        fresh = await token_client.request_access_token(SERVER)
        assert fresh.access_token == "xyz"
        assert auth_server.count("POST", TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_request_token_without_cache_requests_one(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))

        token = await token_client.request_token(SERVER)

        assert token.access_token == "xyz"
        assert auth_server.count("POST", TOKEN_URL) == 1

    @pytest.mark.asyncio
    async def test_clear_tokens_forces_new_request(self, token_client, auth_server, smart_config):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        await token_client.request_token(SERVER)
        await token_client.clear_tokens(SERVER)

        await token_client.request_token(SERVER)
        assert auth_server.count("POST", TOKEN_URL) == 2


class TestValidateReceivedToken:
    """Verifying tokens issued by a remote server."""

    @pytest.mark.asyncio
    async def test_valid_server_signature(self, token_client, server_jwks):
        await token_client.add_server(SERVER)
        token = sign_token(server_jwks, {"sub": "abc123", "scope": "system/*.read"})

        claims = await token_client.validate_received_token(SERVER, token)
        assert claims["sub"] == "abc123"

    @pytest.mark.asyncio
    async def test_foreign_signature_rejected(self, token_client, other_jwks):
        await token_client.add_server(SERVER)
        token = sign_token(other_jwks, {"sub": "abc123"})

        with pytest.raises(InvalidSignatureError):
            await token_client.validate_received_token(SERVER, token)

    @pytest.mark.asyncio
    async def test_keys_fetched_once_on_first_use(self, token_client, auth_server, smart_config, server_jwks):
        await token_client.add_server(SERVER, ServerMetadata(**smart_config))
        token = sign_token(server_jwks, {"sub": "abc123"})

        await token_client.validate_received_token(SERVER, token)
        await token_client.validate_received_token(SERVER, token)

        assert auth_server.count("GET", JWKS_URL) == 1

    @pytest.mark.asyncio
    async def test_keys_embedded_in_metadata(self, token_client, auth_server, server_jwks):
        metadata = ServerMetadata(token_endpoint=TOKEN_URL, jwks=KeySet(server_jwks).public_jwks())
        await token_client.add_server(SERVER, metadata)
        token = sign_token(server_jwks, {"sub": "abc123"})

        assert (await token_client.validate_received_token(SERVER, token))["sub"] == "abc123"
        assert auth_server.requests == []

    @pytest.mark.asyncio
    async def test_expired_token_still_verifies(self, token_client, server_jwks, clock):
        await token_client.add_server(SERVER)
        token = sign_token(server_jwks, {"sub": "abc123", "exp": int(clock.now) - 3600})

        claims = await token_client.validate_received_token(SERVER, token)
        assert claims["exp"] < clock.now
