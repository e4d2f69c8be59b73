"""
SmartAuth Command-Line Interface

Discovers servers, registers this client, requests access tokens and
validates tokens from the shell.

Author: SmartAuth Contributors
Date: 2026-10-19
"""

import sys
import json
import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
import httpx

from smartauth import __version__
from smartauth.client import TokenClient
from smartauth.config import ConfigManager, SmartAuthConfig, load_jwks, REDACTED
from smartauth.exceptions import SmartAuthError
from smartauth.keys import KeySet
from smartauth.logging_config import setup_logging
from smartauth.models import ClientRegistration, ServerMetadata
from smartauth.store import create_store
from smartauth.validator import TokenValidator

logger = logging.getLogger("smartauth.cli")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


def _fail(message: str) -> None:
    click.echo(f"[ERROR] {message}", err=True)
    sys.exit(1)


def _run(coro: Awaitable[Any]) -> Any:
    try:
        return asyncio.run(coro)
    except SmartAuthError as e:
        _fail(f"{e.error_code}: {e.message}")
    except FileNotFoundError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"Invalid input: {e}")


def _http_client(config: SmartAuthConfig) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=config.http.timeout, verify=config.http.verify)


async def _with_client(
    config: SmartAuthConfig,
    action: Callable[[TokenClient], Awaitable[Any]],
) -> Any:
    """Build a TokenClient from configuration and run ``action`` with it."""
    jwks = load_jwks(config.client.jwks, config.client.jwks_file)
    if jwks is None:
        raise click.UsageError(
            "No client key set configured (set client.jwks_file or SMARTAUTH_JWKS_FILE)"
        )

    store = create_store(config.store)
    async with _http_client(config) as http:
        client = TokenClient(
            jwks,
            store=store,
            options=config.client.to_options(),
            http_client=http,
        )

        for server, entry in config.servers.items():
            await store.add_server(server)
            if entry.metadata is not None:
                await store.put_server_metadata(server, ServerMetadata.model_validate(entry.metadata))
            if entry.client is not None:
                await store.put_client_registration(server, ClientRegistration.model_validate(entry.client))

        try:
            return await action(client)
        finally:
            await store.close()


@click.group()
@click.version_option(version=__version__, prog_name="smartauth")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    help="Logging level (overrides configuration)",
)
@click.pass_context
def cli(ctx, config_file: Optional[Path], log_level: Optional[str]):
    """
    SmartAuth - SMART on FHIR backend services client

    Obtain and validate OAuth2 access tokens using signed JWT assertions.
    """
    overrides = {"logging": {"level": log_level.upper()}} if log_level else None
    manager = ConfigManager()
    try:
        config = manager.load(
            config_file=str(config_file) if config_file else None,
            cli_overrides=overrides,
        )
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")

    setup_logging(
        level=config.logging.level,
        format_type=config.logging.format,
        log_file=config.logging.file,
        rotation_size=config.logging.rotation_size,
        rotation_count=config.logging.rotation_count,
        module_levels=config.logging.module_levels,
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = config


@cli.command("generate-jwks")
@click.option("--kid", default=None, help="Key id (defaults to a key thumbprint)")
@click.option("--key-size", default=2048, type=int, show_default=True, help="RSA key size in bits")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write the private key set to this file instead of stdout",
)
def generate_jwks(kid: Optional[str], key_size: int, output: Optional[Path]):
    """
    Generate a private JWKS with one RSA signing key.

    Examples:
        smartauth generate-jwks -o client-jwks.json
    """
    jwks = KeySet.generate(kid=kid, key_size=key_size)

    if output is None:
        _echo_json(jwks)
        return

    fd = os.open(output, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump(jwks, f, indent=2)
    click.echo(f"[OK] Wrote key set to {output}")


@cli.command("public-jwks")
@click.pass_context
def public_jwks(ctx):
    """Print the public half of the configured client key set."""
    config: SmartAuthConfig = ctx.obj["config"]
    try:
        jwks = load_jwks(config.client.jwks, config.client.jwks_file)
    except FileNotFoundError as e:
        _fail(str(e))
    except ValueError as e:
        _fail(f"Invalid key set file: {e}")
    if jwks is None:
        _fail("No client key set configured")

    try:
        _echo_json(KeySet(jwks).public_jwks())
    except SmartAuthError as e:
        _fail(f"{e.error_code}: {e.message}")


@cli.command()
@click.argument("server")
@click.pass_context
def discover(ctx, server: str):
    """
    Discover a server's SMART configuration and public keys.

    Examples:
        smartauth discover https://ehr.example.org/fhir
    """
    config: SmartAuthConfig = ctx.obj["config"]

    async def action(client: TokenClient):
        metadata = await client.add_server(server)
        return metadata.model_dump(exclude_none=True)

    _echo_json(_run(_with_client(config, action)))


@cli.command()
@click.argument("server")
@click.pass_context
def register(ctx, server: str):
    """Register this client with a server (no-op if already registered)."""
    config: SmartAuthConfig = ctx.obj["config"]

    async def action(client: TokenClient):
        return await client.register(server)

    registration = _run(_with_client(config, action))
    if registration is None:
        _fail(f"Registration not available at {server}")
    _echo_json(registration.model_dump(exclude_none=True))


@cli.command()
@click.argument("server")
@click.option("--scopes", default=None, help="Scopes to request (defaults to configuration)")
@click.option("--key-id", default=None, help="Signing key id")
@click.option(
    "--allow-stale",
    is_flag=True,
    help="Return any cached token without checking its expiry",
)
@click.pass_context
def token(ctx, server: str, scopes: Optional[str], key_id: Optional[str], allow_stale: bool):
    """
    Request an access token from a server.

    Examples:
        smartauth token https://ehr.example.org/fhir
        smartauth token https://ehr.example.org/fhir --scopes "system/Patient.read"
    """
    config: SmartAuthConfig = ctx.obj["config"]

    async def action(client: TokenClient):
        if allow_stale:
            return await client.request_token(server)
        return await client.request_access_token(server, key_id=key_id, scopes=scopes)

    access_token = _run(_with_client(config, action))
    _echo_json(access_token.model_dump(exclude_none=True))


@cli.command()
@click.argument("token_value", metavar="TOKEN")
@click.option("--jwks-file", type=click.Path(exists=True, dir_okay=False), help="Issuer key set file")
@click.option("--jwks-uri", default=None, help="Issuer key set URL")
@click.option("--introspection-endpoint", default=None, help="Issuer introspection endpoint")
@click.option("--remote", is_flag=True, help="Use introspection even when keys are configured")
@click.pass_context
def validate(
    ctx,
    token_value: str,
    jwks_file: Optional[str],
    jwks_uri: Optional[str],
    introspection_endpoint: Optional[str],
    remote: bool,
):
    """
    Validate a bearer token locally or by introspection.

    Local validation checks the signature only, not expiry.
    """
    config: SmartAuthConfig = ctx.obj["config"]
    settings = config.validator

    async def action():
        if jwks_file or jwks_uri:
            jwks = load_jwks(None, jwks_file)
            uri = jwks_uri
        else:
            jwks = load_jwks(settings.jwks, settings.jwks_file)
            uri = settings.jwks_uri

        async with _http_client(config) as http:
            validator = TokenValidator(
                jwks=jwks,
                jwks_uri=uri,
                introspection_endpoint=introspection_endpoint or settings.introspection_endpoint,
                http_client=http,
            )
            if remote:
                return await validator.validate_remote(token_value)
            return await validator.validate(token_value)

    result = _run(action())
    _echo_json(result.model_dump())
    if not result.active:
        _fail("Token is not active")


@cli.command("clear-tokens")
@click.argument("server", required=False)
@click.pass_context
def clear_tokens(ctx, server: Optional[str]):
    """Drop cached access tokens for one server, or all servers."""
    config: SmartAuthConfig = ctx.obj["config"]

    async def action():
        store = create_store(config.store)
        try:
            await store.clear_tokens(server)
        finally:
            await store.close()

    _run(action())
    click.echo(f"[OK] Cleared tokens for {server or 'all servers'}")


@cli.command()
@click.pass_context
def servers(ctx):
    """List servers known to the credential store."""
    config: SmartAuthConfig = ctx.obj["config"]

    async def action():
        store = create_store(config.store)
        try:
            return await store.list_servers()
        finally:
            await store.close()

    for server in _run(action()):
        click.echo(server)


@cli.command("config")
@click.pass_context
def show_config(ctx):
    """Show the effective configuration with key material redacted."""
    config: SmartAuthConfig = ctx.obj["config"]
    data = config.model_dump(mode="json")
    for section in ("client", "validator"):
        if data[section].get("jwks"):
            data[section]["jwks"] = REDACTED
    _echo_json(data)


def main():
    """Main entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
