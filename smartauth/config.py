"""
Configuration management for SmartAuth.

Handles loading, validation, and access to configuration settings.
"""

import os
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional
from enum import Enum

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError, ConfigDict

from smartauth.models import ClientOptions

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"


class LogLevel(str, Enum):
    """Valid log levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreType(str, Enum):
    """Supported credential store types."""
    MEMORY = "memory"
    FILE = "file"


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: LogLevel = LogLevel.INFO
    format: str = "text"
    file: Optional[str] = None
    rotation_size: str = "10MB"
    rotation_count: int = 5
    module_levels: Optional[Dict[str, str]] = Field(
        default=None,
        description="Per-module log levels, e.g., {'smartauth.client': 'DEBUG'}"
    )


class StoreConfig(BaseModel):
    """Credential store configuration."""
    type: StoreType = StoreType.MEMORY
    file_path: str = "~/.smartauth/credentials.json"
    pretty_json: bool = True


class HttpConfig(BaseModel):
    """Outbound HTTP settings."""
    timeout: float = Field(default=10.0, gt=0.0, description="Request timeout in seconds")
    verify: bool = True


class ClientConfig(BaseModel):
    """Local signing identity and token request defaults."""
    jwks: Optional[Dict[str, Any]] = None
    jwks_file: Optional[str] = None
    signing_key_id: Optional[str] = None
    scopes: str = "system/*.read"
    client_name: Optional[str] = None
    jwks_uri: Optional[str] = None

    def to_options(self) -> ClientOptions:
        return ClientOptions(
            signing_key_id=self.signing_key_id,
            scopes=self.scopes,
            client_name=self.client_name,
            jwks_uri=self.jwks_uri,
        )


class ValidatorConfig(BaseModel):
    """Resource-server side validation settings."""
    jwks: Optional[Dict[str, Any]] = None
    jwks_file: Optional[str] = None
    jwks_uri: Optional[str] = None
    introspection_endpoint: Optional[str] = None


class ServerEntry(BaseModel):
    """Preconfigured remote server, bypassing discovery and registration."""
    metadata: Optional[Dict[str, Any]] = None
    client: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Registration provisioned out-of-band, must include client_id"
    )


class SmartAuthConfig(BaseModel):
    """Main SmartAuth configuration schema."""

    version: str = Field(default="0.1.0", description="Configuration version")

    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    client: ClientConfig = Field(default_factory=ClientConfig)

    validator: ValidatorConfig = Field(default_factory=ValidatorConfig)

    store: StoreConfig = Field(default_factory=StoreConfig)

    http: HttpConfig = Field(default_factory=HttpConfig)

    servers: Dict[str, ServerEntry] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version format."""
        parts = v.split(".")
        if len(parts) != 3:
            raise ValueError("Version must be in format x.y.z")
        for part in parts:
            if not part.isdigit():
                raise ValueError("Version components must be numeric")
        return v

    model_config = ConfigDict(use_enum_values=True)


def load_jwks(jwks: Optional[Dict[str, Any]], jwks_file: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Resolve a key set given inline or as a path to a JSON file.

    Inline keys win over the file.
    """
    if jwks is not None:
        return jwks
    if jwks_file is None:
        return None

    path = Path(jwks_file).expanduser()
    if not path.exists():
        raise FileNotFoundError(f"JWKS file not found: {jwks_file}")
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class ConfigManager:
    """
    Manages SmartAuth configuration loading and validation.

    Configuration precedence (highest to lowest):
    1. CLI arguments
    2. Environment variables (SMARTAUTH_*)
    3. Configuration file (YAML/JSON)
    4. Defaults
    """

    def __init__(self):
        self._config: Optional[SmartAuthConfig] = None
        self._config_file: Optional[Path] = None

    def load(
        self,
        config_file: Optional[str] = None,
        cli_overrides: Optional[Dict[str, Any]] = None
    ) -> SmartAuthConfig:
        """
        Load and validate configuration from multiple sources.

        Args:
            config_file: Path to configuration file (YAML or JSON)
            cli_overrides: Dictionary of CLI argument overrides

        Returns:
            Validated SmartAuthConfig instance

        Raises:
            ValidationError: If configuration is invalid
            FileNotFoundError: If specified config file doesn't exist
        """
        logger.info("Loading SmartAuth configuration")

        config_dict: Dict[str, Any] = {}

        if config_file:
            config_dict = self._load_from_file(config_file)
            self._config_file = Path(config_file)
            logger.info(f"Loaded configuration from file: {config_file}")

        env_config = self._load_from_env()
        config_dict = self._merge_configs(config_dict, env_config)
        if env_config:
            logger.info(f"Applied {len(env_config)} environment variable overrides")

        if cli_overrides:
            config_dict = self._merge_configs(config_dict, cli_overrides)
            logger.info(f"Applied {len(cli_overrides)} CLI argument overrides")

        try:
            self._config = SmartAuthConfig(**config_dict)
            logger.info("Configuration validated successfully")
            self._log_configuration()
            return self._config
        except ValidationError as e:
            logger.error(f"Configuration validation failed: {e}")
            raise

    def _load_from_file(self, file_path: str) -> Dict[str, Any]:
        """Load configuration from YAML or JSON file."""
        path = Path(file_path)

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {file_path}")

        with open(path, 'r') as f:
            if path.suffix in ['.yaml', '.yml']:
                return yaml.safe_load(f) or {}
            elif path.suffix == '.json':
                return json.load(f)
            else:
                raise ValueError(f"Unsupported config file format: {path.suffix}")

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        config: Dict[str, Any] = {}

        # Logging configuration
        if log_level := os.getenv("SMARTAUTH_LOG_LEVEL"):
            config.setdefault("logging", {})["level"] = log_level.upper()
        if log_file := os.getenv("SMARTAUTH_LOG_FILE"):
            config.setdefault("logging", {})["file"] = log_file

        # Client identity
        if jwks_file := os.getenv("SMARTAUTH_JWKS_FILE"):
            config.setdefault("client", {})["jwks_file"] = jwks_file
        if kid := os.getenv("SMARTAUTH_SIGNING_KEY_ID"):
            config.setdefault("client", {})["signing_key_id"] = kid
        if scopes := os.getenv("SMARTAUTH_SCOPES"):
            config.setdefault("client", {})["scopes"] = scopes
        if client_name := os.getenv("SMARTAUTH_CLIENT_NAME"):
            config.setdefault("client", {})["client_name"] = client_name

        # Credential store
        if store_type := os.getenv("SMARTAUTH_STORE"):
            config.setdefault("store", {})["type"] = store_type.lower()
        if store_path := os.getenv("SMARTAUTH_STORE_PATH"):
            config.setdefault("store", {})["file_path"] = store_path

        # HTTP
        if timeout := os.getenv("SMARTAUTH_HTTP_TIMEOUT"):
            config.setdefault("http", {})["timeout"] = float(timeout)

        return config

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two configuration dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _log_configuration(self) -> None:
        """Log the loaded configuration (with key material redacted)."""
        if not self._config:
            return

        config_dict = self._config.model_dump()

        for section in ("client", "validator"):
            if config_dict.get(section, {}).get("jwks"):
                config_dict[section]["jwks"] = REDACTED

        logger.debug(f"Active configuration: {json.dumps(config_dict, indent=2)}")

    def get_config(self) -> SmartAuthConfig:
        """
        Get the loaded configuration.

        Raises:
            RuntimeError: If configuration hasn't been loaded
        """
        if self._config is None:
            raise RuntimeError("Configuration not loaded. Call load() first.")
        return self._config

    def reload(self) -> SmartAuthConfig:
        """Reload configuration from the same sources."""
        config_file = str(self._config_file) if self._config_file else None
        return self.load(config_file=config_file)
