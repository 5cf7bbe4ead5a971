"""Configuration management for termlink.

Loads settings from a YAML configuration file with environment variable
overrides for secrets (token signing key, OAuth credentials). Supports
.env files.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/termlink.yaml")


class ServerConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000, ge=1, le=65535)
    pairing_code_ttl: float = Field(default=300.0, gt=0, description="Seconds a pairing code stays valid")
    debug_pairing_code: str | None = Field(
        default=None, description="Fixed pairing code for development (e.g. '0000')"
    )
    allow_anonymous: bool = Field(
        default=True, description="Accept registrations without a credential (code pairing)"
    )
    public_url: str = Field(default="http://localhost:3000")


class AuthConfig(BaseModel):
    token_secret: SecretStr = Field(default=SecretStr("change-me"))
    token_ttl_days: int = Field(default=30, gt=0)
    google_client_id: str = Field(default="")
    google_client_secret: SecretStr = Field(default=SecretStr(""))


class ClientConfig(BaseModel):
    server_url: str = Field(default="http://localhost:3000")
    state_dir: Path = Field(default=Path(".termlink"))
    reconnect_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=5.0, gt=0)


class TransportConfig(BaseModel):
    ice_servers: list[str] = Field(default_factory=list)
    discovery_timeout: float = Field(default=2.5, gt=0)
    channel_label: str = Field(default="terminal")


class TerminalConfig(BaseModel):
    shell_command: str = Field(default_factory=lambda: os.environ.get("SHELL", "/bin/bash"))
    rows: int = Field(default=30, gt=0)
    cols: int = Field(default=80, gt=0)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class Settings(BaseSettings):
    """Root configuration for termlink.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "TERMLINK_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Load settings from YAML + .env + environment variables.

    Priority: env vars > .env file > YAML file > defaults
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    _load_dotenv()

    yaml_data = {}
    if path.exists():
        with open(path) as f:
            yaml_data = yaml.safe_load(f) or {}
        logger.info("Loaded configuration from %s", path)
    else:
        logger.warning("Config file %s not found, using defaults + env vars", path)

    _apply_env_overrides(yaml_data)

    return Settings(**yaml_data)


def _load_dotenv() -> None:
    """Load .env file into os.environ if it exists."""
    env_path = Path(".env")
    if not env_path.exists():
        return
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" in line:
                key, _, value = line.partition("=")
                key = key.strip()
                value = value.strip()
                if not os.environ.get(key):
                    os.environ[key] = value


def _apply_env_overrides(yaml_data: dict) -> None:
    """Apply environment variable overrides for non-prefixed vars."""
    relay_url = os.environ.get("RELAY_SERVER_URL", "")
    port = os.environ.get("PORT", "")
    debug_mode = os.environ.get("DEBUG_MODE", "").lower() == "true"

    yaml_data.setdefault("server", {})
    yaml_data.setdefault("client", {})

    if relay_url and not yaml_data["client"].get("server_url"):
        yaml_data["client"]["server_url"] = relay_url

    if port and not yaml_data["server"].get("port"):
        yaml_data["server"]["port"] = int(port)

    # DEBUG_MODE pins the pairing code so a test viewer can pair blind
    if debug_mode and not yaml_data["server"].get("debug_pairing_code"):
        yaml_data["server"]["debug_pairing_code"] = "0000"
