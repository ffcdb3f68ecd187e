"""
Bootstrap configuration: validated settings for the secret store setup.

Read from a TOML file laid out as:

    LogLevel = "INFO"

    [SecretService]
    Protocol = "https"
    Server = "localhost"
    Port = 8200
    ...

    [[Databases]]
    Service = "core-data"
    Database = "redisdb"

Keys are PascalCase aliases of the snake_case fields below. A few connection
settings may be overridden from the environment (see `ENV_OVERRIDES`).

Security Note:
    This file holds paths and switches only. Key material, tokens and
    passwords never pass through the configuration.
"""
from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_pascal


logger = logging.getLogger("secretstore")

ENV_CONFIG_FILE = "SECRETSTORE_CONFIG"
DEFAULT_CONFIG_FILE = "res/configuration.toml"

ENV_OVERRIDES: Dict[str, str] = {
    "SECRETSTORE_PROTOCOL": "protocol",
    "SECRETSTORE_HOST": "server",
    "SECRETSTORE_PORT": "port",
}

ONESHOT_PROVIDER = "oneshot"
LONG_RUNNING_PROVIDER = "long-running"

KV_MOUNT = "secret"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True, extra="ignore")


class SecretServiceInfo(_Section):
    """Connection, sharing, token and upload settings for the secret store."""

    protocol: str = "https"
    server: str = "localhost"
    port: int = 8200
    ca_file_path: str = ""
    server_name: str = ""

    token_folder_path: str = "/vault/config/assets"
    token_file: str = "resp-init.json"
    vault_secret_shares: int = Field(default=5, ge=1)
    vault_secret_threshold: int = Field(default=3, ge=1)
    vault_init_max_attempts: int = Field(default=0, ge=0)
    revoke_root_tokens: bool = True

    token_provider: str = ""
    token_provider_type: str = ONESHOT_PROVIDER
    token_provider_args: List[str] = Field(default_factory=list)
    token_provider_admin_token_path: str = ""

    password_provider: str = ""
    password_provider_args: List[str] = Field(default_factory=list)

    cert_path: str = ""
    cert_file_path: str = ""
    key_file_path: str = ""

    @field_validator("protocol")
    @classmethod
    def validate_protocol(cls, v: str) -> str:
        v = v.lower()
        if v not in ("http", "https"):
            raise ValueError(f"Unsupported protocol: {v}")
        return v

    @field_validator("token_provider_type")
    @classmethod
    def validate_provider_type(cls, v: str) -> str:
        if v not in (ONESHOT_PROVIDER, LONG_RUNNING_PROVIDER):
            raise ValueError(f"Unsupported token provider type: {v}")
        return v

    @field_validator("vault_secret_threshold")
    @classmethod
    def validate_threshold(cls, v: int, info) -> int:
        shares = info.data.get("vault_secret_shares")
        if shares is not None and v > shares:
            raise ValueError(f"threshold {v} exceeds secret shares {shares}")
        return v

    def base_url(self) -> str:
        return f"{self.protocol}://{self.server}:{self.port}"

    def wants_cert_upload(self) -> bool:
        return bool((self.cert_path + self.cert_file_path + self.key_file_path).strip())


class DatabaseInfo(_Section):
    """One service that needs credentials for a database."""

    service: str
    database: str = "redisdb"
    username: str = "redis5"


class Configuration(_Section):
    secret_service: SecretServiceInfo = Field(default_factory=SecretServiceInfo)
    databases: List[DatabaseInfo] = Field(default_factory=list)
    log_level: str = "INFO"

    @classmethod
    def from_file(cls, path: os.PathLike[str] | str) -> "Configuration":
        """Load configuration from a TOML file, then apply environment overrides.

        Raises:
            FileNotFoundError: If `path` does not exist.
            ValueError: If the file is not valid TOML or fails validation.
        """
        with Path(path).open("rb") as f:
            raw = tomllib.load(f)
        config = cls.model_validate(raw)
        config.apply_env_overrides()
        logger.debug("Loaded configuration from %s", path)
        return config

    @classmethod
    def from_env(cls) -> "Configuration":
        return cls.from_file(_getenv(ENV_CONFIG_FILE, DEFAULT_CONFIG_FILE))

    def apply_env_overrides(self) -> None:
        updates = {}
        for env_name, field in ENV_OVERRIDES.items():
            val = _getenv(env_name)
            if val is not None:
                updates[field] = val
                logger.info("Overriding SecretService.%s from %s", field, env_name)
        if updates:
            merged = {**self.secret_service.model_dump(), **updates}
            self.secret_service = SecretServiceInfo.model_validate(merged)
