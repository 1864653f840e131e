"""Configuration loading.

Settings live in ~/.config/apihub/config.yaml. Secret values may be written
as ${ENV_VAR} and are read from the process environment at load time.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import httpx
import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from apihub.audit import AuditLogger
from apihub.circuit_breaker import CircuitBreakerIdmsConnector
from apihub.connectors.catalogue import CatalogueConfig, HttpCatalogueConnector
from apihub.connectors.idms import HttpIdmsConnector, IdmsConfig, IdmsConnector
from apihub.environments import Environment, EnvironmentTopology
from apihub.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "apihub"
DEFAULT_LOG_DIR = Path.home() / ".local" / "share" / "apihub" / "logs"

_ENV_REF = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def get_config_path() -> Path:
    return DEFAULT_CONFIG_DIR / "config.yaml"


def resolve_secret(value: str | None) -> str | None:
    """Expand a ${ENV_VAR} reference; other values pass through."""
    if value is None:
        return None
    match = _ENV_REF.fullmatch(value)
    if match is None:
        return value
    name = match.group(1)
    if name not in os.environ:
        raise ValueError(f"environment variable {name} is not set")
    return os.environ[name]


class EnvironmentSettings(Environment):
    """Environment as written in the config file, secrets given as ${ENV_VAR}."""
    model_config = ConfigDict(frozen=False)

    @field_validator("client_id", "secret", "api_key")
    @classmethod
    def _resolve(cls, value: str | None) -> str | None:
        return resolve_secret(value)

    def to_environment(self) -> Environment:
        return Environment.model_validate(self.model_dump())


class IdmsSettings(BaseModel):
    timeout: float = 30.0
    proxy_url: str | None = None


class CatalogueSettings(BaseModel):
    base_url: str
    auth_token: str | None = None
    timeout: float = 30.0

    @field_validator("auth_token")
    @classmethod
    def _resolve(cls, value: str | None) -> str | None:
        return resolve_secret(value)


class CircuitBreakerSettings(BaseModel):
    enabled: bool = True
    max_failures: int = 5
    call_timeout: float | None = None
    reset_timeout: float = 60.0


class Settings(BaseModel):
    environments: list[EnvironmentSettings]
    production: str
    deploy_to: str | None = None
    validate_in: str | None = None
    idms: IdmsSettings = IdmsSettings()
    catalogue: CatalogueSettings | None = None
    circuit_breaker: CircuitBreakerSettings = CircuitBreakerSettings()
    audit_log_path: Path | None = None


def load_settings(path: Path | None = None) -> Settings:
    """Read and validate the YAML config file."""
    path = path or get_config_path()
    if not path.exists():
        raise ConfigError(f"No config found at {path} (run 'apihub init')")

    raw = yaml.safe_load(path.read_text()) or {}
    return parse_settings(raw, source=str(path))


def parse_settings(raw: dict[str, Any], source: str = "config") -> Settings:
    try:
        return Settings.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid {source}: {e}") from e


def build_topology(settings: Settings) -> EnvironmentTopology:
    return EnvironmentTopology(
        [e.to_environment() for e in settings.environments],
        production=settings.production,
        deploy_to=settings.deploy_to,
        validate_in=settings.validate_in,
    )


def build_idms_connector(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> IdmsConnector:
    """HTTP identity connector, behind per-environment circuit breakers if enabled."""
    connector = HttpIdmsConnector(
        IdmsConfig(timeout=settings.idms.timeout, proxy_url=settings.idms.proxy_url),
        transport=transport,
    )
    breaker = settings.circuit_breaker
    if not breaker.enabled:
        return connector
    return CircuitBreakerIdmsConnector(
        connector,
        max_failures=breaker.max_failures,
        reset_timeout=breaker.reset_timeout,
        call_timeout=breaker.call_timeout,
    )


def build_catalogue_connector(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HttpCatalogueConnector:
    if settings.catalogue is None:
        raise ConfigError("No catalogue configured")
    return HttpCatalogueConnector(
        CatalogueConfig(
            base_url=settings.catalogue.base_url,
            auth_token=settings.catalogue.auth_token,
            timeout=settings.catalogue.timeout,
        ),
        transport=transport,
    )


def build_audit_logger(settings: Settings) -> AuditLogger:
    return AuditLogger(settings.audit_log_path or DEFAULT_LOG_DIR / "audit.jsonl")


def default_config() -> dict[str, Any]:
    """Starter config written by 'apihub init'."""
    return {
        "environments": [
            {
                "id": "test",
                "name": "Test",
                "rank": 1,
                "is_production_like": False,
                "base_url": "https://idms.test.example.com",
                "client_id": "${APIHUB_TEST_CLIENT_ID}",
                "secret": "${APIHUB_TEST_SECRET}",
                "promote_to": "production",
            },
            {
                "id": "production",
                "name": "Production",
                "rank": 2,
                "is_production_like": True,
                "base_url": "https://idms.example.com",
                "client_id": "${APIHUB_PRODUCTION_CLIENT_ID}",
                "secret": "${APIHUB_PRODUCTION_SECRET}",
            },
        ],
        "production": "production",
        "deploy_to": "test",
        "idms": {"timeout": 30.0},
        "catalogue": {
            "base_url": "https://catalogue.example.com",
            "auth_token": "${APIHUB_CATALOGUE_TOKEN}",
        },
        "circuit_breaker": {
            "enabled": True,
            "max_failures": 5,
            "reset_timeout": 60.0,
        },
        "audit_log_path": str(DEFAULT_LOG_DIR / "audit.jsonl"),
    }
