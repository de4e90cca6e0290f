"""Configuration models and loading."""

import json
import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    SettingsError,
)

from core.exceptions import ConfigurationError

CONFIG_DIR = Path.home() / ".config" / "crud-gateway"
CONFIG_FILE = CONFIG_DIR / "config.json"
ENV_PREFIX = "GATEWAY_"


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False


class BackendSettings(BaseModel):
    base_url: str
    timeout: float = Field(default=10.0, gt=0)
    max_connections: int = Field(default=100, ge=1)
    max_keepalive_connections: int = Field(default=20, ge=0)

    @field_validator("base_url")
    @classmethod
    def _check_scheme(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("base_url must start with http:// or https://")
        return value.rstrip("/")


class RouteSettings(BaseModel):
    prefix: str
    backend: str
    # None strips the matched prefix; a string replaces it
    rewrite: str | None = None

    @field_validator("prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("route prefix must start with '/'")
        return value.rstrip("/") or "/"

    @field_validator("rewrite")
    @classmethod
    def _check_rewrite(cls, value: str | None) -> str | None:
        if value and not value.startswith("/"):
            raise ValueError("route rewrite must start with '/'")
        return value


class ResilienceSettings(BaseModel):
    max_retries: int = Field(default=1, ge=0, le=1)
    failure_threshold: int = Field(default=3, ge=1)
    cooldown_seconds: float = Field(default=30.0, ge=0)


class LimitsSettings(BaseModel):
    max_body_size: int = 50 * 1024 * 1024  # 50MB
    keep_alive_timeout: int = 5


def _default_backends() -> dict[str, BackendSettings]:
    return {
        "tasks": BackendSettings(base_url="http://localhost:8081"),
        "users": BackendSettings(base_url="http://localhost:8082"),
    }


def _default_routes() -> list[RouteSettings]:
    # The services serve their own /api/... paths, so keep the prefix
    return [
        RouteSettings(prefix="/api/tasks", backend="tasks", rewrite="/api/tasks"),
        RouteSettings(prefix="/api/users", backend="users", rewrite="/api/users"),
    ]


class Config(BaseSettings):
    """Gateway settings: explicit values, then ``GATEWAY_*`` env vars, then the JSON file."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    backends: dict[str, BackendSettings] = Field(default_factory=_default_backends)
    routes: list[RouteSettings] = Field(default_factory=_default_routes)
    resilience: ResilienceSettings = Field(default_factory=ResilienceSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (init_settings, env_settings, JsonConfigSettingsSource(settings_cls))

    @model_validator(mode="after")
    def _check_routes(self) -> "Config":
        seen: set[str] = set()
        for route in self.routes:
            if route.backend not in self.backends:
                raise ValueError(f"route {route.prefix!r} refers to unknown backend {route.backend!r}")
            if route.prefix in seen:
                raise ValueError(f"duplicate route prefix {route.prefix!r}")
            seen.add(route.prefix)
        return self


def config_path() -> Path:
    """Resolve the config file location (GATEWAY_CONFIG wins)."""
    override = os.environ.get(f"{ENV_PREFIX}CONFIG")
    return Path(override).expanduser() if override else CONFIG_FILE


def _reading(path: Path) -> type[Config]:
    """Config class whose file source is ``path``."""

    class FileConfig(Config):
        model_config = SettingsConfigDict(json_file=path)

    return FileConfig


def load_config(path: Path | None = None) -> Config:
    """Load configuration from JSON file, creating default if needed.

    ``GATEWAY_*`` environment variables take precedence over the file, with
    ``__`` separating nested keys (``GATEWAY_BACKENDS__TASKS__BASE_URL``).
    """
    path = path or config_path()

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(Config.model_construct().model_dump_json(indent=2))

    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"Invalid config {path}: expected a JSON object")

    try:
        return _reading(path)()
    except (ValidationError, SettingsError) as e:
        raise ConfigurationError(f"Invalid config {path}: {e}") from e
