import os
import re
from functools import lru_cache
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file early so env vars are available for YAML interpolation
load_dotenv(Path.cwd() / ".env")

# Pattern to match $VAR_NAME environment variable references
ENV_VAR_PATTERN = re.compile(r"\$([A-Z_][A-Z0-9_]*)")

_config_path_override: Path | None = None


def interpolate_env_vars(value):
    """Recursively replace $VAR_NAME with os.environ values."""
    if isinstance(value, str):

        def replace(match):
            var = match.group(1)
            val = os.environ.get(var)
            if val is None:
                raise ValueError(f"Environment variable ${var} not set")
            return val

        return ENV_VAR_PATTERN.sub(replace, value)
    elif isinstance(value, dict):
        return {k: interpolate_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [interpolate_env_vars(item) for item in value]
    return value


def set_config_path(path: Path | str | None) -> None:
    """Force a specific config file, bypassing environment-based resolution."""
    global _config_path_override
    _config_path_override = Path(path) if path is not None else None


def get_config_path() -> Path:
    """Return the YAML config path for the current environment.

    ``POSTFRAME_ENV=testing`` resolves to ``app.testing.yaml``; an unset or
    ``production`` environment resolves to ``app.yaml``.
    """
    if _config_path_override is not None:
        return _config_path_override

    env = os.environ.get("POSTFRAME_ENV", "production").strip().lower()
    if env and env != "production":
        return Path.cwd() / f"app.{env}.yaml"
    return Path.cwd() / "app.yaml"


def load_app_config() -> dict:
    """Load and parse the YAML config with environment variable interpolation."""
    config_path = get_config_path()

    if not config_path.exists():
        raise FileNotFoundError(f"{config_path.name} not found at {config_path}")

    with open(config_path, "r") as f:
        config = yaml.safe_load(f) or {}

    return interpolate_env_vars(config)


class DatabaseConfig(BaseModel):
    """Database connection configuration for the uploads table."""

    url: str = "sqlite+aiosqlite:///./app.db"
    echo: bool = False


class ImagesConfig(BaseModel):
    """Dynamic image pipeline configuration."""

    uploads_prefix: str = "/uploads/"
    cache_dir: str = "cache/images"
    srcset_step: int = 200
    supported_types: list[str] = ["image/gif", "image/jpeg", "image/png"]


class LogfireConfig(BaseModel):
    """Pydantic Logfire observability configuration."""

    enabled: bool = False
    service_name: str = "postframe"
    environment: str | None = None
    sample_rate: float = 1.0
    console: bool = False


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    debug: bool = False
    secret_key: str
    app_url: str = "http://localhost:8080"
    site_root: str = "."

    # Sections loaded from app.yaml
    db: DatabaseConfig = DatabaseConfig()
    images: ImagesConfig = ImagesConfig()
    logfire: LogfireConfig = LogfireConfig()

    @property
    def site_root_path(self) -> Path:
        return Path(self.site_root).resolve()

    @property
    def uploads_path(self) -> Path:
        """Directory backing the uploads URL namespace."""
        return self.site_root_path / self.images.uploads_prefix.strip("/")

    @property
    def cache_path(self) -> Path:
        cache_dir = Path(self.images.cache_dir)
        if cache_dir.is_absolute():
            return cache_dir
        return self.site_root_path / cache_dir


@lru_cache
def get_settings() -> Settings:
    """Load settings from .env and app.yaml."""
    base_settings = Settings()

    try:
        app_config = load_app_config()
    except FileNotFoundError:
        return base_settings

    updates = {}

    for key in ("debug", "app_url", "site_root"):
        if key in app_config:
            updates[key] = app_config[key]

    if "db" in app_config:
        updates["db"] = DatabaseConfig(**app_config["db"])

    if "images" in app_config:
        updates["images"] = ImagesConfig(**app_config["images"])

    if "logfire" in app_config:
        updates["logfire"] = LogfireConfig(**app_config["logfire"])

    if updates:
        return base_settings.model_copy(update=updates)

    return base_settings


def clear_settings_cache() -> None:
    """Drop the memoised settings so the next call reloads them."""
    get_settings.cache_clear()
