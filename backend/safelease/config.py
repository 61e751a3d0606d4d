"""SafeLease chat service configuration.

Loads settings from two YAML files:
  * safelease.settings.yaml  — non-secret configuration
  * safelease.secrets.yaml   — secrets (never committed)

A handful of environment variables (JWT_SECRET, FRONTEND_URL, PORT) override
the file values so the service can run with the same environment the rest of
the SafeLease backend uses.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("safelease.settings.yaml")
SECRETS_FILE  = Path("safelease.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 4000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])


class ChatSettings(BaseModel):
    db_path: str = "safelease_chat.duckdb"


class AuthSettings(BaseModel):
    token_expire_hours: int = 24


class LoggingSettings(BaseModel):
    level: str = "info"


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    secrets: Secrets         = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(config: AppConfig) -> None:
    jwt_secret = os.environ.get("JWT_SECRET")
    if jwt_secret:
        config.secrets.jwt.secret_key = jwt_secret
        logger.debug("JWT secret taken from environment.")

    frontend_url = os.environ.get("FRONTEND_URL")
    if frontend_url:
        config.server.allowed_origins = [frontend_url]

    port = os.environ.get("PORT")
    if port:
        try:
            config.server.port = int(port)
        except ValueError:
            logger.warning("Ignoring non-numeric PORT=%r", port)


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    """Resolve a relative database path against the settings file directory."""
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    return str(settings_path.resolve().parent / db_path)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path) if settings_path else SETTINGS_FILE
    if secrets_path is None:
        secrets_path = settings_path.parent / SECRETS_FILE.name
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(Path(secrets_path))

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.chat.db_path = _resolve_db_path(config.chat.db_path, settings_path)
    _apply_env_overrides(config)

    logger.info(
        "Settings loaded (server=%s:%s, chat.db_path=%s)",
        config.server.host,
        config.server.port,
        config.chat.db_path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Install an explicit configuration (tests, embedding)."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the cached configuration so the next get_config() reloads."""
    global _config
    _config = None
