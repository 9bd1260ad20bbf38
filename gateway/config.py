"""Pydantic settings loaded from .env, with conf.json overlay."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict
from pydantic_settings import BaseSettings

BASE_DIR = Path(__file__).resolve().parent

# ---------------------------------------------------------------------------
# conf.json: gateway runtime config (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_gateway_dir() -> Path:
    """Resolve the gateway data directory. GATEWAY_DIR env var or ~/.config/exchange-gateway."""
    d = os.environ.get("GATEWAY_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "exchange-gateway"


class GatewayConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    log_level: str = ""
    log_file: str = ""
    default_backend: str = ""
    backend_priority: list[str] = []
    backend_timeout_seconds: float | None = None
    cors_allow_all_origins: bool | None = None  # None = use Settings default


_logger = logging.getLogger(__name__)


def load_conf() -> GatewayConfig:
    """Load conf.json from the gateway data directory."""
    conf_path = get_gateway_dir() / "conf.json"
    if conf_path.exists():
        try:
            return GatewayConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return GatewayConfig()


def save_conf(config: GatewayConfig) -> None:
    """Save conf.json to the gateway data directory."""
    gateway_dir = get_gateway_dir()
    gateway_dir.mkdir(parents=True, exist_ok=True)
    (gateway_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Bootstrap: load .env, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    DEBUG: bool = False

    DATABASE_URL: str = _conf.database_url or f"sqlite:///{BASE_DIR / 'db.sqlite3'}"
    REDIS_URL: str = _conf.redis_url or "redis://localhost:6379/0"

    CORS_ALLOW_ALL_ORIGINS: bool = (
        _conf.cors_allow_all_origins if _conf.cors_allow_all_origins is not None else True
    )

    LOG_LEVEL: str = _conf.log_level or "INFO"
    LOG_FILE: str = _conf.log_file or ""
    LOG_MAX_BYTES: int = 10_485_760
    LOG_BACKUP_COUNT: int = 5

    # Generation backends. A backend is registered only when configured.
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-3.5-turbo"
    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_MODEL: str = "claude-3-5-haiku-latest"
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.0-flash"
    LOCAL_LLM_BASE_URL: str = ""  # OpenAI-compatible endpoint, e.g. http://localhost:11434/v1
    LOCAL_LLM_MODEL: str = "llama3.2"
    LOCAL_LLM_API_KEY: str = "local"

    DEFAULT_BACKEND: str = _conf.default_backend or "openai"
    BACKEND_PRIORITY: list[str] = _conf.backend_priority or ["openai", "gemini", "anthropic", "local"]
    BACKEND_MAX_FALLBACKS: int = 1
    BACKEND_TIMEOUT_SECONDS: float = (
        _conf.backend_timeout_seconds if _conf.backend_timeout_seconds is not None else 60.0
    )
    GENERATION_TEMPERATURE: float = 0.7
    GENERATION_MAX_TOKENS: int = 1000

    MAX_MESSAGE_LENGTH: int = 2000
    TITLE_MAX_LENGTH: int = 50

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
