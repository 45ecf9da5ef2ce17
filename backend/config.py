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
# conf.json: runtime config kept next to the data directory (separate from .env secrets)
# ---------------------------------------------------------------------------


def get_agentchat_dir() -> Path:
    """Resolve the data directory. AGENTCHAT_DIR env var or ~/.config/agentchat."""
    d = os.environ.get("AGENTCHAT_DIR", "")
    return Path(d).expanduser() if d else Path.home() / ".config" / "agentchat"


class AgentChatConfig(BaseModel):
    database_url: str = ""
    redis_url: str = ""
    log_level: str = ""
    log_file: str = ""
    cors_allow_all_origins: bool | None = None  # None = use Settings default
    free_messages_per_agent: int | None = None
    allow_guest_connections: bool | None = None


_logger = logging.getLogger(__name__)


def load_conf() -> AgentChatConfig:
    """Load conf.json from the data directory."""
    conf_path = get_agentchat_dir() / "conf.json"
    if conf_path.exists():
        try:
            return AgentChatConfig.model_validate_json(conf_path.read_text())
        except Exception:
            _logger.warning("Failed to parse %s, using defaults", conf_path, exc_info=True)
    return AgentChatConfig()


def save_conf(config: AgentChatConfig) -> None:
    """Save conf.json to the data directory."""
    data_dir = get_agentchat_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "conf.json").write_text(config.model_dump_json(indent=2))


# ---------------------------------------------------------------------------
# Secret auto-generation
# ---------------------------------------------------------------------------


def _ensure_secrets(env_file: Path) -> None:
    """Generate SECRET_KEY if missing, append to .env."""
    import secrets as _secrets

    if os.environ.get("SECRET_KEY"):
        return

    key = _secrets.token_urlsafe(32)
    os.environ["SECRET_KEY"] = key
    env_file.parent.mkdir(parents=True, exist_ok=True)
    with open(env_file, "a") as f:
        f.write(f"\nSECRET_KEY={key}\n")


# ---------------------------------------------------------------------------
# Bootstrap: load .env, generate secrets, load conf.json
# ---------------------------------------------------------------------------

_env_file = BASE_DIR.parent / ".env"
load_dotenv(_env_file)
_ensure_secrets(_env_file)
_conf = load_conf()

# ---------------------------------------------------------------------------
# Settings (pydantic-settings): .env / env vars override conf.json defaults
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    SECRET_KEY: str = "change-me-in-production"
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

    # External assistant (OpenAI Assistants API)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = ""  # empty = use the assistant's configured model
    ASSISTANT_STREAMING: bool = False
    RUN_POLL_INTERVAL_MS: int = 1500
    RUN_POLL_TIMEOUT_MS: int = 180_000

    # Message credits
    FREE_MESSAGES_PER_AGENT: int = (
        _conf.free_messages_per_agent if _conf.free_messages_per_agent is not None else 3
    )

    # Realtime
    ALLOW_GUEST_CONNECTIONS: bool = (
        _conf.allow_guest_connections if _conf.allow_guest_connections is not None else False
    )
    GUEST_MESSAGE_LIMIT: int = 3
    HEARTBEAT_INTERVAL: int = 30  # seconds
    PONG_TIMEOUT: int = 10  # seconds

    # HMAC secret shared with the payment provider; verification is refused while empty
    PAYMENT_KEY_SECRET: str = ""

    model_config = ConfigDict(
        env_file=str(BASE_DIR.parent / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = Settings()
