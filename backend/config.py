import logging
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# Get the directory where this config file is located.
_BACKEND_DIR = Path(__file__).parent.resolve()


def _detect_project_root(backend_dir: Path) -> Path:
    """Resolve project root from the backend directory in the repo layout."""
    return backend_dir.parent.resolve()


_PROJECT_ROOT = _detect_project_root(_BACKEND_DIR)
_DEFAULT_DB_PATH = (_PROJECT_ROOT / "data" / "marketpipe.db").resolve()
_SQLITE_ASYNC_PREFIX = "sqlite+aiosqlite:///"
_SQLITE_SYNC_PREFIX = "sqlite:///"
_LOGGER = logging.getLogger(__name__)


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = Field(default=f"{_SQLITE_ASYNC_PREFIX}{_DEFAULT_DB_PATH}", validate_default=True)

    # Message broker (RabbitMQ). Unset means the broker is not configured and
    # publishers degrade to "record only".
    RABBITMQ_URL: Optional[str] = None
    QUEUE_EXCHANGE: str = "prediction.market"

    # API surface
    API_BASE_URL: Optional[str] = None
    CORS_ORIGINS: list[str] = ["*"]
    ADMIN_ACTOR: str = "admin"

    # Worker runtime
    HEARTBEAT_INTERVAL_SECONDS: float = 30.0
    SCHEDULER_TICK_SECONDS: float = 60.0

    # AI config cache
    CONFIG_CACHE_TTL_SECONDS: float = 300.0

    # LLM (OpenAI-compatible chat completions)
    OPENAI_API_KEY: Optional[str] = None
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_TIMEOUT_SECONDS: float = 120.0

    # On-chain collaborator
    CHAIN_ID: str = "solana-devnet"
    DRY_RUN: bool = True

    # Evidence fetching (resolver / dispute agent)
    EVIDENCE_FETCH_TIMEOUT_SECONDS: float = 30.0

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True
    LOG_FILE: Optional[str] = None

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def _normalize_database_url(cls, value: object) -> object:
        if not isinstance(value, str):
            return value
        text = value.strip()
        if text.startswith("postgresql://"):
            return text.replace("postgresql://", "postgresql+asyncpg://", 1)
        if text.startswith("postgres://"):
            return text.replace("postgres://", "postgresql+asyncpg://", 1)

        for prefix in (_SQLITE_ASYNC_PREFIX, _SQLITE_SYNC_PREFIX):
            if not text.startswith(prefix):
                continue
            path_part = text[len(prefix) :]
            if not path_part:
                return text
            if path_part in {":memory:", "/:memory:"}:
                return f"{_SQLITE_ASYNC_PREFIX}:memory:"
            absolute = (
                Path(path_part).resolve()
                if path_part.startswith("/")
                else (_PROJECT_ROOT / path_part).resolve()
            )
            try:
                absolute.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                _LOGGER.warning(
                    "Could not create SQLite directory",
                    extra={"path": str(absolute.parent), "error": str(exc)},
                )
            return f"{_SQLITE_ASYNC_PREFIX}{absolute}"

        return text

    @field_validator("RABBITMQ_URL", "OPENAI_API_KEY", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("API_BASE_URL", mode="before")
    @classmethod
    def _normalize_api_base_url(cls, value: object) -> object:
        if isinstance(value, str):
            text = value.strip().rstrip("/")
            return text or None
        return value

    class Config:
        # Load project-root .env first (common workflow), then backend/.env
        # as an override if present.
        env_file = (
            str(_PROJECT_ROOT / ".env"),
            str(_BACKEND_DIR / ".env"),
        )
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
