from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import os


class ConfigError(Exception):
    pass


@dataclass
class Config:
    bsky_username: Optional[str]
    bsky_password: Optional[str]
    bsky_service: str
    session_path: Path
    manifold_api_key: Optional[str]
    manifold_api_base: str
    openai_api_key: Optional[str]
    openai_base_url: str
    openai_model: str
    openai_temperature: float
    generation_max_retries: int
    generation_retry_pause_seconds: float
    poll_seconds: int
    error_pause_seconds: int
    settle_seconds: float
    notification_limit: int
    max_workers: int
    max_cycles: int
    login_attempts: int
    login_backoff_max_seconds: float
    dry_run: bool
    journal_path: Optional[Path]
    log_level: str
    log_path: Optional[Path]


def _env_flag(env_key: str, default: str = "0") -> bool:
    return os.getenv(env_key, default).strip().lower() in {"1", "true", "yes"}


def _optional_path(env_key: str, default: str = "") -> Optional[Path]:
    value = os.getenv(env_key, default).strip()
    return Path(value) if value else None


def _optional_secret(env_key: str) -> Optional[str]:
    value = os.getenv(env_key, "").strip()
    return value or None


def load_config() -> Config:
    return Config(
        bsky_username=_optional_secret("BSKY_USERNAME"),
        bsky_password=_optional_secret("BSKY_PASSWORD"),
        bsky_service=os.getenv("BSKY_SERVICE", "https://bsky.social").strip().rstrip("/"),
        session_path=Path(os.getenv("MFOLDBOT_SESSION_PATH", "session.json")),
        manifold_api_key=_optional_secret("MANIFOLD_API_KEY"),
        manifold_api_base=os.getenv("MANIFOLD_API_BASE", "https://api.manifold.markets/v0").strip().rstrip("/"),
        openai_api_key=_optional_secret("OPENAI_API_KEY"),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1").strip().rstrip("/"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4").strip(),
        openai_temperature=float(os.getenv("OPENAI_TEMPERATURE", "0.7")),
        generation_max_retries=int(os.getenv("GENERATION_MAX_RETRIES", "1")),
        generation_retry_pause_seconds=float(os.getenv("GENERATION_RETRY_PAUSE_SECONDS", "1")),
        poll_seconds=int(os.getenv("MFOLDBOT_POLL_SECONDS", "30")),
        error_pause_seconds=int(os.getenv("MFOLDBOT_ERROR_PAUSE_SECONDS", "60")),
        settle_seconds=float(os.getenv("MFOLDBOT_SETTLE_SECONDS", "5")),
        notification_limit=int(os.getenv("MFOLDBOT_NOTIFICATION_LIMIT", "50")),
        max_workers=int(os.getenv("MFOLDBOT_MAX_WORKERS", "4")),
        max_cycles=int(os.getenv("MFOLDBOT_MAX_CYCLES", "0")),
        login_attempts=int(os.getenv("MFOLDBOT_LOGIN_ATTEMPTS", "5")),
        login_backoff_max_seconds=float(os.getenv("MFOLDBOT_LOGIN_BACKOFF_MAX_SECONDS", "60")),
        dry_run=_env_flag("MFOLDBOT_DRY_RUN"),
        journal_path=_optional_path("MFOLDBOT_JOURNAL_PATH", "memory/actions.jsonl"),
        log_level=os.getenv("MFOLDBOT_LOG_LEVEL", "INFO").strip().upper(),
        log_path=_optional_path("MFOLDBOT_LOG_PATH"),
    )


def missing_credentials(cfg: Config) -> List[str]:
    required = {
        "BSKY_USERNAME": cfg.bsky_username,
        "BSKY_PASSWORD": cfg.bsky_password,
        "OPENAI_API_KEY": cfg.openai_api_key,
        "MANIFOLD_API_KEY": cfg.manifold_api_key,
    }
    return [name for name, value in required.items() if not value]


def require_credentials(cfg: Config) -> None:
    """Fail fast when any service credential is absent.

    The poll loop talks to three services on every cycle, so a partial
    configuration is never useful.
    """
    missing = missing_credentials(cfg)
    if missing:
        raise ConfigError(f"Missing required environment variables: {', '.join(missing)}")
