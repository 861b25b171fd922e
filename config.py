from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


class ConfigError(Exception):
    pass


PRODUCTION_DISABLED_TEXT = (
    "WhatsApp integration is disabled in hosted production for stability. "
    "Task assignment, dashboards and reports are fully operational; "
    "pair WhatsApp from a local deployment to receive notifications."
)
DISABLED_BY_ENV_TEXT = "WhatsApp integration is disabled"


@dataclass(frozen=True)
class Config:
    disable_whatsapp: bool
    production_environment: bool
    enable_in_production: bool
    max_retries: int
    init_timeout_sec: int
    reconnect_delay_sec: int
    retry_delay_sec: int
    restart_delay_sec: int
    session_dir: Path
    cache_dir: Path
    headless: bool
    chromium_executable_path: str
    send_timeout_sec: int
    poll_interval_sec: int
    default_country_code: str
    brand_name: str
    state_file: Path
    task_db_file: Path
    session_lock_file: Path
    event_webhook_url: str
    http_timeout_sec: int
    telegram_bot_token: str
    telegram_chat_id: int | None
    telegram_api_base_url: str
    watchdog_check_sec: int
    watchdog_stale_sec: int

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.telegram_bot_token) and self.telegram_chat_id is not None

    def disabled_reason(self) -> str | None:
        """Text for the disable policy, or None when the channel may start."""
        if self.production_environment and not self.enable_in_production:
            return PRODUCTION_DISABLED_TEXT
        if self.disable_whatsapp:
            return DISABLED_BY_ENV_TEXT
        return None


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got: {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0, got: {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{name} must be a boolean value, got: {raw!r}")


def _resolve_path_env_relative(name: str, default: str, base_dir: Path) -> Path:
    raw_value = os.getenv(name, default).strip() or default
    path = Path(raw_value).expanduser()
    if not path.is_absolute():
        path = base_dir / path
    return path.resolve()


def _detect_production() -> bool:
    if os.getenv("RAILWAY_ENVIRONMENT", "").strip().lower() == "production":
        return True
    for name in ("NODE_ENV", "APP_ENV"):
        if os.getenv(name, "").strip().lower() == "production":
            return True
    return bool(os.getenv("RAILWAY_PROJECT_ID", "").strip())


def _get_country_code() -> str:
    raw = os.getenv("DEFAULT_COUNTRY_CODE", "91").strip().lstrip("+")
    if not re.fullmatch(r"\d{1,3}", raw):
        raise ConfigError(f"DEFAULT_COUNTRY_CODE must be 1-3 digits, got: {raw!r}")
    return raw


def _get_telegram_chat_id(token: str) -> int | None:
    raw = os.getenv("TELEGRAM_CHAT_ID", "").strip()
    if not raw and not token:
        return None
    if not raw or not token:
        raise ConfigError("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set together")
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"TELEGRAM_CHAT_ID must be an integer, got: {raw!r}") from exc


def load_config(env_file: str | None = ".env") -> Config:
    if env_file:
        load_dotenv(env_file)
        env_file_path = Path(env_file).expanduser().resolve()
    else:
        load_dotenv()
        env_file_path = Path(".env").resolve()
    env_dir = env_file_path.parent

    watchdog_check_sec = _get_int("WATCHDOG_CHECK_SEC", 10)
    watchdog_stale_sec = _get_int("WATCHDOG_STALE_SEC", 120)
    if watchdog_stale_sec <= watchdog_check_sec:
        raise ConfigError(
            "WATCHDOG_STALE_SEC must be greater than WATCHDOG_CHECK_SEC "
            f"({watchdog_stale_sec} <= {watchdog_check_sec})"
        )

    telegram_bot_token = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()

    return Config(
        disable_whatsapp=_get_bool("DISABLE_WHATSAPP", False),
        production_environment=_detect_production(),
        enable_in_production=_get_bool("ENABLE_WHATSAPP_PRODUCTION", False),
        max_retries=_get_int("WHATSAPP_MAX_RETRIES", 3),
        init_timeout_sec=_get_int("WHATSAPP_INIT_TIMEOUT_SEC", 60),
        reconnect_delay_sec=_get_int("WHATSAPP_RECONNECT_DELAY_SEC", 5),
        retry_delay_sec=_get_int("WHATSAPP_RETRY_DELAY_SEC", 10),
        restart_delay_sec=_get_int("WHATSAPP_RESTART_DELAY_SEC", 2),
        session_dir=_resolve_path_env_relative("WHATSAPP_SESSION_DIR", "./.wwebjs_auth", env_dir),
        cache_dir=_resolve_path_env_relative("WHATSAPP_CACHE_DIR", "./.wwebjs_cache", env_dir),
        headless=_get_bool("WHATSAPP_HEADLESS", True),
        chromium_executable_path=os.getenv("CHROMIUM_EXECUTABLE_PATH", "").strip(),
        send_timeout_sec=_get_int("WHATSAPP_SEND_TIMEOUT_SEC", 30),
        poll_interval_sec=_get_int("WHATSAPP_POLL_INTERVAL_SEC", 1),
        default_country_code=_get_country_code(),
        brand_name=os.getenv("NOTIFY_BRAND_NAME", "Task Dashboard").strip() or "Task Dashboard",
        state_file=_resolve_path_env_relative("STATE_FILE", "./state/whatsapp_state.json", env_dir),
        task_db_file=_resolve_path_env_relative("TASK_DB_FILE", "./state/tasks.json", env_dir),
        session_lock_file=_resolve_path_env_relative("SESSION_LOCK_FILE", "./state/session.lock", env_dir),
        event_webhook_url=os.getenv("EVENT_WEBHOOK_URL", "").strip(),
        http_timeout_sec=_get_int("HTTP_TIMEOUT_SEC", 10),
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=_get_telegram_chat_id(telegram_bot_token),
        telegram_api_base_url=os.getenv(
            "TELEGRAM_API_BASE_URL", "https://api.telegram.org"
        ).strip(),
        watchdog_check_sec=watchdog_check_sec,
        watchdog_stale_sec=watchdog_stale_sec,
    )
