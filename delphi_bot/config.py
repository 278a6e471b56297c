from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


def _env_str(name: str, default: str | None = None) -> str:
    value = os.getenv(name)
    if value is None:
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return value


def _env_int(name: str, default: int | None = None) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        if default is None:
            raise RuntimeError(f"Missing required env: {name}")
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Config:
    # Site
    delphi_email: str
    delphi_password: str
    login_url: str
    reports_url: str
    first_run_limit: int

    # Browser
    playwright_headless: bool
    playwright_nav_timeout_seconds: int
    login_wait_timeout_seconds: int
    page_settle_seconds: float
    item_min_interval_seconds: float
    user_agent: str
    selectors_path: Path

    # Retry
    retry_attempts: int
    retry_delay_seconds: float

    # AI
    ai_base_url: str
    ai_api_key: str
    ai_model: str
    ai_timeout_seconds: int
    ai_max_retries: int
    ai_prefer_chat_completions: bool
    ai_fallback_to_responses: bool
    ai_max_input_chars: int
    ai_chunk_chars: int
    ai_chunk_overlap_chars: int

    # Telegram
    bot_token: str
    target_chat_id: int
    alert_chat_id: int
    tg_parse_mode: str
    send_interval_seconds: float
    backlog_send_limit: int
    reprocess_failed_limit: int
    digest_lookback_hours: int

    # Storage
    data_dir: Path
    backup_keep: int
    lock_path: Path
    daemon_pid_path: Path

    # Scheduling
    check_interval_seconds: int

    # Metrics
    metrics_enabled: bool
    metrics_bind: str
    metrics_port: int
    status_json_path: Path

    # Alerts
    alert_n_run: int

    # Logging
    log_level: str
    log_file: str

    @property
    def debug_dir(self) -> Path:
        return self.data_dir / "debug"

    @property
    def publishing_enabled(self) -> bool:
        return bool(self.bot_token) and self.target_chat_id != 0


def load_config() -> Config:
    data_dir = Path(_env_str("DATA_DIR", "data"))
    return Config(
        delphi_email=_env_str("DELPHI_EMAIL", ""),
        delphi_password=_env_str("DELPHI_PASSWORD", ""),
        login_url=_env_str("DELPHI_LOGIN_URL", "https://members.delphidigital.io/login"),
        reports_url=_env_str("DELPHI_REPORTS_URL", "https://members.delphidigital.io/reports"),
        first_run_limit=_env_int("FIRST_RUN_LIMIT", 0),
        playwright_headless=_env_bool("PLAYWRIGHT_HEADLESS", True),
        playwright_nav_timeout_seconds=_env_int("PLAYWRIGHT_NAV_TIMEOUT_SECONDS", 60),
        login_wait_timeout_seconds=_env_int("LOGIN_WAIT_TIMEOUT_SECONDS", 45),
        page_settle_seconds=_env_float("PAGE_SETTLE_SECONDS", 5.0),
        item_min_interval_seconds=_env_float("ITEM_MIN_INTERVAL_SECONDS", 1.0),
        user_agent=_env_str(
            "USER_AGENT",
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        ),
        selectors_path=Path(_env_str("SELECTORS_PATH", "selectors.yaml")),
        retry_attempts=_env_int("RETRY_ATTEMPTS", 3),
        retry_delay_seconds=_env_float("RETRY_DELAY_SECONDS", 5.0),
        ai_base_url=_env_str("AI_BASE_URL", ""),
        ai_api_key=_env_str("AI_API_KEY", ""),
        ai_model=_env_str("AI_MODEL", ""),
        ai_timeout_seconds=_env_int("AI_TIMEOUT_SECONDS", 120),
        ai_max_retries=_env_int("AI_MAX_RETRIES", 2),
        ai_prefer_chat_completions=_env_bool("AI_PREFER_CHAT_COMPLETIONS", True),
        ai_fallback_to_responses=_env_bool("AI_FALLBACK_TO_RESPONSES", True),
        ai_max_input_chars=_env_int("AI_MAX_INPUT_CHARS", 120000),
        ai_chunk_chars=_env_int("AI_CHUNK_CHARS", 40000),
        ai_chunk_overlap_chars=_env_int("AI_CHUNK_OVERLAP_CHARS", 1000),
        bot_token=_env_str("BOT_TOKEN", ""),
        target_chat_id=_env_int("TARGET_CHAT_ID", 0),
        alert_chat_id=_env_int("ALERT_CHAT_ID", 0),
        tg_parse_mode=_env_str("TG_PARSE_MODE", "HTML"),
        send_interval_seconds=_env_float("SEND_INTERVAL_SECONDS", 1.0),
        backlog_send_limit=_env_int("BACKLOG_SEND_LIMIT", 10),
        reprocess_failed_limit=_env_int("REPROCESS_FAILED_LIMIT", 5),
        digest_lookback_hours=_env_int("DIGEST_LOOKBACK_HOURS", 24),
        data_dir=data_dir,
        backup_keep=_env_int("BACKUP_KEEP", 20),
        lock_path=Path(_env_str("LOCK_PATH", str(data_dir / "delphi-bot.pid"))),
        daemon_pid_path=Path(_env_str("DAEMON_PID_PATH", str(data_dir / "delphi-bot-daemon.pid"))),
        check_interval_seconds=_env_int("CHECK_INTERVAL_SECONDS", 24 * 60 * 60),
        metrics_enabled=_env_bool("METRICS_ENABLED", False),
        metrics_bind=_env_str("METRICS_BIND", "127.0.0.1"),
        metrics_port=_env_int("METRICS_PORT", 9108),
        status_json_path=Path(_env_str("STATUS_JSON_PATH", str(data_dir / "status.json"))),
        alert_n_run=_env_int("ALERT_N_RUN", 3),
        log_level=_env_str("LOG_LEVEL", "INFO"),
        log_file=_env_str("LOG_FILE", ""),
    )
