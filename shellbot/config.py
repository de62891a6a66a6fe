from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_LLM_MODEL = "gpt-4o-mini"
DEFAULT_LLM_BASE_URL = "https://api.openai.com/v1"
TRANSPORT_MODES = {"polling", "webhook", "none"}


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8766
    log_level: str = "INFO"
    telegram_token: str = ""
    allowed_chat_ids: frozenset[int] = field(default_factory=frozenset)
    transport_mode: str = "polling"
    webhook_secret: str | None = None
    poll_timeout_seconds: int = 30
    telegram_http_timeout_seconds: int = 45
    telegram_http_max_retries: int = 2
    llm_base_url: str = DEFAULT_LLM_BASE_URL
    llm_api_key: str | None = None
    llm_model: str = DEFAULT_LLM_MODEL
    llm_max_tokens: int = 2048
    llm_timeout_seconds: int = 60
    llm_system_prompt: str | None = None
    working_dir: str = "."
    command_timeout_seconds: int = 120
    echo_result: bool = True
    activate_venv: str | None = None
    max_fix_retries: int = 10
    max_output_bytes: int = 64 * 1024
    max_concurrent_jobs: int = 0
    skills_dir: str = "skills"

    def is_chat_allowed(self, chat_id: int) -> bool:
        return not self.allowed_chat_ids or chat_id in self.allowed_chat_ids


def _parse_bool(value: str) -> bool:
    return value.strip().lower() not in {"0", "false", "no", "off", ""}


def _parse_chat_ids(value: Any) -> frozenset[int]:
    if isinstance(value, (list, tuple)):
        items = [str(item) for item in value]
    else:
        items = str(value or "").split(",")
    ids: set[int] = set()
    for raw in items:
        cleaned = raw.strip()
        if not cleaned:
            continue
        try:
            ids.add(int(cleaned))
        except ValueError:
            raise ValueError(f"Invalid chat id in allow-list: {cleaned!r}") from None
    return frozenset(ids)


def _load_file_values(path: str | None) -> dict[str, Any]:
    """Flatten the `[telegram]`/`[llm]`/`[executor]` sections of a config.toml."""
    if not path:
        return {}
    config_path = Path(path).expanduser()
    try:
        raw = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Cannot read config file {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Config file {config_path} is not valid TOML: {exc}") from exc

    telegram = raw.get("telegram") or {}
    llm = raw.get("llm") or {}
    executor = raw.get("executor") or {}
    values: dict[str, Any] = {
        "telegram_token": telegram.get("bot_token"),
        "allowed_chat_ids": telegram.get("allowed_chat_ids"),
        "transport_mode": telegram.get("mode"),
        "webhook_secret": telegram.get("webhook_secret"),
        "llm_base_url": llm.get("base_url"),
        "llm_api_key": llm.get("api_key"),
        "llm_model": llm.get("model"),
        "llm_max_tokens": llm.get("max_tokens"),
        "llm_timeout_seconds": llm.get("timeout_secs"),
        "llm_system_prompt": llm.get("system_prompt"),
        "working_dir": executor.get("working_dir"),
        "command_timeout_seconds": executor.get("timeout_secs"),
        "echo_result": executor.get("echo_result"),
        "activate_venv": executor.get("activate_venv"),
        "max_fix_retries": executor.get("max_fix_retries"),
        "max_output_bytes": executor.get("max_output_bytes"),
        "max_concurrent_jobs": executor.get("max_concurrent_jobs"),
        "skills_dir": raw.get("skills_dir"),
    }
    return {key: value for key, value in values.items() if value is not None}


def load_settings() -> Settings:
    file_values = _load_file_values(os.getenv("SHELLBOT_CONFIG_PATH"))

    def pick(env_name: str, key: str, default: Any) -> Any:
        env_value = os.getenv(env_name)
        if env_value is not None and env_value.strip() != "":
            return env_value
        return file_values.get(key, default)

    telegram_token = str(pick("SHELLBOT_TELEGRAM_TOKEN", "telegram_token", os.getenv("TELEGRAM_BOT_TOKEN", ""))).strip()
    llm_api_key = str(pick("SHELLBOT_LLM_API_KEY", "llm_api_key", os.getenv("OPENAI_API_KEY", ""))).strip()
    echo_raw = pick("SHELLBOT_ECHO_RESULT", "echo_result", True)

    settings = Settings(
        host=os.getenv("SHELLBOT_HOST", "127.0.0.1"),
        port=int(os.getenv("SHELLBOT_PORT", "8766")),
        log_level=os.getenv("SHELLBOT_LOG_LEVEL", "INFO").strip().upper(),
        telegram_token=telegram_token,
        allowed_chat_ids=_parse_chat_ids(pick("SHELLBOT_ALLOWED_CHAT_IDS", "allowed_chat_ids", "")),
        transport_mode=str(pick("SHELLBOT_TRANSPORT_MODE", "transport_mode", "polling")).strip().lower(),
        webhook_secret=str(pick("SHELLBOT_WEBHOOK_SECRET", "webhook_secret", "")).strip() or None,
        poll_timeout_seconds=int(os.getenv("SHELLBOT_POLL_TIMEOUT_SECONDS", "30")),
        telegram_http_timeout_seconds=int(os.getenv("SHELLBOT_TELEGRAM_HTTP_TIMEOUT_SECONDS", "45")),
        telegram_http_max_retries=int(os.getenv("SHELLBOT_TELEGRAM_HTTP_MAX_RETRIES", "2")),
        llm_base_url=str(pick("SHELLBOT_LLM_BASE_URL", "llm_base_url", DEFAULT_LLM_BASE_URL)).strip(),
        llm_api_key=llm_api_key or None,
        llm_model=str(pick("SHELLBOT_LLM_MODEL", "llm_model", DEFAULT_LLM_MODEL)).strip(),
        llm_max_tokens=int(pick("SHELLBOT_LLM_MAX_TOKENS", "llm_max_tokens", 2048)),
        llm_timeout_seconds=int(pick("SHELLBOT_LLM_TIMEOUT_SECONDS", "llm_timeout_seconds", 60)),
        llm_system_prompt=str(pick("SHELLBOT_LLM_SYSTEM_PROMPT", "llm_system_prompt", "")).strip() or None,
        working_dir=str(pick("SHELLBOT_WORKING_DIR", "working_dir", ".")).strip() or ".",
        command_timeout_seconds=int(pick("SHELLBOT_COMMAND_TIMEOUT_SECONDS", "command_timeout_seconds", 120)),
        echo_result=echo_raw if isinstance(echo_raw, bool) else _parse_bool(str(echo_raw)),
        activate_venv=str(pick("SHELLBOT_ACTIVATE_VENV", "activate_venv", "")).strip() or None,
        max_fix_retries=int(pick("SHELLBOT_MAX_FIX_RETRIES", "max_fix_retries", 10)),
        max_output_bytes=int(pick("SHELLBOT_MAX_OUTPUT_BYTES", "max_output_bytes", 64 * 1024)),
        max_concurrent_jobs=int(pick("SHELLBOT_MAX_CONCURRENT_JOBS", "max_concurrent_jobs", 0)),
        skills_dir=str(pick("SHELLBOT_SKILLS_DIR", "skills_dir", "skills")).strip() or "skills",
    )
    validate_settings(settings)
    return settings


def validate_settings(settings: Settings) -> None:
    if settings.transport_mode not in TRANSPORT_MODES:
        raise ValueError("transport_mode must be one of: polling, webhook, none")
    if settings.max_fix_retries < 0:
        raise ValueError("max_fix_retries must be >= 0")
    if settings.command_timeout_seconds <= 0:
        raise ValueError("command_timeout_seconds must be > 0")
    if settings.max_output_bytes < 1024:
        raise ValueError("max_output_bytes must be at least 1024")
    if settings.max_concurrent_jobs < 0:
        raise ValueError("max_concurrent_jobs must be >= 0")
    if settings.llm_timeout_seconds <= 0:
        raise ValueError("llm_timeout_seconds must be > 0")
