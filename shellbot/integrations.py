from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any

from .config import Settings
from .runner import ProcessRunner
from .skills import Skill

FALLBACK_BIN_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "/bin",
    "~/.local/bin",
)


def resolve_binary(binary: str) -> str | None:
    candidate = Path(binary).expanduser()
    if "/" in binary or binary.startswith("."):
        if candidate.exists() and os.access(candidate, os.X_OK):
            return str(candidate.resolve())
        return None

    found = shutil.which(binary)
    if found:
        return found

    for raw_dir in FALLBACK_BIN_DIRS:
        path = (Path(raw_dir).expanduser() / binary).expanduser()
        if path.exists() and os.access(path, os.X_OK):
            return str(path.resolve())
    return None


def integration_status(settings: Settings, *, runner: ProcessRunner, skills: list[Skill]) -> dict[str, Any]:
    shell_resolved = resolve_binary(runner.shell)
    working_dir = Path(settings.working_dir).expanduser()
    activation = runner.activation_script()
    activation_ok = None if activation is None else Path(activation).expanduser().is_file()

    status: dict[str, Any] = {
        "shell": runner.shell,
        "shell_resolved": shell_resolved,
        "shell_available": shell_resolved is not None,
        "working_dir": str(working_dir),
        "working_dir_exists": working_dir.is_dir(),
        "activate_venv": settings.activate_venv or "",
        "activation_script": activation or "",
        "activation_script_exists": activation_ok,
        "command_timeout_seconds": settings.command_timeout_seconds,
        "max_fix_retries": settings.max_fix_retries,
        "llm_model": settings.llm_model,
        "llm_base_url": settings.llm_base_url,
        "llm_api_key_set": bool(settings.llm_api_key),
        "telegram_token_set": bool(settings.telegram_token),
        "transport_mode": settings.transport_mode,
        "webhook_secret_set": bool(settings.webhook_secret),
        "allowed_chat_count": len(settings.allowed_chat_ids),
        "skills_loaded": len(skills),
        "running_processes": runner.active_count(),
    }

    problems: list[str] = []
    if shell_resolved is None:
        problems.append(f"Shell {runner.shell} is not executable.")
    if not working_dir.is_dir():
        problems.append(f"Working directory {working_dir} does not exist.")
    if activation_ok is False:
        problems.append(f"Activation script {activation} was not found; commands run without it.")
    if not settings.llm_api_key:
        problems.append("No language model API key configured.")
    if settings.transport_mode != "none" and not settings.telegram_token:
        problems.append("No Telegram bot token configured.")
    status["ok"] = not problems
    status["detail"] = " ".join(problems) if problems else "All integrations configured."
    return status
