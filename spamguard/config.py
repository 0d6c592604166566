"""Single source of truth for configuration.

Values come from ``secrets/internal.env`` (or its SOPS-encrypted twin when
SPAMGUARD_USE_SOPS=true), overlaid by the process environment. All modules
import from here, never from os.environ directly.
"""

import os
from pathlib import Path

from pydantic import ValidationError

from spamguard.errors import ConfigurationError
from spamguard.schemas.processing import ProcessingSettings
from spamguard.secrets import read_env_file

PROJECT_ROOT = Path(__file__).resolve().parent.parent

USE_SOPS = os.environ.get("SPAMGUARD_USE_SOPS", "false").lower() == "true"


def _load(scope: str) -> dict[str, str | None]:
    """Load settings for a given scope from the secrets directory."""
    return read_env_file(PROJECT_ROOT / "secrets" / f"{scope}.env", encrypted=USE_SOPS)


_internal = _load("internal")


def _get(key: str, default: str) -> str:
    # Environment wins over the file.
    value = os.environ.get(key, _internal.get(key))
    return default if value is None or value == "" else value


def _flag(key: str, default: bool) -> bool:
    return _get(key, "true" if default else "false").lower() in ("1", "true", "yes", "on")


# --- AI backends ---
AI_SOURCE: str = _get("AI_SOURCE", "ollama")
OLLAMA_BASE_URL: str = _get("OLLAMA_BASE_URL", "http://localhost:11434")
OPENROUTER_BASE_URL: str = _get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")
OPENROUTER_API_KEY: str = _get("OPENROUTER_API_KEY", "")
CHAT_MODEL: str = _get("CHAT_MODEL", "")
EMBED_MODEL: str = _get("EMBED_MODEL", "")

# --- Classification ---
AI_SENSITIVITY: str = _get("AI_SENSITIVITY", "7")
EMAIL_AGE_DAYS: str = _get("EMAIL_AGE_DAYS", "1")
SIMPLIFY_EMAIL_CONTENT: bool = _flag("SIMPLIFY_EMAIL_CONTENT", True)
SIMPLIFY_EMAIL_CONTENT_MODE: str = _get("SIMPLIFY_EMAIL_CONTENT_MODE", "aggressive")
CUSTOMIZE_SPAM_GUIDELINES: bool = _flag("CUSTOMIZE_SPAM_GUIDELINES", False)
CUSTOM_SPAM_GUIDELINES: str = _get("CUSTOM_SPAM_GUIDELINES", "")
ENABLE_VECTOR_DB: bool = _flag("ENABLE_VECTOR_DB", False)
SIMILARITY_CONTEXT_SIZE: str = _get("SIMILARITY_CONTEXT_SIZE", "5")
CLASSIFIER_MAX_ATTEMPTS: str = _get("CLASSIFIER_MAX_ATTEMPTS", "3")
CLASSIFIER_RETRY_WAIT_SECONDS: str = _get("CLASSIFIER_RETRY_WAIT_SECONDS", "0")

# --- Scheduler ---
# Minutes between runs of `spamguard run`; 0 runs once and exits.
SCHEDULER_INTERVAL_MINUTES: str = _get("SCHEDULER_INTERVAL_MINUTES", "0")

# --- Storage ---
DEDUP_DB_PATH: str = _get("DEDUP_DB_PATH", str(PROJECT_ROOT / "data" / "dedup.db"))
MEMORY_DB_PATH: str = _get("MEMORY_DB_PATH", str(PROJECT_ROOT / "data" / "memory.lancedb"))
AUDIT_LOG_PATH: str = _get("AUDIT_LOG_PATH", str(PROJECT_ROOT / "data" / "audit.jsonl"))
ACCOUNTS_PATH: str = _get("ACCOUNTS_PATH", str(PROJECT_ROOT / "data" / "accounts.json"))
RULES_PATH: str = _get("RULES_PATH", str(PROJECT_ROOT / "data" / "rules.json"))


def load_settings(**overrides: object) -> ProcessingSettings:
    """Build validated run settings from config, with optional overrides.

    Raises:
        ConfigurationError: If a value is out of range or not a number.
    """
    values: dict[str, object] = {
        "sensitivity": AI_SENSITIVITY,
        "max_age_days": EMAIL_AGE_DAYS,
        "simplify_content": SIMPLIFY_EMAIL_CONTENT,
        "simplify_mode": SIMPLIFY_EMAIL_CONTENT_MODE,
        "use_custom_guidelines": CUSTOMIZE_SPAM_GUIDELINES,
        "custom_guidelines": CUSTOM_SPAM_GUIDELINES,
        "memory_enabled": ENABLE_VECTOR_DB,
        "chat_model": CHAT_MODEL,
        "embed_model": EMBED_MODEL,
        "similarity_k": SIMILARITY_CONTEXT_SIZE,
        "max_attempts": CLASSIFIER_MAX_ATTEMPTS,
        "retry_wait_seconds": CLASSIFIER_RETRY_WAIT_SECONDS,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    try:
        return ProcessingSettings.model_validate(values)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid settings: {exc}") from exc


def scheduler_interval(override: int | None = None) -> int:
    """Minutes between scheduled runs, 0 when scheduling is off.

    Raises:
        ConfigurationError: If SCHEDULER_INTERVAL_MINUTES is not a
            non-negative whole number.
    """
    if override is not None:
        return override
    try:
        minutes = int(SCHEDULER_INTERVAL_MINUTES)
    except ValueError as exc:
        raise ConfigurationError(
            f"SCHEDULER_INTERVAL_MINUTES must be a whole number, got {SCHEDULER_INTERVAL_MINUTES!r}"
        ) from exc
    if minutes < 0:
        raise ConfigurationError(f"SCHEDULER_INTERVAL_MINUTES must not be negative, got {minutes}")
    return minutes
