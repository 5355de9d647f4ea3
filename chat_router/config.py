"""Configuration management for the support chat router."""

import os
from dataclasses import dataclass, field
from typing import List, Tuple
from dotenv import load_dotenv

MAX_FALLBACK_KEYS = 9


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    api_keys: List[str] = field(default_factory=list)
    port: int = 8000
    host: str = "0.0.0.0"
    gemini_base_url: str = "https://generativelanguage.googleapis.com"
    log_level: str = "INFO"
    jwt_secret: str = ""

    emergency_hotline: str = "988"
    institution_email: str = "support@institution.edu"
    institution_phone: str = "+1-800-HELP"

    max_concurrent_requests: int = 3
    max_queue_depth: int = 50
    cache_ttl_seconds: float = 300.0
    cache_max_entries: int = 100
    upstream_timeout_seconds: float = 20.0
    retry_base_delay_seconds: float = 0.5
    max_keys_per_request: int = 3
    key_failure_threshold: int = 3
    key_error_cooldown_seconds: float = 30.0
    key_quota_cooldown_seconds: float = 120.0
    model_cooldown_seconds: float = 300.0
    user_rate_limit: int = 30
    user_rate_window_minutes: int = 15

    max_output_tokens: int = 300
    temperature: float = 0.7
    history_turns: int = 4
    default_model: str = "gemma-3-27b-it"
    model_include: Tuple[str, ...] = ("gemma",)
    model_exclude: Tuple[str, ...] = (
        "embed",
        "aqa",
        "vision",
        "imagen",
        "tts",
        "audio",
    )

    def __post_init__(self):
        if self.max_concurrent_requests <= 0:
            raise ValueError("MAX_CONCURRENT_REQUESTS must be a positive integer")
        if self.max_queue_depth < 0:
            raise ValueError("MAX_QUEUE_DEPTH must not be negative")
        if self.cache_max_entries <= 0:
            raise ValueError("CACHE_MAX_ENTRIES must be a positive integer")
        if self.max_keys_per_request <= 0:
            raise ValueError("MAX_KEYS_PER_REQUEST must be a positive integer")
        if self.key_failure_threshold <= 0:
            raise ValueError("KEY_FAILURE_THRESHOLD must be a positive integer")
        if self.user_rate_limit <= 0 or self.user_rate_window_minutes <= 0:
            raise ValueError("USER_RATE_LIMIT and USER_RATE_WINDOW_MINUTES must be positive")
        if not self.default_model:
            raise ValueError("DEFAULT_MODEL must not be empty")

    @property
    def emergency_contacts(self) -> dict:
        return {
            "hotline": self.emergency_hotline,
            "institutionEmail": self.institution_email,
            "institutionPhone": self.institution_phone,
        }


def _read_api_keys() -> List[str]:
    """Collect the primary credential followed by the numbered fallbacks."""
    names = ["GEMINI_API_KEY"] + [
        f"GEMINI_API_KEY_{n}" for n in range(1, MAX_FALLBACK_KEYS + 1)
    ]
    keys: List[str] = []
    for name in names:
        value = os.getenv(name, "").strip()
        if value and value not in keys:
            keys.append(value)
    return keys


def _split_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


def load_config(use_dotenv: bool = True) -> Config:
    """Load configuration from environment variables.

    Args:
        use_dotenv: Read a ``.env`` file into the environment first.

    Returns:
        Config: Configured application settings

    Raises:
        ValueError: If an environment variable holds an invalid value
    """
    if use_dotenv:
        load_dotenv()

    defaults = Config()

    return Config(
        api_keys=_read_api_keys(),
        port=int(os.getenv("PORT", "8000")),
        host=os.getenv("HOST", "0.0.0.0"),
        gemini_base_url=os.getenv(
            "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"
        ),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        jwt_secret=os.getenv("JWT_SECRET", ""),
        emergency_hotline=os.getenv("EMERGENCY_HOTLINE", "988"),
        institution_email=os.getenv("INSTITUTION_EMAIL", "support@institution.edu"),
        institution_phone=os.getenv("INSTITUTION_PHONE", "+1-800-HELP"),
        max_concurrent_requests=int(os.getenv("MAX_CONCURRENT_REQUESTS", "3")),
        max_queue_depth=int(os.getenv("MAX_QUEUE_DEPTH", "50")),
        cache_ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", "300")),
        cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "100")),
        upstream_timeout_seconds=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "20")),
        retry_base_delay_seconds=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "0.5")),
        max_keys_per_request=int(os.getenv("MAX_KEYS_PER_REQUEST", "3")),
        key_failure_threshold=int(os.getenv("KEY_FAILURE_THRESHOLD", "3")),
        key_error_cooldown_seconds=float(
            os.getenv("KEY_ERROR_COOLDOWN_SECONDS", "30")
        ),
        key_quota_cooldown_seconds=float(
            os.getenv("KEY_QUOTA_COOLDOWN_SECONDS", "120")
        ),
        model_cooldown_seconds=float(os.getenv("MODEL_COOLDOWN_SECONDS", "300")),
        user_rate_limit=int(os.getenv("USER_RATE_LIMIT", "30")),
        user_rate_window_minutes=int(os.getenv("USER_RATE_WINDOW_MINUTES", "15")),
        max_output_tokens=int(os.getenv("MAX_OUTPUT_TOKENS", "300")),
        temperature=float(os.getenv("TEMPERATURE", "0.7")),
        history_turns=int(os.getenv("HISTORY_TURNS", "4")),
        default_model=os.getenv("DEFAULT_MODEL", "gemma-3-27b-it").strip(),
        model_include=_split_list(os.getenv("MODEL_INCLUDE", ""))
        or defaults.model_include,
        model_exclude=_split_list(os.getenv("MODEL_EXCLUDE", ""))
        or defaults.model_exclude,
    )
