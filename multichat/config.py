# multichat/config.py

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


RESPONDER_MODES = ("last_addressed", "all", "mentions_only")


@dataclass
class Settings:
    # ---- persistence ----
    database_url: str = ""
    google_project: str = "your-project-id"
    google_region: str = "us-central1"

    # ---- models / metering ----
    chat_model: str = "gemini-2.5-flash-lite"
    summary_model: str = "gemini-2.5-flash-lite"
    pricing_path: str | None = None
    currency: str = "CREDITS"
    precheck_tokens_per_response: int = 1000

    # ---- encryption ----
    message_encryption_key: str = ""

    # ---- membership ----
    default_max_users: int = 4

    # ---- memory ----
    compression_threshold: int = 50
    compression_retry_gap: int = 10
    max_context_tokens: int = 8000

    # ---- response jobs ----
    response_max_attempts: int = 3
    response_backoff_seconds: float = 2.0
    response_timeout_seconds: float = 60.0
    default_responder_mode: str = "last_addressed"

    # ---- presence ----
    presence_ttl_seconds: float = 45.0
    typing_ttl_seconds: float = 5.0

    # ---- worker ----
    worker_id: str = field(default_factory=lambda: f"worker-{os.getpid()}")
    queue_poll_interval: float = 1.0
    concurrent_instances: int = 4
    stale_job_seconds: float = 300.0
    outbox_retention_seconds: float = 3600.0

    def __post_init__(self) -> None:
        if self.default_responder_mode not in RESPONDER_MODES:
            raise ValueError(
                f"DEFAULT_RESPONDER_MODE must be one of {RESPONDER_MODES}, got '{self.default_responder_mode}'"
            )
        if self.response_max_attempts < 1:
            raise ValueError("RESPONSE_MAX_ATTEMPTS must be >= 1")

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", ""),
            google_project=os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id"),
            google_region=os.getenv("GOOGLE_CLOUD_REGION", "us-central1"),
            chat_model=os.getenv("CHAT_MODEL", "gemini-2.5-flash-lite"),
            summary_model=os.getenv("SUMMARY_MODEL", "gemini-2.5-flash-lite"),
            pricing_path=os.getenv("LLM_PRICING_ENV_PATH") or None,
            currency=os.getenv("CURRENCY", "CREDITS"),
            precheck_tokens_per_response=_env_int("PRECHECK_TOKENS_PER_RESPONSE", 1000),
            message_encryption_key=os.getenv("MESSAGE_ENCRYPTION_KEY", ""),
            default_max_users=_env_int("DEFAULT_MAX_USERS", 4),
            compression_threshold=_env_int("COMPRESSION_THRESHOLD", 50),
            compression_retry_gap=_env_int("COMPRESSION_RETRY_GAP", 10),
            max_context_tokens=_env_int("MAX_CONTEXT_TOKENS", 8000),
            response_max_attempts=_env_int("RESPONSE_MAX_ATTEMPTS", 3),
            response_backoff_seconds=_env_float("RESPONSE_BACKOFF_SECONDS", 2.0),
            response_timeout_seconds=_env_float("RESPONSE_TIMEOUT_SECONDS", 60.0),
            default_responder_mode=os.getenv("DEFAULT_RESPONDER_MODE", "last_addressed"),
            presence_ttl_seconds=_env_float("PRESENCE_TTL_SECONDS", 45.0),
            typing_ttl_seconds=_env_float("TYPING_TTL_SECONDS", 5.0),
            worker_id=os.getenv("WORKER_ID") or f"worker-{os.getpid()}",
            queue_poll_interval=_env_float("QUEUE_POLL_INTERVAL", 1.0),
            concurrent_instances=_env_int("CONCURRENT_INSTANCES", 4),
            stale_job_seconds=_env_float("STALE_JOB_SECONDS", 300.0),
            outbox_retention_seconds=_env_float("OUTBOX_RETENTION_SECONDS", 3600.0),
        )
