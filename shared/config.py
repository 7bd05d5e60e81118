# shared/config.py
import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def _env_str(name: str) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


@dataclass(frozen=True)
class CoordinatorSettings:
    """Runtime configuration, read once at startup"""

    log_level: str = "INFO"
    json_logs: bool = True
    host: str = "0.0.0.0"
    port: int = 8000
    database_url: Optional[str] = None

    # Webhook security
    issue_webhook_secret: Optional[str] = None
    delegate_webhook_secret: Optional[str] = None
    max_webhook_payload_bytes: int = 1024 * 1024
    rate_limit_per_source: int = 60
    rate_limit_global: int = 600
    rate_limit_window_seconds: float = 60.0
    signature_tolerance_seconds: int = 300
    delivery_retention_seconds: int = 24 * 3600
    critical_failure_threshold: int = 5

    # Delegation policy
    delegation_threshold: int = 6
    max_concurrent_sessions: int = 5
    complexity_simple_below: int = 4
    complexity_complex_above: int = 7

    # Session lifecycle
    session_retention_hours: int = 168
    sweep_interval_seconds: int = 3600

    # Progress relay
    relay_max_attempts: int = 4
    relay_base_delay_seconds: float = 0.5
    relay_max_delay_seconds: float = 8.0
    completed_state_id: Optional[str] = None
    failed_state_id: Optional[str] = None

    # External collaborators
    linear_api_key: Optional[str] = None
    linear_api_url: str = "https://api.linear.app/graphql"
    codegen_api_token: Optional[str] = None
    codegen_org_id: Optional[str] = None
    codegen_api_url: str = "https://api.codegen.com"
    delegate_callback_url: Optional[str] = None

    @classmethod
    def from_env(cls) -> "CoordinatorSettings":
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            json_logs=os.getenv("JSON_LOGS", "true").lower() == "true",
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 8000),
            database_url=_env_str("DATABASE_URL"),
            issue_webhook_secret=_env_str("ISSUE_WEBHOOK_SECRET"),
            delegate_webhook_secret=_env_str("DELEGATE_WEBHOOK_SECRET"),
            max_webhook_payload_bytes=_env_int("MAX_WEBHOOK_PAYLOAD_BYTES", 1024 * 1024),
            rate_limit_per_source=_env_int("RATE_LIMIT_PER_SOURCE", 60),
            rate_limit_global=_env_int("RATE_LIMIT_GLOBAL", 600),
            rate_limit_window_seconds=_env_float("RATE_LIMIT_WINDOW_SECONDS", 60.0),
            signature_tolerance_seconds=_env_int("SIGNATURE_TOLERANCE_SECONDS", 300),
            delivery_retention_seconds=_env_int("DELIVERY_RETENTION_SECONDS", 24 * 3600),
            critical_failure_threshold=_env_int("CRITICAL_FAILURE_THRESHOLD", 5),
            delegation_threshold=_env_int("DELEGATION_THRESHOLD", 6),
            max_concurrent_sessions=_env_int("MAX_CONCURRENT_SESSIONS", 5),
            complexity_simple_below=_env_int("COMPLEXITY_SIMPLE_BELOW", 4),
            complexity_complex_above=_env_int("COMPLEXITY_COMPLEX_ABOVE", 7),
            session_retention_hours=_env_int("SESSION_RETENTION_HOURS", 168),
            sweep_interval_seconds=_env_int("SWEEP_INTERVAL_SECONDS", 3600),
            relay_max_attempts=_env_int("RELAY_MAX_ATTEMPTS", 4),
            relay_base_delay_seconds=_env_float("RELAY_BASE_DELAY_SECONDS", 0.5),
            relay_max_delay_seconds=_env_float("RELAY_MAX_DELAY_SECONDS", 8.0),
            completed_state_id=_env_str("COMPLETED_STATE_ID"),
            failed_state_id=_env_str("FAILED_STATE_ID"),
            linear_api_key=_env_str("LINEAR_API_KEY"),
            linear_api_url=os.getenv("LINEAR_API_URL", "https://api.linear.app/graphql"),
            codegen_api_token=_env_str("CODEGEN_API_TOKEN"),
            codegen_org_id=_env_str("CODEGEN_ORG_ID"),
            codegen_api_url=os.getenv("CODEGEN_API_URL", "https://api.codegen.com"),
            delegate_callback_url=_env_str("DELEGATE_CALLBACK_URL"),
        )
