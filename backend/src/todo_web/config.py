from __future__ import annotations

import logging
import os
from dataclasses import dataclass

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_csv_tuple(value: str | None, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    if value is None:
        return default
    items = [item.strip() for item in value.split(",")]
    return tuple(item for item in items if item) or default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Todo Reminders Web"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"
    task_store_backend: str = "inmemory"
    schedule_registry_backend: str = "inmemory"
    notification_dispatcher: str = "stub"
    database_url: str = ""
    # DynamoDB task table (shared with the legacy deployment).
    table_name: str = "TodoAppTable"
    aws_region: str = ""
    aws_timeout_seconds: int = 10
    # EventBridge Scheduler settings.
    schedule_group_name: str = "default"
    notification_target_arn: str = ""
    scheduler_role_arn: str = ""
    # Notification dispatcher settings.
    sns_topic_arn: str = ""
    notifier_enabled: bool = True
    notifier_channel: str = "email"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    # Bearer token verification.
    cognito_region: str = ""
    cognito_user_pool_id: str = ""
    auth_issuer: str = ""
    auth_jwks_url: str = ""
    auth_algorithms: tuple[str, ...] = ("RS256",)
    auth_jwks_timeout_seconds: int = 10
    reminder_min_lead_seconds: int = 60
    reminder_fire_secret: str = ""
    cors_allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    runtime_secret_guard_mode: str = "warn"

    def resolved_auth_issuer(self) -> str:
        if self.auth_issuer.strip():
            return self.auth_issuer.strip().rstrip("/")
        if self.cognito_region.strip() and self.cognito_user_pool_id.strip():
            return (
                f"https://cognito-idp.{self.cognito_region.strip()}.amazonaws.com/"
                f"{self.cognito_user_pool_id.strip()}"
            )
        return ""

    def resolved_jwks_url(self) -> str:
        if self.auth_jwks_url.strip():
            return self.auth_jwks_url.strip()
        issuer = self.resolved_auth_issuer()
        if not issuer:
            return ""
        return f"{issuer}/.well-known/jwks.json"

    def notification_target(self) -> str:
        return self.notification_target_arn.strip() or "local:reminders/fire"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("TODO_APP_NAME", "Todo Reminders Web"),
        api_prefix=os.getenv("TODO_API_PREFIX", "/api/v1"),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        task_store_backend=_normalize_mode(
            os.getenv("TASK_STORE_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres", "dynamodb"},
        ),
        schedule_registry_backend=_normalize_mode(
            os.getenv("SCHEDULE_REGISTRY_BACKEND"),
            default="inmemory",
            allowed={"inmemory", "postgres", "eventbridge"},
        ),
        notification_dispatcher=_normalize_mode(
            os.getenv("NOTIFICATION_DISPATCHER"),
            default="stub",
            allowed={"stub", "http", "sns"},
        ),
        database_url=os.getenv("DATABASE_URL", ""),
        table_name=os.getenv("TABLE_NAME", "TodoAppTable"),
        aws_region=os.getenv("AWS_REGION", ""),
        aws_timeout_seconds=_as_int(os.getenv("AWS_TIMEOUT_SECONDS"), 10),
        schedule_group_name=os.getenv("SCHEDULE_GROUP_NAME", "default") or "default",
        notification_target_arn=os.getenv("NOTIFICATION_TARGET_ARN", os.getenv("NOTIFICATION_LAMBDA_ARN", "")),
        scheduler_role_arn=os.getenv("SCHEDULER_ROLE_ARN", ""),
        sns_topic_arn=os.getenv("SNS_TOPIC_ARN", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), True),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        cognito_region=os.getenv("COGNITO_REGION", ""),
        cognito_user_pool_id=os.getenv("COGNITO_USER_POOL_ID", ""),
        auth_issuer=os.getenv("AUTH_ISSUER", ""),
        auth_jwks_url=os.getenv("AUTH_JWKS_URL", ""),
        auth_algorithms=_as_csv_tuple(os.getenv("AUTH_ALGORITHMS"), ("RS256",)),
        auth_jwks_timeout_seconds=_as_int(os.getenv("AUTH_JWKS_TIMEOUT_SECONDS"), 10),
        reminder_min_lead_seconds=_as_int(os.getenv("REMINDER_MIN_LEAD_SECONDS"), 60),
        reminder_fire_secret=os.getenv("REMINDER_FIRE_SECRET", ""),
        cors_allowed_origins=_as_csv_tuple(os.getenv("CORS_ALLOWED_ORIGINS"), ("http://localhost:3000",)),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if not settings.resolved_auth_issuer():
        issues.append("AUTH_ISSUER (or COGNITO_REGION and COGNITO_USER_POOL_ID) is not set")
    if not settings.resolved_jwks_url():
        issues.append("AUTH_JWKS_URL could not be resolved")
    if settings.task_store_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when TASK_STORE_BACKEND=postgres")
    if settings.schedule_registry_backend == "postgres" and not settings.database_url.strip():
        issues.append("DATABASE_URL is required when SCHEDULE_REGISTRY_BACKEND=postgres")
    if settings.task_store_backend == "dynamodb" and not settings.table_name.strip():
        issues.append("TABLE_NAME is required when TASK_STORE_BACKEND=dynamodb")
    if settings.schedule_registry_backend == "eventbridge":
        if not settings.notification_target_arn.strip():
            issues.append("NOTIFICATION_TARGET_ARN is required when SCHEDULE_REGISTRY_BACKEND=eventbridge")
        if not settings.scheduler_role_arn.strip():
            issues.append("SCHEDULER_ROLE_ARN is required when SCHEDULE_REGISTRY_BACKEND=eventbridge")
    if settings.notification_dispatcher == "sns" and not settings.sns_topic_arn.strip():
        issues.append("SNS_TOPIC_ARN is required when NOTIFICATION_DISPATCHER=sns")
    if settings.notification_dispatcher == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFICATION_DISPATCHER=http")
        if not settings.notifier_api_key.strip():
            issues.append("NOTIFIER_API_KEY is required when NOTIFICATION_DISPATCHER=http")
    if settings.schedule_registry_backend != "eventbridge" and _is_placeholder(
        settings.reminder_fire_secret,
        defaults={"dev-reminder-secret", "change-me-in-production"},
    ):
        issues.append("REMINDER_FIRE_SECRET is empty or uses a development placeholder")
    return tuple(issues)


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    if any(getattr(handler, "_todo_web", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler._todo_web = True  # type: ignore[attr-defined]
    root.addHandler(handler)
