from __future__ import annotations

import os

from todo_web.config import Settings, get_settings, runtime_secret_issues


def _set_env(name: str, value: str | None) -> str | None:
    previous = os.environ.get(name)
    if value is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = value
    return previous


def _restore_env(name: str, previous: str | None) -> None:
    if previous is None:
        os.environ.pop(name, None)
    else:
        os.environ[name] = previous


def test_get_settings_defaults_to_local_backends() -> None:
    previous = {
        "TASK_STORE_BACKEND": _set_env("TASK_STORE_BACKEND", None),
        "SCHEDULE_REGISTRY_BACKEND": _set_env("SCHEDULE_REGISTRY_BACKEND", "bogus"),
        "NOTIFICATION_DISPATCHER": _set_env("NOTIFICATION_DISPATCHER", None),
        "REMINDER_MIN_LEAD_SECONDS": _set_env("REMINDER_MIN_LEAD_SECONDS", "not-a-number"),
    }
    try:
        settings = get_settings()
        assert settings.task_store_backend == "inmemory"
        assert settings.schedule_registry_backend == "inmemory"
        assert settings.notification_dispatcher == "stub"
        assert settings.reminder_min_lead_seconds == 60
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_notification_target_falls_back_to_legacy_lambda_arn() -> None:
    previous = {
        "NOTIFICATION_TARGET_ARN": _set_env("NOTIFICATION_TARGET_ARN", None),
        "NOTIFICATION_LAMBDA_ARN": _set_env("NOTIFICATION_LAMBDA_ARN", "arn:aws:lambda:us-east-1:1:function:notify"),
        "AUTH_ALGORITHMS": _set_env("AUTH_ALGORITHMS", "RS256, ES256,"),
    }
    try:
        settings = get_settings()
        assert settings.notification_target() == "arn:aws:lambda:us-east-1:1:function:notify"
        assert settings.auth_algorithms == ("RS256", "ES256")
    finally:
        for key, value in previous.items():
            _restore_env(key, value)


def test_cognito_settings_resolve_issuer_and_jwks_url() -> None:
    settings = Settings(cognito_region="us-east-1", cognito_user_pool_id="us-east-1_AbC123")

    assert settings.resolved_auth_issuer() == "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_AbC123"
    assert settings.resolved_jwks_url() == (
        "https://cognito-idp.us-east-1.amazonaws.com/us-east-1_AbC123/.well-known/jwks.json"
    )
    assert Settings(auth_issuer="https://issuer.example.test/", auth_jwks_url="https://keys.example.test").resolved_jwks_url() == (
        "https://keys.example.test"
    )


def test_local_defaults_report_missing_auth_and_fire_secret() -> None:
    issues = runtime_secret_issues(Settings())

    assert any("AUTH_ISSUER" in issue for issue in issues)
    assert any("REMINDER_FIRE_SECRET" in issue for issue in issues)


def test_eventbridge_backend_requires_target_and_role() -> None:
    issues = runtime_secret_issues(
        Settings(
            auth_issuer="https://issuer.example.test",
            schedule_registry_backend="eventbridge",
            notification_dispatcher="sns",
        )
    )

    assert any("NOTIFICATION_TARGET_ARN" in issue for issue in issues)
    assert any("SCHEDULER_ROLE_ARN" in issue for issue in issues)
    assert any("SNS_TOPIC_ARN" in issue for issue in issues)
    assert not any("REMINDER_FIRE_SECRET" in issue for issue in issues)


def test_fully_configured_aws_deployment_has_no_issues() -> None:
    issues = runtime_secret_issues(
        Settings(
            cognito_region="us-east-1",
            cognito_user_pool_id="us-east-1_AbC123",
            task_store_backend="dynamodb",
            schedule_registry_backend="eventbridge",
            notification_dispatcher="sns",
            notification_target_arn="arn:aws:lambda:us-east-1:1:function:notify",
            scheduler_role_arn="arn:aws:iam::1:role/scheduler",
            sns_topic_arn="arn:aws:sns:us-east-1:1:reminders",
        )
    )

    assert issues == ()


def test_placeholder_fire_secret_is_flagged() -> None:
    base = {"auth_issuer": "https://issuer.example.test", "database_url": "postgresql://db/todo"}

    assert any(
        "REMINDER_FIRE_SECRET" in issue
        for issue in runtime_secret_issues(Settings(**base, reminder_fire_secret="change-me"))
    )
    assert runtime_secret_issues(Settings(**base, reminder_fire_secret="prod-fire-secret-001")) == ()
