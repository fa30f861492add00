from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings


@dataclass(frozen=True)
class PublishResult:
    published_at: datetime
    message_id: str | None = None


@dataclass(frozen=True)
class PublishedMessage:
    subject: str
    body: str
    published_at: datetime


class DispatchError(RuntimeError):
    """Raised when the notification dispatcher fails to publish a message."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class NotificationDispatcher(Protocol):
    def publish(self, subject: str, body: str) -> PublishResult: ...


class StubNotificationDispatcher:
    def __init__(self, *, enabled: bool = True) -> None:
        self._enabled = enabled
        self._lock = Lock()
        self._published: list[PublishedMessage] = []

    @property
    def published(self) -> list[PublishedMessage]:
        with self._lock:
            return list(self._published)

    def reset(self) -> None:
        with self._lock:
            self._published.clear()

    def publish(self, subject: str, body: str) -> PublishResult:
        published_at = datetime.now(timezone.utc)
        if not self._enabled:
            raise DispatchError("notifier_disabled", "Notification delivery is disabled")
        with self._lock:
            self._published.append(PublishedMessage(subject=subject, body=body, published_at=published_at))
            message_id = f"stub-{len(self._published):04d}"
        return PublishResult(published_at=published_at, message_id=message_id)


class HttpNotificationDispatcher:
    """Publishes reminder messages to a notification relay over HTTP."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channel: str = "email",
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channel = channel.strip() or "email"
        self._timeout_seconds = timeout_seconds

    def publish(self, subject: str, body: str) -> PublishResult:
        published_at = datetime.now(timezone.utc)
        response_data = self._post(
            {
                "channel": self._channel,
                "subject": subject,
                "message": body,
            }
        )
        return PublishResult(published_at=published_at, message_id=response_data.get("message_id"))

    def _post(self, body: dict[str, str]) -> dict[str, str]:
        """Send a POST request to the relay's publish endpoint."""
        url = f"{self._base_url}/v1/messages/publish"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8") or "{}")  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise DispatchError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise DispatchError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise DispatchError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


class SnsNotificationDispatcher:
    """Fans reminder messages out to every subscriber of an SNS topic."""

    def __init__(
        self,
        *,
        topic_arn: str,
        region_name: str | None = None,
        timeout_seconds: int = 10,
        client: Any | None = None,
    ) -> None:
        if not topic_arn.strip():
            raise ValueError("topic_arn must not be empty")
        self._topic_arn = topic_arn.strip()
        self._client = client or boto3.client(
            "sns",
            region_name=region_name or None,
            config=Config(connect_timeout=timeout_seconds, read_timeout=timeout_seconds),
        )

    def publish(self, subject: str, body: str) -> PublishResult:
        published_at = datetime.now(timezone.utc)
        try:
            response = self._client.publish(TopicArn=self._topic_arn, Subject=subject[:100], Message=body)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", "client_error"))
            raise DispatchError(error_code=code, message=f"SNS publish failed: {code}") from exc
        except BotoCoreError as exc:
            raise DispatchError(error_code="connection_error", message=f"SNS publish failed: {exc}") from exc
        return PublishResult(published_at=published_at, message_id=response.get("MessageId"))


def create_notification_dispatcher(settings: Settings) -> NotificationDispatcher:
    dispatcher = settings.notification_dispatcher.strip().lower()
    if dispatcher == "sns":
        return SnsNotificationDispatcher(
            topic_arn=settings.sns_topic_arn,
            region_name=settings.aws_region,
            timeout_seconds=settings.aws_timeout_seconds,
        )
    if dispatcher == "http":
        return HttpNotificationDispatcher(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            channel=settings.notifier_channel,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    if dispatcher == "stub":
        return StubNotificationDispatcher(enabled=settings.notifier_enabled)
    raise RuntimeError(f"unsupported NOTIFICATION_DISPATCHER: {settings.notification_dispatcher}")


def mask_recipient(recipient: str) -> str:
    normalized = recipient.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"
