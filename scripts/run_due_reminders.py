#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any

ROOT_DIR = Path(__file__).resolve().parents[1]
BACKEND_SRC = ROOT_DIR / "backend" / "src"
if str(BACKEND_SRC) not in sys.path:
    sys.path.insert(0, str(BACKEND_SRC))

from todo_web.config import configure_logging, get_settings  # noqa: E402
from todo_web.notifications import ReminderNotificationHandler, run_due_schedules  # noqa: E402
from todo_web.notifier import create_notification_dispatcher  # noqa: E402
from todo_web.schedule_registry import create_schedule_registry  # noqa: E402


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str) -> str:
    candidate = explicit_value.strip().rstrip("/")
    if candidate.endswith("/todo"):
        return candidate
    return f"{candidate}/api/v1/todo"


def _run_remote(base_url: str, secret: str) -> dict[str, Any]:
    headers = {"Accept": "application/json"}
    if secret:
        headers["X-Reminder-Secret"] = secret
    request = urllib.request.Request(
        f"{base_url}/reminders/run/once",
        data=b"",
        headers=headers,
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"POST /reminders/run/once failed with {exc.code}: {detail}") from exc


def _run_local() -> dict[str, Any]:
    settings = get_settings()
    registry = create_schedule_registry(settings)
    if not hasattr(registry, "pop_due_entries"):
        raise RuntimeError(
            f"SCHEDULE_REGISTRY_BACKEND={settings.schedule_registry_backend} fires entries itself"
        )
    handler = ReminderNotificationHandler(create_notification_dispatcher(settings))
    result = run_due_schedules(registry, handler)  # type: ignore[arg-type]
    return {
        "fired_count": len(result.fired),
        "failed_count": len(result.failed),
        "fired": result.fired,
        "failed": result.failed,
    }


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fire due reminder schedules held by the local (postgres) schedule registry."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Trigger a running backend instead of opening the registry directly. Accepts the host root "
            "(e.g. http://localhost:8000) or the full API prefix (e.g. http://localhost:8000/api/v1/todo)."
        ),
    )
    parser.add_argument(
        "--secret",
        default=None,
        help="Value for X-Reminder-Secret. Defaults to REMINDER_FIRE_SECRET from environment/.env.",
    )
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=0,
        help="Repeat every N seconds until interrupted (default: run once).",
    )
    return parser.parse_args()


def main() -> int:
    _load_dotenv(ROOT_DIR / ".env")
    args = parse_args()
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    while True:
        if args.api_base_url:
            secret = args.secret if args.secret is not None else os.getenv("REMINDER_FIRE_SECRET", "")
            summary = _run_remote(_resolve_api_base_url(args.api_base_url), secret)
        else:
            summary = _run_local()
        print(json.dumps(summary))
        if args.interval_seconds <= 0:
            return 0 if not summary.get("failed_count") else 1
        time.sleep(args.interval_seconds)


if __name__ == "__main__":
    raise SystemExit(main())
