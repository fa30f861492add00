from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import router
from .config import configure_logging, get_settings, runtime_secret_issues

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: switch unused backends back to inmemory/stub "
                + "or set the required settings."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin.rstrip("/") for origin in settings.cors_allowed_origins],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    logger.info(
        "todo app ready: task_store=%s schedule_registry=%s dispatcher=%s",
        settings.task_store_backend,
        settings.schedule_registry_backend,
        settings.notification_dispatcher,
    )
    return app


app = create_app()
