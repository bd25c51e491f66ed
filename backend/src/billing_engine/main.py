from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .api import router
from .config import Settings, get_settings, runtime_secret_issues
from .engine import Engine, build_engine, register_default_jobs

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def check_runtime_secrets(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: switch unused senders back to stub via EMAIL_SENDER_TYPE / WHATSAPP_SENDER_TYPE "
            + "or set the required provider settings."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_app(settings: Settings | None = None, engine: Engine | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)
    check_runtime_secrets(settings)

    if engine is None:
        engine = build_engine(settings)
        register_default_jobs(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if settings.scheduler_enabled:
            await engine.orchestrator.start()
        try:
            yield
        finally:
            if engine.orchestrator.running:
                await engine.orchestrator.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    app.state.settings = settings
    app.include_router(router, prefix=settings.api_prefix)
    return app
