"""
Entry point for the RuleFlow automation backend.

This script creates the FastAPI application, includes all API routers,
and owns the in-process rule scheduler. Run with:

    uvicorn ruleflow.main:app --reload

"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from .api import api_router
from .core.config import get_app_env
from .core.db import engine
from .core.errors import log_exception
from .core.logging_config import setup_logging
from .models import Base
from .scripts.run_migrations import run_migrations_to_head
from .services.compiler import RuleCompiler
from .services.scheduler import build_scheduler


def _env_true(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title="RuleFlow", version="0.1.0")
    # Include API routers
    app.include_router(api_router)
    scheduler = build_scheduler()
    app.state.scheduler = scheduler
    app.state.compiler = RuleCompiler(databases=scheduler.databases)

    @app.on_event("startup")
    def _init_db() -> None:
        logger = logging.getLogger("startup")
        env = get_app_env()
        if _env_true("AUTO_CREATE_DB", "true"):
            try:
                Base.metadata.create_all(bind=engine)
            except Exception as exc:
                log_exception(logger, "DB create_all failed", exc=exc)
                if env == "prod":
                    raise
        if _env_true("AUTO_RUN_MIGRATIONS", "false"):
            try:
                run_migrations_to_head()
            except Exception as exc:
                log_exception(logger, "DB migrations failed", exc=exc)
                if env == "prod":
                    raise
        if _env_true("ENABLE_RULE_SCHEDULER", "true"):
            scheduler.start()
        else:
            logger.info("Rule scheduler disabled; run ruleflow.worker to evaluate rules")

    @app.on_event("shutdown")
    def _shutdown() -> None:
        scheduler.stop(timeout=5)
        scheduler.databases.dispose()

    return app


app = create_app()
